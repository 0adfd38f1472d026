"""Permission checks for administrative operations."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Set

from .errors import Unauthorized
from .interfaces import PermissionChecker
from .models import normalize_address

logger = logging.getLogger(__name__)

SET_TOKEN_CONFIG = "setTokenConfig(address,(uint8,bool))"
SET_TOKEN_MONITORING_ENABLED = "setTokenMonitoringEnabled(address,bool)"
SET_TRUSTED_KEEPER = "setTrustedKeeper(address,bool)"
SET_TOKEN_ORACLE_CONFIG = "setTokenOracleConfig(address,address)"

ANY_CALLER = "*"


class StaticPermissionChecker:
    """Grant table mapping operation names to permitted callers."""

    def __init__(self, grants: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._grants: Dict[str, Set[str]] = {}
        for operation, callers in (grants or {}).items():
            for caller in callers:
                self.grant(operation, caller)

    def grant(self, operation: str, caller: str) -> None:
        self._grants.setdefault(operation, set()).add(_caller_key(caller))

    def revoke(self, operation: str, caller: str) -> None:
        self._grants.get(operation, set()).discard(_caller_key(caller))

    def is_allowed_to_call(self, caller: str, operation: str) -> bool:
        allowed = self._grants.get(operation, set())
        return ANY_CALLER in allowed or _caller_key(caller) in allowed


def ensure_allowed(checker: PermissionChecker, caller: str, operation: str) -> None:
    if not checker.is_allowed_to_call(caller, operation):
        logger.warning("Rejected unauthorized call", extra={"caller": caller, "operation": operation})
        raise Unauthorized(caller, operation)


def _caller_key(caller: str) -> str:
    return ANY_CALLER if caller == ANY_CALLER else normalize_address(caller)
