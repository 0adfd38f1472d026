"""Domain records shared by the evaluator, state store, and controller."""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional

ZERO_ADDRESS = "0x" + "0" * 40

# Upper bound accepted for a configured threshold, in whole percent.
MAX_DEVIATION_PERCENT = 100

# Reported deviation when either feed reads zero (uint256 max).
MAX_DEVIATION = 2**256 - 1


def normalize_address(address: str) -> str:
    """Return the canonical (lower-cased, stripped) form of ``address``."""

    return str(address).strip().lower()


def is_zero_address(address: Optional[str]) -> bool:
    if address is None:
        return True
    normalized = normalize_address(address)
    digits = normalized[2:] if normalized.startswith("0x") else normalized
    return set(digits) <= {"0"}


class Action(IntEnum):
    """Risk engine actions, numbered as the comptroller numbers them."""

    MINT = 0
    REDEEM = 1
    BORROW = 2
    REPAY = 3
    SEIZE = 4
    LIQUIDATE = 5
    TRANSFER = 6
    ENTER_MARKET = 7
    EXIT_MARKET = 8


@dataclass(frozen=True)
class TokenMonitorConfig:
    """Per-token monitoring settings.

    ``deviation`` is the threshold in whole percent; ``0`` means the token has
    never been configured.
    """

    deviation: int = 0
    enabled: bool = False

    @property
    def is_configured(self) -> bool:
        return self.deviation != 0

    def as_dict(self) -> Dict[str, Any]:
        return {"deviation": self.deviation, "enabled": self.enabled}


@dataclass(frozen=True)
class PoolSnapshot:
    collateral_factor: int
    liquidation_threshold: int


@dataclass
class MarketState:
    """Restrictions the sentinel currently holds on a single market."""

    borrow_paused: bool = False
    supply_paused: bool = False
    cf_modified: bool = False
    original_cf: int = 0
    original_lt: int = 0
    pool_snapshots: Dict[int, PoolSnapshot] = field(default_factory=dict)

    @property
    def is_restricted(self) -> bool:
        return self.borrow_paused or self.supply_paused or self.cf_modified

    def clone(self) -> "MarketState":
        return copy.deepcopy(self)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["pool_snapshots"] = {
            str(pool_id): asdict(snapshot) for pool_id, snapshot in self.pool_snapshots.items()
        }
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MarketState":
        snapshots_raw = payload.get("pool_snapshots") or {}
        snapshots = {
            int(pool_id): PoolSnapshot(
                collateral_factor=int(raw.get("collateral_factor", 0)),
                liquidation_threshold=int(raw.get("liquidation_threshold", 0)),
            )
            for pool_id, raw in snapshots_raw.items()
        }
        return cls(
            borrow_paused=bool(payload.get("borrow_paused", False)),
            supply_paused=bool(payload.get("supply_paused", False)),
            cf_modified=bool(payload.get("cf_modified", False)),
            original_cf=int(payload.get("original_cf", 0)),
            original_lt=int(payload.get("original_lt", 0)),
            pool_snapshots=snapshots,
        )


@dataclass(frozen=True)
class DeviationResult:
    """Outcome of comparing the primary (oracle) and secondary (sentinel) prices."""

    has_deviation: bool
    oracle_price: int
    sentinel_price: int
    deviation_percent: int
    threshold: int

    @property
    def sentinel_price_higher(self) -> bool:
        return self.sentinel_price > self.oracle_price

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        # JSON consumers lose precision on 256-bit integers.
        for key in ("oracle_price", "sentinel_price", "deviation_percent"):
            payload[key] = str(payload[key])
        payload["sentinel_price_higher"] = self.sentinel_price_higher
        return payload


__all__ = [
    "ZERO_ADDRESS",
    "MAX_DEVIATION",
    "MAX_DEVIATION_PERCENT",
    "Action",
    "TokenMonitorConfig",
    "PoolSnapshot",
    "MarketState",
    "DeviationResult",
    "normalize_address",
    "is_zero_address",
]
