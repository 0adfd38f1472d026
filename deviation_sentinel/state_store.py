"""Persistence for per-market restriction state."""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterator, Tuple

from .models import MarketState, normalize_address

logger = logging.getLogger(__name__)


class MarketStateStore:
    """Keyed storage of :class:`MarketState` records.

    ``load`` always returns a private copy; callers mutate it freely and hand it
    back through ``save`` once the transition it belongs to has succeeded.
    """

    def load(self, market: str) -> MarketState:  # pragma: no cover - interface
        raise NotImplementedError

    def save(self, market: str, state: MarketState) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def items(self) -> Iterator[Tuple[str, MarketState]]:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryMarketStateStore(MarketStateStore):
    def __init__(self) -> None:
        self._states: Dict[str, MarketState] = {}

    def load(self, market: str) -> MarketState:
        state = self._states.get(normalize_address(market))
        return state.clone() if state is not None else MarketState()

    def save(self, market: str, state: MarketState) -> None:
        self._states[normalize_address(market)] = state.clone()

    def items(self) -> Iterator[Tuple[str, MarketState]]:
        for market, state in list(self._states.items()):
            yield market, state.clone()


class FileMarketStateStore(MarketStateStore):
    """JSON-backed store, rewritten atomically on every save."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, market: str) -> MarketState:
        payload = self._read().get(normalize_address(market))
        if payload is None:
            return MarketState()
        return MarketState.from_payload(payload)

    def save(self, market: str, state: MarketState) -> None:
        with self._lock:
            markets = self._read()
            markets[normalize_address(market)] = state.to_payload()
            _atomic_write(self._path, json.dumps({"markets": markets}, indent=2, sort_keys=True))

    def items(self) -> Iterator[Tuple[str, MarketState]]:
        for market, payload in self._read().items():
            yield market, MarketState.from_payload(payload)

    def _read(self) -> Dict[str, dict]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in market state file {self._path}: {exc}") from exc
        markets = payload.get("markets") if isinstance(payload, dict) else None
        if not isinstance(markets, dict):
            logger.warning("Market state file %s has no markets section", self._path)
            return {}
        return dict(markets)


def _atomic_write(path: Path, content: str) -> None:
    tmp = tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8")
    try:
        with tmp as f:
            f.write(content)
            f.flush()
        Path(tmp.name).replace(path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise
