"""Domain events and the sinks they are published to."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

TOKEN_CONFIG_UPDATED = "TokenConfigUpdated"
TOKEN_MONITORING_ENABLED_UPDATED = "TokenMonitoringEnabledUpdated"
TRUSTED_KEEPER_UPDATED = "TrustedKeeperUpdated"
TOKEN_ORACLE_CONFIG_UPDATED = "TokenOracleConfigUpdated"
BORROW_PAUSED = "BorrowPaused"
BORROW_UNPAUSED = "BorrowUnpaused"
SUPPLY_PAUSED = "SupplyPaused"
SUPPLY_UNPAUSED = "SupplyUnpaused"
COLLATERAL_FACTOR_UPDATED = "CollateralFactorUpdated"
COLLATERAL_FACTOR_RESTORED = "CollateralFactorRestored"

GENESIS_HASH = "0" * 64


@dataclass(frozen=True)
class SentinelEvent:
    name: str
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "data": _jsonable(self.data), "timestamp": self.timestamp}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        # Fixed-point prices and mantissas overflow JSON doubles.
        return str(value) if abs(value) > 2**53 else value
    return str(value)


class EventSink:
    def publish(self, event: SentinelEvent) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def publish_many(self, events: Iterable[SentinelEvent]) -> None:
        for event in events:
            self.publish(event)


class LoggingEventSink(EventSink):
    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def publish(self, event: SentinelEvent) -> None:
        logger.log(self._level, "Sentinel event %s", event.name, extra={"event": event.as_dict()})


class RecordingEventSink(EventSink):
    """Keep events in memory, mostly for inspection in tests and tooling."""

    def __init__(self) -> None:
        self.events: List[SentinelEvent] = []

    def publish(self, event: SentinelEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [event.name for event in self.events]

    def named(self, name: str) -> List[SentinelEvent]:
        return [event for event in self.events if event.name == name]

    def clear(self) -> None:
        self.events.clear()


class JsonlEventSink(EventSink):
    """Append-only JSONL event log chained by SHA-256 hashes."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._last_hash = self._bootstrap_hash()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_hash(self) -> str:
        return self._last_hash

    def _bootstrap_hash(self) -> str:
        last_line = ""
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    line = line.strip()
                    if line:
                        last_line = line
        except FileNotFoundError:
            return GENESIS_HASH
        if not last_line:
            return GENESIS_HASH
        try:
            payload = json.loads(last_line)
        except json.JSONDecodeError:
            logger.error("Encountered invalid JSON in event log %s", self._path)
            return GENESIS_HASH
        return str(payload.get("hash") or GENESIS_HASH)

    def publish(self, event: SentinelEvent) -> None:
        with self._lock:
            record = event.as_dict()
            record["prev_hash"] = self._last_hash
            canonical = json.dumps(record, sort_keys=True, separators=(",", ":"))
            record_hash = sha256(canonical.encode("utf-8")).hexdigest()
            record["hash"] = record_hash
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            self._last_hash = record_hash


class FanoutEventSink(EventSink):
    """Publish to several sinks; a failing sink does not starve the others."""

    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self._sinks = list(sinks)

    def publish(self, event: SentinelEvent) -> None:
        for sink in self._sinks:
            try:
                sink.publish(event)
            except Exception as exc:
                logger.error(
                    "Failed to publish event via %s: %s",
                    type(sink).__name__,
                    exc,
                    extra={"event": event.name},
                    exc_info=True,
                )


def iter_events(path: Path, *, name: Optional[str] = None) -> Iterator[Dict[str, Any]]:
    """Yield records from a JSONL event log, optionally filtered by event name."""

    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping invalid event record: %s", line)
                    continue
                if name is not None and record.get("name") != name:
                    continue
                yield record
    except FileNotFoundError:
        return


def verify_chain(path: Path) -> bool:
    """Return ``True`` when every record's hash links to its predecessor."""

    previous = GENESIS_HASH
    for record in iter_events(path):
        stored_hash = record.pop("hash", None)
        if record.get("prev_hash") != previous:
            return False
        canonical = json.dumps(record, sort_keys=True, separators=(",", ":"))
        if sha256(canonical.encode("utf-8")).hexdigest() != stored_hash:
            return False
        previous = stored_hash
    return True
