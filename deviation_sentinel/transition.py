"""All-or-nothing unit of work around a single market transition.

A transition mutates a private copy of the market's state, queues the events
it wants to publish, and registers a compensating call for every risk engine
mutation it performs. The controller commits the state and flushes the events
only when every step succeeded; otherwise it runs the compensations newest
first and discards the copy, so a failed call leaves no trace.

When a compensation itself fails, the engine keeps that mutation. Each
registered call may carry a ``keep`` hook describing the state the mutation
leaves behind; :meth:`MarketTransition.residual_state` replays the hooks of
failed compensations onto the pre-transition state so the store matches the
engine again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .events import SentinelEvent
from .models import MarketState

logger = logging.getLogger(__name__)

Compensation = Callable[[], Awaitable[Any]]
StateHook = Callable[[MarketState], None]


@dataclass
class _Undo:
    description: str
    action: Compensation
    keep: Optional[StateHook] = None


class MarketTransition:
    def __init__(self, market: str, state: MarketState) -> None:
        self.market = market
        self.state = state
        self.events: List[SentinelEvent] = []
        self.calls: List[str] = []
        self._undo: List[_Undo] = []
        self._unresolved: List[_Undo] = []

    @property
    def changed(self) -> bool:
        return bool(self.calls)

    def emit(self, name: str, data: Mapping[str, Any]) -> None:
        payload: Dict[str, Any] = {"market": self.market}
        payload.update(data)
        self.events.append(SentinelEvent(name=name, data=payload))

    def performed(self, description: str, undo: Compensation, *, keep: Optional[StateHook] = None) -> None:
        """Record a completed risk engine call together with its inverse.

        ``keep`` applies the call's effect to a :class:`MarketState`; it is
        used only if ``undo`` fails during rollback.
        """

        self.calls.append(description)
        self._undo.append(_Undo(description, undo, keep))

    async def rollback(self) -> List[str]:
        """Run compensations newest first; return the descriptions that failed."""

        failed: List[str] = []
        while self._undo:
            undo = self._undo.pop()
            try:
                await undo.action()
            except Exception as exc:
                failed.append(undo.description)
                self._unresolved.insert(0, undo)
                logger.critical(
                    "Compensation failed; market left partially restricted",
                    extra={"market": self.market, "step": undo.description, "error": str(exc)},
                    exc_info=True,
                )
            else:
                logger.warning(
                    "Compensated risk engine call",
                    extra={"market": self.market, "step": undo.description},
                )
        self.events.clear()
        return failed

    def residual_state(self, base: MarketState) -> MarketState:
        """Return ``base`` with the effects of every uncompensated call applied, oldest first."""

        state = base.clone()
        for undo in self._unresolved:
            if undo.keep is not None:
                undo.keep(state)
        return state
