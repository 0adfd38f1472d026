"""Keeper-driven enforcement of price deviation restrictions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .access_control import (
    SET_TOKEN_CONFIG,
    SET_TOKEN_MONITORING_ENABLED,
    SET_TRUSTED_KEEPER,
    ensure_allowed,
)
from .collateral import CollateralFactorManager, engine_call
from .errors import (
    ExceedsMaxDeviation,
    InvalidDeviation,
    MonitoringDisabled,
    NotConfigured,
    UnauthorizedKeeper,
    ZeroAddress,
)
from .evaluator import DeviationEvaluator
from .events import (
    BORROW_PAUSED,
    BORROW_UNPAUSED,
    SUPPLY_PAUSED,
    SUPPLY_UNPAUSED,
    TOKEN_CONFIG_UPDATED,
    TOKEN_MONITORING_ENABLED_UPDATED,
    TRUSTED_KEEPER_UPDATED,
    EventSink,
    LoggingEventSink,
    SentinelEvent,
)
from .interfaces import AnyRiskEngine, Market, MultiPoolRiskEngine, PermissionChecker, PriceFeed
from .metrics import MetricRegistry, Timer
from .models import (
    MAX_DEVIATION_PERCENT,
    Action,
    DeviationResult,
    MarketState,
    TokenMonitorConfig,
    is_zero_address,
    normalize_address,
)
from .state_store import InMemoryMarketStateStore, MarketStateStore
from .transition import MarketTransition

logger = logging.getLogger(__name__)

PAUSE_BORROW = "pause_borrow"
ZERO_COLLATERAL_FACTOR = "zero_collateral_factor"
PAUSE_SUPPLY = "pause_supply"
UNPAUSE_BORROW = "unpause_borrow"
RESTORE_COLLATERAL_FACTOR = "restore_collateral_factor"
UNPAUSE_SUPPLY = "unpause_supply"


def plan_transition(state: MarketState, result: DeviationResult) -> List[str]:
    """Return the steps still owed for ``state`` given ``result``, in order.

    An empty plan means the market is already in the target posture.
    """

    steps: List[str] = []
    if result.has_deviation:
        if result.sentinel_price_higher:
            if not state.borrow_paused:
                steps.append(PAUSE_BORROW)
            return steps
        if state.cf_modified and state.supply_paused:
            return steps
        if not state.cf_modified:
            steps.append(ZERO_COLLATERAL_FACTOR)
        if not state.supply_paused:
            steps.append(PAUSE_SUPPLY)
        return steps
    if state.borrow_paused:
        steps.append(UNPAUSE_BORROW)
    if state.cf_modified:
        steps.append(RESTORE_COLLATERAL_FACTOR)
    if state.supply_paused:
        steps.append(UNPAUSE_SUPPLY)
    return steps


@dataclass(frozen=True)
class DeviationOutcome:
    market: str
    token: str
    result: DeviationResult
    steps: Tuple[str, ...]
    state: MarketState
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.steps) and not self.dry_run


@dataclass
class _MarketContext:
    token: str
    engine: AnyRiskEngine
    config: TokenMonitorConfig = field(default_factory=TokenMonitorConfig)


class DeviationController:
    """Compare two price feeds per market and hold or release restrictions.

    ``handle_deviation`` is the only mutating entry point and is limited to
    trusted keepers. Every call is serialized per market and either completes
    all of its risk engine calls and commits the new state, or compensates the
    calls it already made and leaves state untouched. If a compensation
    fails, the store records the restrictions the engine still holds.
    """

    def __init__(
        self,
        oracle: PriceFeed,
        sentinel_oracle: PriceFeed,
        *,
        permission_checker: PermissionChecker,
        multi_pool_engine: Optional[MultiPoolRiskEngine] = None,
        state_store: Optional[MarketStateStore] = None,
        event_sink: Optional[EventSink] = None,
        metrics: Optional[MetricRegistry] = None,
        dry_run: bool = False,
    ) -> None:
        self.oracle = oracle
        self.sentinel_oracle = sentinel_oracle
        self.multi_pool_engine = multi_pool_engine
        self._permissions = permission_checker
        self._state_store = state_store or InMemoryMarketStateStore()
        self._events = event_sink or LoggingEventSink()
        self._metrics = metrics or MetricRegistry()
        self._evaluator = DeviationEvaluator(oracle, sentinel_oracle, metrics=self._metrics)
        self._collateral = CollateralFactorManager(multi_pool_engine)
        self._token_configs: Dict[str, TokenMonitorConfig] = {}
        self._trusted_keepers: Dict[str, bool] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.dry_run = dry_run

    @property
    def metrics(self) -> MetricRegistry:
        return self._metrics

    @property
    def state_store(self) -> MarketStateStore:
        return self._state_store

    # ------------------------------------------------------------------
    # Administration

    def set_token_config(self, token: str, config: TokenMonitorConfig, *, caller: str) -> None:
        ensure_allowed(self._permissions, caller, SET_TOKEN_CONFIG)
        if is_zero_address(token):
            raise ZeroAddress("token")
        deviation = config.deviation
        if isinstance(deviation, bool) or not isinstance(deviation, int) or deviation < 1:
            raise InvalidDeviation(deviation)
        if deviation > MAX_DEVIATION_PERCENT:
            raise ExceedsMaxDeviation(deviation, MAX_DEVIATION_PERCENT)
        self._token_configs[normalize_address(token)] = config
        logger.info("Token config updated", extra={"token": token, **config.as_dict()})
        self._publish([SentinelEvent(TOKEN_CONFIG_UPDATED, {"token": token, **config.as_dict()})])

    def set_token_monitoring_enabled(self, token: str, enabled: bool, *, caller: str) -> None:
        ensure_allowed(self._permissions, caller, SET_TOKEN_MONITORING_ENABLED)
        if is_zero_address(token):
            raise ZeroAddress("token")
        current = self.token_config(token)
        if not current.is_configured:
            raise NotConfigured(token)
        self._token_configs[normalize_address(token)] = TokenMonitorConfig(current.deviation, bool(enabled))
        logger.info("Token monitoring toggled", extra={"token": token, "enabled": bool(enabled)})
        self._publish([SentinelEvent(TOKEN_MONITORING_ENABLED_UPDATED, {"token": token, "enabled": bool(enabled)})])

    def set_trusted_keeper(self, keeper: str, trusted: bool, *, caller: str) -> None:
        ensure_allowed(self._permissions, caller, SET_TRUSTED_KEEPER)
        if is_zero_address(keeper):
            raise ZeroAddress("keeper")
        self._trusted_keepers[normalize_address(keeper)] = bool(trusted)
        logger.info("Trusted keeper updated", extra={"keeper": keeper, "trusted": bool(trusted)})
        self._publish([SentinelEvent(TRUSTED_KEEPER_UPDATED, {"keeper": keeper, "trusted": bool(trusted)})])

    def token_config(self, token: str) -> TokenMonitorConfig:
        return self._token_configs.get(normalize_address(token), TokenMonitorConfig())

    def is_trusted_keeper(self, keeper: str) -> bool:
        return self._trusted_keepers.get(normalize_address(keeper), False)

    def market_state(self, market: str) -> MarketState:
        return self._state_store.load(market)

    # ------------------------------------------------------------------
    # Read-only surface

    async def check_price_deviation(self, market: Market) -> DeviationResult:
        """Evaluate ``market`` regardless of whether monitoring is enabled."""

        token = await market.underlying()
        config = self.token_config(token)
        if not config.is_configured:
            raise NotConfigured(token)
        return await self._evaluator.evaluate(token, config.deviation)

    async def market_status(self, market: Market) -> Dict[str, Any]:
        engine = await market.comptroller()
        state = self._state_store.load(market.address)
        borrow_paused = await engine_call("actionPaused", engine.action_paused(market.address, Action.BORROW))
        supply_paused = await engine_call("actionPaused", engine.action_paused(market.address, Action.MINT))
        return {
            "market": market.address,
            "state": state.to_payload(),
            "restricted": state.is_restricted,
            "engine": {
                "address": engine.address,
                "multi_pool": self._collateral.is_multi_pool(engine),
                "borrow_paused": bool(borrow_paused),
                "supply_paused": bool(supply_paused),
            },
        }

    # ------------------------------------------------------------------
    # Enforcement

    async def handle_deviation(self, market: Market, *, caller: str) -> DeviationOutcome:
        if not self.is_trusted_keeper(caller):
            self._metrics.inc("sentinel_errors_total", labels={"op": "handle_deviation", "code": "unauthorized"})
            raise UnauthorizedKeeper(caller)

        market_key = normalize_address(market.address)
        lock = self._locks.get(market_key)
        if lock is None:
            lock = self._locks[market_key] = asyncio.Lock()
        async with lock:
            with Timer(self._metrics, "sentinel_transition_latency_seconds"):
                return await self._handle_locked(market)

    async def _handle_locked(self, market: Market) -> DeviationOutcome:
        ctx = await self._resolve(market)
        if not ctx.config.is_configured:
            raise NotConfigured(ctx.token)
        if not ctx.config.enabled:
            raise MonitoringDisabled(ctx.token)

        result = await self._evaluator.evaluate(ctx.token, ctx.config.deviation)
        original = self._state_store.load(market.address)
        steps = plan_transition(original, result)
        log_extra = {
            "market": market.address,
            "token": ctx.token,
            "deviation_percent": result.deviation_percent,
            "threshold": result.threshold,
            "sentinel_price_higher": result.sentinel_price_higher,
            "steps": steps,
        }

        if not steps:
            logger.info("Market already in target posture", extra=log_extra)
            return DeviationOutcome(market.address, ctx.token, result, (), original)

        if self.dry_run:
            logger.warning("[DRY-RUN] Would apply deviation transition", extra=log_extra)
            return DeviationOutcome(market.address, ctx.token, result, tuple(steps), original, dry_run=True)

        tx = MarketTransition(market.address, original.clone())
        try:
            for step in steps:
                await self._apply(step, tx, ctx.engine)
            if tx.state != original:
                self._state_store.save(market.address, tx.state)
        except Exception as exc:
            code = getattr(exc, "code", None)
            self._metrics.inc(
                "sentinel_errors_total",
                labels={"op": "handle_deviation", "code": str(code) if code is not None else type(exc).__name__},
            )
            logger.error(
                "Deviation transition aborted",
                extra={**log_extra, "completed": list(tx.calls), "error": str(exc)},
            )
            failed = await tx.rollback()
            if failed:
                self._persist_residual(market.address, original, tx)
            raise

        for step in steps:
            self._metrics.inc("sentinel_transitions_total", labels={"action": step})
        log_level = logging.WARNING if result.has_deviation else logging.INFO
        logger.log(log_level, "Applied deviation transition", extra=log_extra)
        self._publish(tx.events)
        return DeviationOutcome(market.address, ctx.token, result, tuple(steps), tx.state.clone())

    async def _resolve(self, market: Market) -> _MarketContext:
        token = await market.underlying()
        engine = await market.comptroller()
        return _MarketContext(token=token, engine=engine, config=self.token_config(token))

    async def _apply(self, step: str, tx: MarketTransition, engine: AnyRiskEngine) -> None:
        if step == PAUSE_BORROW:
            await self._set_paused(tx, engine, Action.BORROW, True)
            tx.state.borrow_paused = True
            tx.emit(BORROW_PAUSED, {})
        elif step == UNPAUSE_BORROW:
            await self._set_paused(tx, engine, Action.BORROW, False)
            tx.state.borrow_paused = False
            tx.emit(BORROW_UNPAUSED, {})
        elif step == PAUSE_SUPPLY:
            await self._set_paused(tx, engine, Action.MINT, True)
            tx.state.supply_paused = True
            tx.emit(SUPPLY_PAUSED, {})
        elif step == UNPAUSE_SUPPLY:
            await self._set_paused(tx, engine, Action.MINT, False)
            tx.state.supply_paused = False
            tx.emit(SUPPLY_UNPAUSED, {})
        elif step == ZERO_COLLATERAL_FACTOR:
            await self._collateral.zero(tx, engine)
        elif step == RESTORE_COLLATERAL_FACTOR:
            await self._collateral.restore(tx, engine)
        else:  # pragma: no cover - plan_transition only yields known steps
            raise ValueError(f"Unknown transition step {step}")

    async def _set_paused(self, tx: MarketTransition, engine: AnyRiskEngine, action: Action, paused: bool) -> None:
        market = tx.market
        await engine_call("setActionsPaused", engine.set_actions_paused([market], [action], paused))
        verb = "pause" if paused else "unpause"
        tx.performed(
            f"{verb} {action.name.lower()}",
            lambda: engine_call("setActionsPaused", engine.set_actions_paused([market], [action], not paused)),
            keep=lambda state: _mark_paused(state, action, paused),
        )

    def _persist_residual(self, market: str, original: MarketState, tx: MarketTransition) -> None:
        """Record the restrictions a failed rollback left on the engine."""

        residual = tx.residual_state(original)
        if residual == original:
            return
        self._state_store.save(market, residual)
        logger.critical(
            "Persisted partially compensated market state",
            extra={"market": market, "state": residual.to_payload()},
        )

    def _publish(self, events: List[SentinelEvent]) -> None:
        for event in events:
            try:
                self._events.publish(event)
            except Exception as exc:
                logger.error("Failed to publish event %s: %s", event.name, exc, exc_info=True)


def _mark_paused(state: MarketState, action: Action, paused: bool) -> None:
    if action == Action.BORROW:
        state.borrow_paused = paused
    elif action == Action.MINT:
        state.supply_paused = paused
