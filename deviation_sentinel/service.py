"""Assemble a controller from a :class:`SentinelConfig`."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from .config import SentinelConfig
from .controller import DeviationController
from .events import EventSink, FanoutEventSink, JsonlEventSink, LoggingEventSink
from .interfaces import Market, MultiPoolRiskEngine, PermissionChecker, PriceFeed
from .metrics import MetricRegistry
from .models import normalize_address
from .state_store import FileMarketStateStore, InMemoryMarketStateStore, MarketStateStore

logger = logging.getLogger(__name__)


def build_state_store(config: SentinelConfig) -> MarketStateStore:
    if config.state_path is not None:
        return FileMarketStateStore(config.state_path)
    logger.warning("No state_path configured; market restrictions will not survive a restart")
    return InMemoryMarketStateStore()


def build_event_sink(config: SentinelConfig, extra: Optional[List[EventSink]] = None) -> EventSink:
    sinks: List[EventSink] = [LoggingEventSink()]
    if config.event_log_path is not None:
        sinks.append(JsonlEventSink(config.event_log_path))
    sinks.extend(extra or [])
    return FanoutEventSink(sinks)


def build_controller(
    config: SentinelConfig,
    *,
    oracle: PriceFeed,
    sentinel_oracle: PriceFeed,
    permission_checker: PermissionChecker,
    admin: str,
    multi_pool_engine: Optional[MultiPoolRiskEngine] = None,
    event_sink: Optional[EventSink] = None,
    metrics: Optional[MetricRegistry] = None,
) -> DeviationController:
    """Create a controller and seed it with the configured tokens and keepers.

    Seeding goes through the permission-gated administrative surface as
    ``admin``, so a misconfigured grant table fails loudly at startup.
    """

    if (
        multi_pool_engine is not None
        and config.multi_pool_engine
        and normalize_address(multi_pool_engine.address) != normalize_address(config.multi_pool_engine)
    ):
        raise ValueError(
            f"Configured multi-pool engine {config.multi_pool_engine} does not match "
            f"provided engine {multi_pool_engine.address}"
        )
    controller = DeviationController(
        oracle,
        sentinel_oracle,
        permission_checker=permission_checker,
        multi_pool_engine=multi_pool_engine,
        state_store=build_state_store(config),
        event_sink=event_sink or build_event_sink(config),
        metrics=metrics,
        dry_run=config.dry_run,
    )
    for token, token_config in config.token_configs.items():
        controller.set_token_config(token, token_config, caller=admin)
    for keeper in config.trusted_keepers:
        controller.set_trusted_keeper(keeper, True, caller=admin)
    if config.keeper_address and not controller.is_trusted_keeper(config.keeper_address):
        logger.warning(
            "Configured keeper address is not in the trusted keeper set",
            extra={"keeper": config.keeper_address},
        )
    return controller


@dataclass
class SentinelBindings:
    """Live collaborators a deployment plugs into the controller.

    ``closers`` are awaited on shutdown, for example ``CcxtTickerFeed.close``.
    """

    oracle: PriceFeed
    sentinel_oracle: PriceFeed
    permission_checker: PermissionChecker
    admin: str
    markets: List[Market] = field(default_factory=list)
    multi_pool_engine: Optional[MultiPoolRiskEngine] = None
    closers: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def aclose(self) -> None:
        for close in self.closers:
            try:
                await close()
            except Exception as exc:
                logger.warning("Failed to close sentinel binding", extra={"error": str(exc)}, exc_info=True)


BindingsFactory = Callable[[SentinelConfig], Union[SentinelBindings, Awaitable[SentinelBindings]]]


async def resolve_bindings(factory: BindingsFactory, config: SentinelConfig) -> SentinelBindings:
    bindings = factory(config)
    if inspect.isawaitable(bindings):
        bindings = await bindings
    if not isinstance(bindings, SentinelBindings):
        raise TypeError(f"Bindings factory returned {type(bindings).__name__}, expected SentinelBindings")
    return bindings


def select_markets(config: SentinelConfig, markets: Sequence[Market]) -> List[Market]:
    """Return the subset of ``markets`` named in ``config.markets``; all of them when none are named."""

    if not config.markets:
        return list(markets)
    wanted = {normalize_address(address) for address in config.markets}
    selected = [market for market in markets if normalize_address(market.address) in wanted]
    missing = wanted - {normalize_address(market.address) for market in selected}
    if missing:
        logger.warning("Configured markets have no binding", extra={"markets": sorted(missing)})
    return selected
