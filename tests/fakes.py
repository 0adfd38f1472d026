from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from deviation_sentinel.access_control import (
    SET_TOKEN_CONFIG,
    SET_TOKEN_MONITORING_ENABLED,
    SET_TOKEN_ORACLE_CONFIG,
    SET_TRUSTED_KEEPER,
    StaticPermissionChecker,
)
from deviation_sentinel.controller import DeviationController
from deviation_sentinel.events import RecordingEventSink
from deviation_sentinel.interfaces import PoolMarket
from deviation_sentinel.models import Action, TokenMonitorConfig, normalize_address

ADMIN = "0x00000000000000000000000000000000000000ad"
KEEPER = "0x000000000000000000000000000000000000beef"
STRANGER = "0x0000000000000000000000000000000000000bad"
TOKEN = "0x1111111111111111111111111111111111111111"
MARKET = "0x2222222222222222222222222222222222222222"
SINGLE_ENGINE = "0x3333333333333333333333333333333333333333"
MULTI_ENGINE = "0x4444444444444444444444444444444444444444"

PRICE = 100 * 10**18


class FakeFeed:
    def __init__(self, name: str, prices: Optional[Dict[str, int]] = None) -> None:
        self.name = name
        self.prices = {normalize_address(k): v for k, v in (prices or {}).items()}
        self.error: Optional[Exception] = None
        self.calls = 0

    def set(self, token: str, price: int) -> None:
        self.prices[normalize_address(token)] = price

    async def get_price(self, token: str) -> int:
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.prices[normalize_address(token)]


class _EngineBase:
    def __init__(self, address: str) -> None:
        self.address = address
        self.paused: Set[Tuple[str, Action]] = set()
        self.calls: List[tuple] = []
        self.fail_ops: Set[str] = set()

    async def set_actions_paused(self, markets, actions, paused: bool) -> None:
        self.calls.append(("setActionsPaused", tuple(markets), tuple(actions), paused))
        if "setActionsPaused" in self.fail_ops:
            raise RuntimeError("paused setter reverted")
        for market in markets:
            for action in actions:
                key = (normalize_address(market), Action(action))
                if paused:
                    self.paused.add(key)
                else:
                    self.paused.discard(key)

    async def action_paused(self, market: str, action: Action) -> bool:
        return (normalize_address(market), Action(action)) in self.paused

    def is_paused(self, market: str, action: Action) -> bool:
        return (normalize_address(market), action) in self.paused

    def mutations(self) -> List[tuple]:
        return list(self.calls)


class FakeSinglePoolEngine(_EngineBase):
    def __init__(self, address: str = SINGLE_ENGINE) -> None:
        super().__init__(address)
        self.listings: Dict[str, Tuple[bool, int, int]] = {}

    def list_market(self, market: str, collateral_factor: int, liquidation_threshold: int) -> None:
        self.listings[normalize_address(market)] = (True, collateral_factor, liquidation_threshold)

    async def markets(self, market: str) -> Tuple[bool, int, int]:
        return self.listings.get(normalize_address(market), (False, 0, 0))

    async def set_collateral_factor(self, market: str, collateral_factor: int, liquidation_threshold: int) -> None:
        self.calls.append(("setCollateralFactor", market, collateral_factor, liquidation_threshold))
        if "setCollateralFactor" in self.fail_ops:
            raise RuntimeError("collateral factor setter reverted")
        listed, _, _ = self.listings.get(normalize_address(market), (True, 0, 0))
        self.listings[normalize_address(market)] = (listed, collateral_factor, liquidation_threshold)


class FakeMultiPoolEngine(_EngineBase):
    def __init__(self, address: str = MULTI_ENGINE, *, first_pool: int = 0, last_pool: int = 0) -> None:
        super().__init__(address)
        self.first_pool = first_pool
        self.last_pool = last_pool
        self.pools: Dict[int, Dict[str, PoolMarket]] = {}
        self.reject_codes: Dict[int, int] = {}
        self.reject_restores: Dict[int, int] = {}

    def list_market(self, pool_id: int, market: str, collateral_factor: int, liquidation_threshold: int) -> None:
        self.pools.setdefault(pool_id, {})[normalize_address(market)] = PoolMarket(
            True, collateral_factor, liquidation_threshold
        )
        self.last_pool = max(self.last_pool, pool_id)

    def pool_market(self, pool_id: int, market: str) -> PoolMarket:
        return self.pools.get(pool_id, {}).get(normalize_address(market), PoolMarket(False, 0, 0))

    async def first_pool_id(self) -> int:
        return self.first_pool

    async def last_pool_id(self) -> int:
        return self.last_pool

    async def pool_markets(self, pool_id: int, market: str) -> PoolMarket:
        return self.pool_market(pool_id, market)

    async def set_collateral_factor(
        self, pool_id: int, market: str, collateral_factor: int, liquidation_threshold: int
    ) -> int:
        self.calls.append(("setCollateralFactor", pool_id, market, collateral_factor, liquidation_threshold))
        code = self.reject_codes.get(pool_id, 0)
        if not code and collateral_factor:
            code = self.reject_restores.get(pool_id, 0)
        if code:
            return code
        current = self.pool_market(pool_id, market)
        self.pools.setdefault(pool_id, {})[normalize_address(market)] = PoolMarket(
            current.is_listed, collateral_factor, liquidation_threshold
        )
        return 0

    def collateral_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] == "setCollateralFactor"]


@dataclass
class FakeMarket:
    address: str
    token: str
    engine: object
    underlying_calls: int = field(default=0)

    async def underlying(self) -> str:
        self.underlying_calls += 1
        return self.token

    async def comptroller(self):
        return self.engine


def admin_permissions() -> StaticPermissionChecker:
    return StaticPermissionChecker(
        {
            SET_TOKEN_CONFIG: [ADMIN],
            SET_TOKEN_MONITORING_ENABLED: [ADMIN],
            SET_TRUSTED_KEEPER: [ADMIN],
            SET_TOKEN_ORACLE_CONFIG: [ADMIN],
        }
    )


@dataclass
class SentinelHarness:
    controller: DeviationController
    oracle: FakeFeed
    sentinel: FakeFeed
    events: RecordingEventSink
    single_engine: FakeSinglePoolEngine
    multi_engine: FakeMultiPoolEngine

    def market(self, engine=None, *, address: str = MARKET, token: str = TOKEN) -> FakeMarket:
        return FakeMarket(address=address, token=token, engine=engine or self.single_engine)

    def set_prices(self, oracle_price: int, sentinel_price: int, token: str = TOKEN) -> None:
        self.oracle.set(token, oracle_price)
        self.sentinel.set(token, sentinel_price)


def build_harness(*, dry_run: bool = False, threshold: int = 10) -> SentinelHarness:
    oracle = FakeFeed("resilient_oracle", {TOKEN: PRICE})
    sentinel = FakeFeed("sentinel_oracle", {TOKEN: PRICE})
    events = RecordingEventSink()
    single_engine = FakeSinglePoolEngine()
    single_engine.list_market(MARKET, 8 * 10**17, 85 * 10**16)
    multi_engine = FakeMultiPoolEngine()
    controller = DeviationController(
        oracle,
        sentinel,
        permission_checker=admin_permissions(),
        multi_pool_engine=multi_engine,
        event_sink=events,
        dry_run=dry_run,
    )
    controller.set_token_config(TOKEN, TokenMonitorConfig(deviation=threshold, enabled=True), caller=ADMIN)
    controller.set_trusted_keeper(KEEPER, True, caller=ADMIN)
    events.clear()
    return SentinelHarness(controller, oracle, sentinel, events, single_engine, multi_engine)
