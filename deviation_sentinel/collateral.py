"""Collateral factor zeroing and restoration for both comptroller shapes."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, List, Optional

from .errors import RiskEngineRejected, SentinelError
from .events import COLLATERAL_FACTOR_RESTORED, COLLATERAL_FACTOR_UPDATED
from .interfaces import AnyRiskEngine, MultiPoolRiskEngine, PoolMarket, SinglePoolRiskEngine
from .models import MarketState, PoolSnapshot, normalize_address
from .transition import MarketTransition

logger = logging.getLogger(__name__)


async def engine_call(operation: str, call: Awaitable[Any]) -> Any:
    try:
        return await call
    except SentinelError:
        raise
    except Exception as exc:
        raise RiskEngineRejected(operation, detail=str(exc)) from exc


async def _set_pool_collateral_factor(
    engine: MultiPoolRiskEngine, pool_id: int, market: str, collateral_factor: int, liquidation_threshold: int
) -> None:
    code = await engine_call(
        "setCollateralFactor",
        engine.set_collateral_factor(pool_id, market, collateral_factor, liquidation_threshold),
    )
    if code:
        raise RiskEngineRejected("setCollateralFactor", int(code), detail=f"pool {pool_id}")


async def _set_single_collateral_factor(
    engine: SinglePoolRiskEngine, market: str, collateral_factor: int, liquidation_threshold: int
) -> None:
    await engine_call(
        "setCollateralFactor",
        engine.set_collateral_factor(market, collateral_factor, liquidation_threshold),
    )


class CollateralFactorManager:
    """Snapshot, zero, and restore a market's collateral factor.

    The market's comptroller is treated as multi-pool when its address matches
    the configured multi-pool engine; any other comptroller is single-pool.
    Pool id ranges are read from the engine on every call because pools can be
    added between zeroing and restoring.
    """

    def __init__(self, multi_pool_engine: Optional[MultiPoolRiskEngine]) -> None:
        self._multi_pool_engine = multi_pool_engine

    def is_multi_pool(self, engine: AnyRiskEngine) -> bool:
        if self._multi_pool_engine is None:
            return False
        return normalize_address(engine.address) == normalize_address(self._multi_pool_engine.address)

    async def zero(self, tx: MarketTransition, engine: AnyRiskEngine) -> None:
        if tx.state.cf_modified:
            return
        if self.is_multi_pool(engine):
            await self._zero_multi_pool(tx)
        else:
            await self._zero_single_pool(tx, engine)  # type: ignore[arg-type]

    async def restore(self, tx: MarketTransition, engine: AnyRiskEngine) -> None:
        if not tx.state.cf_modified:
            return
        if self.is_multi_pool(engine):
            await self._restore_multi_pool(tx)
        else:
            await self._restore_single_pool(tx, engine)  # type: ignore[arg-type]

    async def listed_pools(self, market: str) -> List[int]:
        engine = self._require_multi_pool()
        listed: List[int] = []
        for pool_id in await self._pool_range(engine):
            pool_market = await self._pool_market(engine, pool_id, market)
            if pool_market.is_listed:
                listed.append(pool_id)
        return listed

    def _require_multi_pool(self) -> MultiPoolRiskEngine:
        if self._multi_pool_engine is None:
            raise RuntimeError("No multi-pool risk engine configured")
        return self._multi_pool_engine

    async def _pool_range(self, engine: MultiPoolRiskEngine) -> range:
        first = int(await engine_call("firstPoolId", engine.first_pool_id()))
        last = int(await engine_call("lastPoolId", engine.last_pool_id()))
        return range(first, last + 1)

    async def _pool_market(self, engine: MultiPoolRiskEngine, pool_id: int, market: str) -> PoolMarket:
        return await engine_call("poolMarkets", engine.pool_markets(pool_id, market))

    async def _zero_multi_pool(self, tx: MarketTransition) -> None:
        engine = self._require_multi_pool()
        market = tx.market
        state = tx.state
        # Set before scanning so a repeated call never re-snapshots a zeroed pool.
        state.cf_modified = True
        for pool_id in await self._pool_range(engine):
            pool_market = await self._pool_market(engine, pool_id, market)
            if not pool_market.is_listed:
                continue
            cf = pool_market.collateral_factor
            lt = pool_market.liquidation_threshold
            state.pool_snapshots[pool_id] = PoolSnapshot(collateral_factor=cf, liquidation_threshold=lt)
            await _set_pool_collateral_factor(engine, pool_id, market, 0, lt)
            tx.performed(
                f"zero collateral factor in pool {pool_id}",
                lambda pool_id=pool_id, cf=cf, lt=lt: _set_pool_collateral_factor(engine, pool_id, market, cf, lt),
                keep=lambda kept, pool_id=pool_id, cf=cf, lt=lt: _keep_pool_zeroed(kept, pool_id, cf, lt),
            )
            tx.emit(
                COLLATERAL_FACTOR_UPDATED,
                {"pool_id": pool_id, "old_collateral_factor": cf, "new_collateral_factor": 0},
            )
            logger.warning(
                "Zeroed collateral factor",
                extra={"market": market, "pool_id": pool_id, "collateral_factor": cf, "liquidation_threshold": lt},
            )

    async def _restore_multi_pool(self, tx: MarketTransition) -> None:
        engine = self._require_multi_pool()
        market = tx.market
        state = tx.state
        for pool_id in await self._pool_range(engine):
            snapshot = state.pool_snapshots.get(pool_id)
            if snapshot is None:
                continue
            pool_market = await self._pool_market(engine, pool_id, market)
            if not pool_market.is_listed:
                continue
            await _set_pool_collateral_factor(
                engine, pool_id, market, snapshot.collateral_factor, snapshot.liquidation_threshold
            )
            tx.performed(
                f"restore collateral factor in pool {pool_id}",
                lambda pool_id=pool_id, lt=snapshot.liquidation_threshold: _set_pool_collateral_factor(
                    engine, pool_id, market, 0, lt
                ),
                keep=lambda kept, pool_id=pool_id: _keep_pool_restored(kept, pool_id),
            )
            tx.emit(
                COLLATERAL_FACTOR_RESTORED,
                {
                    "pool_id": pool_id,
                    "collateral_factor": snapshot.collateral_factor,
                    "liquidation_threshold": snapshot.liquidation_threshold,
                },
            )
            del state.pool_snapshots[pool_id]
            logger.info(
                "Restored collateral factor",
                extra={"market": market, "pool_id": pool_id, "collateral_factor": snapshot.collateral_factor},
            )
        if state.pool_snapshots:
            logger.warning(
                "Discarding snapshots for pools the market is no longer listed in",
                extra={"market": market, "pool_ids": sorted(state.pool_snapshots)},
            )
            state.pool_snapshots.clear()
        state.cf_modified = False

    async def _zero_single_pool(self, tx: MarketTransition, engine: SinglePoolRiskEngine) -> None:
        market = tx.market
        state = tx.state
        _, cf, lt = await engine_call("markets", engine.markets(market))
        cf, lt = int(cf), int(lt)
        state.original_cf = cf
        state.original_lt = lt
        await _set_single_collateral_factor(engine, market, 0, lt)
        tx.performed(
            "zero collateral factor",
            lambda: _set_single_collateral_factor(engine, market, cf, lt),
            keep=lambda kept: _keep_single_zeroed(kept, cf, lt),
        )
        state.cf_modified = True
        tx.emit(COLLATERAL_FACTOR_UPDATED, {"pool_id": None, "old_collateral_factor": cf, "new_collateral_factor": 0})
        logger.warning(
            "Zeroed collateral factor",
            extra={"market": market, "collateral_factor": cf, "liquidation_threshold": lt},
        )

    async def _restore_single_pool(self, tx: MarketTransition, engine: SinglePoolRiskEngine) -> None:
        market = tx.market
        state = tx.state
        cf, lt = state.original_cf, state.original_lt
        await _set_single_collateral_factor(engine, market, cf, lt)
        tx.performed(
            "restore collateral factor",
            lambda: _set_single_collateral_factor(engine, market, 0, lt),
            keep=_keep_single_restored,
        )
        tx.emit(
            COLLATERAL_FACTOR_RESTORED,
            {"pool_id": None, "collateral_factor": cf, "liquidation_threshold": lt},
        )
        state.original_cf = 0
        state.original_lt = 0
        state.cf_modified = False
        logger.info("Restored collateral factor", extra={"market": market, "collateral_factor": cf})


def _keep_pool_zeroed(state: MarketState, pool_id: int, cf: int, lt: int) -> None:
    state.cf_modified = True
    state.pool_snapshots[pool_id] = PoolSnapshot(collateral_factor=cf, liquidation_threshold=lt)


def _keep_pool_restored(state: MarketState, pool_id: int) -> None:
    state.pool_snapshots.pop(pool_id, None)
    if not state.pool_snapshots:
        state.cf_modified = False


def _keep_single_zeroed(state: MarketState, cf: int, lt: int) -> None:
    state.cf_modified = True
    state.original_cf = cf
    state.original_lt = lt


def _keep_single_restored(state: MarketState) -> None:
    state.cf_modified = False
    state.original_cf = 0
    state.original_lt = 0
