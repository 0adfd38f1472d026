import asyncio

import pytest

from deviation_sentinel.controller import (
    PAUSE_BORROW,
    PAUSE_SUPPLY,
    RESTORE_COLLATERAL_FACTOR,
    UNPAUSE_BORROW,
    UNPAUSE_SUPPLY,
    ZERO_COLLATERAL_FACTOR,
    plan_transition,
)
from deviation_sentinel.errors import (
    MonitoringDisabled,
    NotConfigured,
    PriceFeedUnavailable,
    RiskEngineRejected,
    UnauthorizedKeeper,
)
from deviation_sentinel.evaluator import evaluate_deviation
from deviation_sentinel.interfaces import PoolMarket
from deviation_sentinel.models import Action, MarketState, PoolSnapshot
from tests.fakes import ADMIN, KEEPER, MARKET, PRICE, STRANGER, build_harness

HIGH = PRICE * 115 // 100
LOW = PRICE * 85 // 100
ORIGINAL_CF = 8 * 10**17
ORIGINAL_LT = 85 * 10**16


def _handle(harness, market=None):
    return asyncio.run(harness.controller.handle_deviation(market or harness.market(), caller=KEEPER))


def test_untrusted_caller_is_rejected_before_any_read(harness) -> None:
    market = harness.market()

    with pytest.raises(UnauthorizedKeeper):
        asyncio.run(harness.controller.handle_deviation(market, caller=STRANGER))

    assert market.underlying_calls == 0
    assert harness.oracle.calls == 0
    assert harness.sentinel.calls == 0
    assert harness.single_engine.calls == []


def test_revoked_keeper_loses_access(harness) -> None:
    harness.controller.set_trusted_keeper(KEEPER, False, caller=ADMIN)

    with pytest.raises(UnauthorizedKeeper):
        _handle(harness)


def test_high_skew_pauses_borrow_once(harness) -> None:
    harness.set_prices(PRICE, HIGH)

    first = _handle(harness)
    second = _handle(harness)

    assert first.steps == (PAUSE_BORROW,)
    assert first.changed
    assert second.steps == ()
    assert not second.changed
    assert harness.single_engine.is_paused(MARKET, Action.BORROW)
    assert not harness.single_engine.is_paused(MARKET, Action.MINT)
    assert len(harness.single_engine.calls) == 1
    assert harness.controller.market_state(MARKET).borrow_paused
    assert harness.events.names() == ["BorrowPaused"]
    assert harness.events.events[0].data["market"] == MARKET


def test_recovery_unpauses_borrow(harness) -> None:
    harness.set_prices(PRICE, HIGH)
    _handle(harness)
    harness.set_prices(PRICE, PRICE)

    outcome = _handle(harness)

    assert outcome.steps == (UNPAUSE_BORROW,)
    assert not harness.single_engine.is_paused(MARKET, Action.BORROW)
    assert harness.controller.market_state(MARKET) == MarketState()
    assert harness.events.names() == ["BorrowPaused", "BorrowUnpaused"]


def test_low_skew_zeroes_collateral_factor_and_pauses_supply(harness) -> None:
    harness.set_prices(PRICE, LOW)

    outcome = _handle(harness)
    repeat = _handle(harness)

    assert outcome.steps == (ZERO_COLLATERAL_FACTOR, PAUSE_SUPPLY)
    assert repeat.steps == ()
    assert harness.single_engine.listings[MARKET] == (True, 0, ORIGINAL_LT)
    assert harness.single_engine.is_paused(MARKET, Action.MINT)
    assert not harness.single_engine.is_paused(MARKET, Action.BORROW)
    state = harness.controller.market_state(MARKET)
    assert state.cf_modified and state.supply_paused
    assert (state.original_cf, state.original_lt) == (ORIGINAL_CF, ORIGINAL_LT)
    assert harness.events.names() == ["CollateralFactorUpdated", "SupplyPaused"]
    assert harness.events.events[0].data["old_collateral_factor"] == ORIGINAL_CF


def test_recovery_restores_collateral_factor_and_supply(harness) -> None:
    harness.set_prices(PRICE, LOW)
    _handle(harness)
    harness.set_prices(PRICE, PRICE)

    outcome = _handle(harness)

    assert outcome.steps == (RESTORE_COLLATERAL_FACTOR, UNPAUSE_SUPPLY)
    assert harness.single_engine.listings[MARKET] == (True, ORIGINAL_CF, ORIGINAL_LT)
    assert not harness.single_engine.is_paused(MARKET, Action.MINT)
    state = harness.controller.market_state(MARKET)
    assert state == MarketState()
    assert harness.events.names()[-2:] == ["CollateralFactorRestored", "SupplyUnpaused"]


def test_direction_flip_keeps_borrow_paused_until_recovery(harness) -> None:
    harness.set_prices(PRICE, HIGH)
    _handle(harness)
    harness.set_prices(PRICE, LOW)

    flipped = _handle(harness)

    assert flipped.steps == (ZERO_COLLATERAL_FACTOR, PAUSE_SUPPLY)
    assert harness.single_engine.is_paused(MARKET, Action.BORROW)

    harness.set_prices(PRICE, PRICE)
    recovered = _handle(harness)

    assert recovered.steps == (UNPAUSE_BORROW, RESTORE_COLLATERAL_FACTOR, UNPAUSE_SUPPLY)
    assert not harness.controller.market_state(MARKET).is_restricted


def test_no_deviation_on_clean_market_is_noop(harness) -> None:
    outcome = _handle(harness)

    assert outcome.steps == ()
    assert harness.single_engine.calls == []
    assert harness.events.events == []


def test_unconfigured_token_raises(harness) -> None:
    market = harness.market(token="0x9999999999999999999999999999999999999999")

    with pytest.raises(NotConfigured):
        _handle(harness, market)


def test_disabled_monitoring_raises(harness) -> None:
    harness.controller.set_token_monitoring_enabled(harness.market().token, False, caller=ADMIN)
    harness.set_prices(PRICE, HIGH)

    with pytest.raises(MonitoringDisabled):
        _handle(harness)

    assert harness.single_engine.calls == []


def test_dry_run_plans_without_mutating() -> None:
    harness = build_harness(dry_run=True)
    harness.set_prices(PRICE, LOW)

    outcome = _handle(harness)

    assert outcome.dry_run
    assert outcome.steps == (ZERO_COLLATERAL_FACTOR, PAUSE_SUPPLY)
    assert not outcome.changed
    assert harness.single_engine.calls == []
    assert harness.events.events == []
    assert not harness.controller.market_state(MARKET).is_restricted


def test_concurrent_keepers_apply_one_transition(harness) -> None:
    harness.set_prices(PRICE, HIGH)
    market = harness.market()

    async def _race():
        return await asyncio.gather(
            harness.controller.handle_deviation(market, caller=KEEPER),
            harness.controller.handle_deviation(market, caller=KEEPER),
        )

    outcomes = asyncio.run(_race())

    assert sorted(len(outcome.steps) for outcome in outcomes) == [0, 1]
    assert len(harness.single_engine.calls) == 1
    assert harness.events.names() == ["BorrowPaused"]


def test_failed_pause_compensates_collateral_factor(harness) -> None:
    harness.set_prices(PRICE, LOW)
    harness.single_engine.fail_ops.add("setActionsPaused")

    with pytest.raises(RiskEngineRejected) as excinfo:
        _handle(harness)

    assert excinfo.value.code is None
    assert excinfo.value.operation == "setActionsPaused"
    assert harness.single_engine.listings[MARKET] == (True, ORIGINAL_CF, ORIGINAL_LT)
    assert harness.controller.market_state(MARKET) == MarketState()
    assert harness.events.events == []
    assert [call[0] for call in harness.single_engine.calls] == [
        "setCollateralFactor",
        "setActionsPaused",
        "setCollateralFactor",
    ]


def test_rejected_pool_update_rolls_back_earlier_pools(harness) -> None:
    engine = harness.multi_engine
    engine.list_market(0, MARKET, ORIGINAL_CF, ORIGINAL_LT)
    engine.list_market(1, MARKET, 7 * 10**17, 75 * 10**16)
    engine.reject_codes[1] = 9
    harness.set_prices(PRICE, LOW)

    with pytest.raises(RiskEngineRejected) as excinfo:
        _handle(harness, harness.market(engine))

    assert excinfo.value.code == 9
    assert engine.pool_market(0, MARKET).collateral_factor == ORIGINAL_CF
    assert engine.pool_market(1, MARKET).collateral_factor == 7 * 10**17
    assert not engine.is_paused(MARKET, Action.MINT)
    assert harness.controller.market_state(MARKET) == MarketState()
    assert harness.controller.metrics.value(
        "sentinel_errors_total", labels={"op": "handle_deviation", "code": "9"}
    ) == 1


def test_failed_compensation_keeps_snapshot_for_stuck_pool(harness) -> None:
    engine = harness.multi_engine
    engine.list_market(0, MARKET, ORIGINAL_CF, ORIGINAL_LT)
    engine.list_market(1, MARKET, 7 * 10**17, 75 * 10**16)
    engine.reject_codes[1] = 9
    engine.reject_restores[0] = 7
    harness.set_prices(PRICE, LOW)
    market = harness.market(engine)

    with pytest.raises(RiskEngineRejected) as excinfo:
        _handle(harness, market)

    assert excinfo.value.code == 9
    assert engine.pool_market(0, MARKET).collateral_factor == 0
    assert harness.events.events == []
    stored = harness.controller.market_state(MARKET)
    assert stored.cf_modified
    assert stored.pool_snapshots == {0: PoolSnapshot(ORIGINAL_CF, ORIGINAL_LT)}
    assert not stored.supply_paused

    engine.reject_codes.clear()
    engine.reject_restores.clear()
    harness.set_prices(PRICE, PRICE)
    outcome = _handle(harness, market)

    assert outcome.steps == (RESTORE_COLLATERAL_FACTOR,)
    assert engine.pool_market(0, MARKET) == PoolMarket(True, ORIGINAL_CF, ORIGINAL_LT)
    assert engine.pool_market(1, MARKET).collateral_factor == 7 * 10**17
    assert harness.controller.market_state(MARKET) == MarketState()


def test_market_lock_is_reused_across_calls(harness) -> None:
    harness.set_prices(PRICE, HIGH)
    _handle(harness)
    lock = harness.controller._locks[MARKET]

    harness.set_prices(PRICE, PRICE)
    _handle(harness)

    assert list(harness.controller._locks) == [MARKET]
    assert harness.controller._locks[MARKET] is lock


def test_feed_failure_leaves_market_untouched(harness) -> None:
    harness.sentinel.error = TimeoutError("stale round")

    with pytest.raises(PriceFeedUnavailable):
        _handle(harness)

    assert harness.single_engine.calls == []


def test_check_price_deviation_is_read_only(harness) -> None:
    harness.controller.set_token_monitoring_enabled(harness.market().token, False, caller=ADMIN)
    harness.set_prices(PRICE, HIGH)

    result = asyncio.run(harness.controller.check_price_deviation(harness.market()))

    assert result.has_deviation and result.sentinel_price_higher
    assert result.deviation_percent == 15
    assert harness.single_engine.calls == []


def test_check_price_deviation_requires_config(harness) -> None:
    market = harness.market(token="0x9999999999999999999999999999999999999999")

    with pytest.raises(NotConfigured):
        asyncio.run(harness.controller.check_price_deviation(market))


def test_market_status_reports_engine_flags(harness) -> None:
    harness.set_prices(PRICE, HIGH)
    _handle(harness)

    status = asyncio.run(harness.controller.market_status(harness.market()))

    assert status["restricted"] is True
    assert status["state"]["borrow_paused"] is True
    assert status["engine"] == {
        "address": harness.single_engine.address,
        "multi_pool": False,
        "borrow_paused": True,
        "supply_paused": False,
    }


def test_transitions_are_counted(harness) -> None:
    harness.set_prices(PRICE, LOW)
    _handle(harness)

    metrics = harness.controller.metrics
    assert metrics.value("sentinel_transitions_total", labels={"action": ZERO_COLLATERAL_FACTOR}) == 1
    assert metrics.value("sentinel_transitions_total", labels={"action": PAUSE_SUPPLY}) == 1


@pytest.mark.parametrize(
    "state, prices, expected",
    [
        (MarketState(), (100, 115), [PAUSE_BORROW]),
        (MarketState(borrow_paused=True), (100, 115), []),
        (MarketState(), (100, 85), [ZERO_COLLATERAL_FACTOR, PAUSE_SUPPLY]),
        (MarketState(cf_modified=True), (100, 85), [PAUSE_SUPPLY]),
        (MarketState(supply_paused=True), (100, 85), [ZERO_COLLATERAL_FACTOR]),
        (MarketState(cf_modified=True, supply_paused=True), (100, 85), []),
        (MarketState(borrow_paused=True, supply_paused=True), (100, 100), [UNPAUSE_BORROW, UNPAUSE_SUPPLY]),
        (MarketState(), (100, 100), []),
    ],
)
def test_plan_transition(state, prices, expected) -> None:
    assert plan_transition(state, evaluate_deviation(*prices, 10)) == expected
