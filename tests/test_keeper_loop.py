import asyncio

from deviation_sentinel.controller import PAUSE_BORROW
from deviation_sentinel.keeper_loop import keeper_loop, run_keeper
from deviation_sentinel.models import Action
from tests.fakes import ADMIN, KEEPER, MARKET, PRICE, FakeSinglePoolEngine

OTHER_MARKET = "0x7777777777777777777777777777777777777777"
UNCONFIGURED_MARKET = "0x8888888888888888888888888888888888888888"
UNKNOWN_TOKEN = "0x9999999999999999999999999999999999999999"


def test_keeper_loop_isolates_failing_markets(harness) -> None:
    harness.set_prices(PRICE, PRICE * 120 // 100)
    broken_engine = FakeSinglePoolEngine(address="0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa")
    broken_engine.fail_ops.add("setActionsPaused")
    markets = [
        harness.market(address=OTHER_MARKET, engine=broken_engine),
        harness.market(address=UNCONFIGURED_MARKET, token=UNKNOWN_TOKEN),
        harness.market(),
    ]

    results = asyncio.run(keeper_loop(harness.controller, markets, keeper=KEEPER))

    by_market = {result.market: result for result in results}
    assert not by_market[OTHER_MARKET].ok
    assert by_market[UNCONFIGURED_MARKET].skipped == "NotConfigured"
    assert by_market[MARKET].outcome.steps == (PAUSE_BORROW,)
    assert harness.single_engine.is_paused(MARKET, Action.BORROW)
    metrics = harness.controller.metrics
    assert metrics.total("keeper_market_errors_total") == 1
    assert metrics.histograms


def test_keeper_loop_skips_disabled_markets(harness) -> None:
    harness.controller.set_token_monitoring_enabled(harness.market().token, False, caller=ADMIN)

    results = asyncio.run(keeper_loop(harness.controller, [harness.market()], keeper=KEEPER))

    assert results[0].skipped == "MonitoringDisabled"
    assert results[0].ok


def test_run_keeper_repeats_passes(harness, monkeypatch) -> None:
    sleeps = []

    async def fake_sleep(seconds):
        if seconds:
            sleeps.append(seconds)

    monkeypatch.setattr("deviation_sentinel.keeper_loop.asyncio.sleep", fake_sleep)
    market = harness.market()

    asyncio.run(run_keeper(harness.controller, [market], keeper=KEEPER, interval_seconds=7, iterations=3))

    assert sleeps == [7, 7]
    assert harness.oracle.calls == 3
