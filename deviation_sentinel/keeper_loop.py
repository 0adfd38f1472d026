"""Periodic keeper passes over monitored markets."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .controller import DeviationController, DeviationOutcome
from .errors import MonitoringDisabled, NotConfigured
from .interfaces import Market
from .metrics import MetricRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeeperResult:
    market: str
    outcome: Optional[DeviationOutcome] = None
    skipped: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def keeper_loop(
    controller: DeviationController,
    markets: Iterable[Market],
    *,
    keeper: str,
    metrics: Optional[MetricRegistry] = None,
) -> List[KeeperResult]:
    """Run one ``handle_deviation`` pass over ``markets``.

    A failing market is logged and reported in its result without stopping the
    pass. Unconfigured or disabled markets are reported as skipped.
    """

    metrics = metrics or controller.metrics
    results: List[KeeperResult] = []
    started = time.perf_counter()
    for market in markets:
        try:
            outcome = await controller.handle_deviation(market, caller=keeper)
        except (NotConfigured, MonitoringDisabled) as exc:
            logger.debug("Skipping market", extra={"market": market.address, "reason": str(exc)})
            results.append(KeeperResult(market.address, skipped=type(exc).__name__))
            continue
        except Exception as exc:
            metrics.inc("keeper_market_errors_total", labels={"code": type(exc).__name__})
            logger.error(
                "Keeper pass failed for market",
                extra={"market": market.address, "error": str(exc)},
                exc_info=True,
            )
            results.append(KeeperResult(market.address, error=str(exc)))
            continue
        results.append(KeeperResult(market.address, outcome=outcome))
    duration = time.perf_counter() - started
    metrics.observe("keeper_loop_latency_seconds", duration)
    summary: Dict[str, int] = {
        "markets": len(results),
        "changed": sum(1 for r in results if r.outcome is not None and r.outcome.changed),
        "skipped": sum(1 for r in results if r.skipped),
        "failed": sum(1 for r in results if not r.ok),
    }
    logger.info("Keeper pass completed", extra={**summary, "duration": duration})
    return results


async def run_keeper(
    controller: DeviationController,
    markets: Iterable[Market],
    *,
    keeper: str,
    interval_seconds: float,
    iterations: Optional[int] = None,
) -> None:
    """Repeat :func:`keeper_loop` every ``interval_seconds``; forever when ``iterations`` is ``None``."""

    market_list = list(markets)
    completed = 0
    while iterations is None or completed < iterations:
        await keeper_loop(controller, market_list, keeper=keeper)
        completed += 1
        if iterations is not None and completed >= iterations:
            break
        await asyncio.sleep(interval_seconds)
