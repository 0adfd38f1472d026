"""Pure deviation logic and the read-only price comparison."""

from __future__ import annotations

import logging

from .errors import PriceFeedUnavailable, SentinelError
from .interfaces import PriceFeed
from .metrics import MetricRegistry, Timer
from .models import MAX_DEVIATION, DeviationResult

logger = logging.getLogger(__name__)


def evaluate_deviation(oracle_price: int, sentinel_price: int, threshold: int) -> DeviationResult:
    """Compare two fixed-point prices against ``threshold`` percent.

    A zero reading on either side is treated as a failed feed and reported as
    the maximal deviation. Otherwise the deviation is the absolute difference
    relative to the oracle price, floored to whole percent, and counts as a
    deviation when it reaches the threshold.
    """

    if oracle_price == 0 or sentinel_price == 0:
        return DeviationResult(
            has_deviation=True,
            oracle_price=oracle_price,
            sentinel_price=sentinel_price,
            deviation_percent=MAX_DEVIATION,
            threshold=threshold,
        )
    diff = abs(sentinel_price - oracle_price)
    deviation_percent = diff * 100 // oracle_price
    return DeviationResult(
        has_deviation=deviation_percent >= threshold,
        oracle_price=oracle_price,
        sentinel_price=sentinel_price,
        deviation_percent=deviation_percent,
        threshold=threshold,
    )


class DeviationEvaluator:
    """Fetch both prices for a token and compare them."""

    def __init__(
        self,
        oracle: PriceFeed,
        sentinel_oracle: PriceFeed,
        *,
        metrics: MetricRegistry | None = None,
    ) -> None:
        self._oracle = oracle
        self._sentinel_oracle = sentinel_oracle
        self._metrics = metrics or MetricRegistry()

    async def evaluate(self, token: str, threshold: int) -> DeviationResult:
        oracle_price = await self._fetch(self._oracle, token)
        sentinel_price = await self._fetch(self._sentinel_oracle, token)
        result = evaluate_deviation(oracle_price, sentinel_price, threshold)
        logger.debug(
            "Evaluated price deviation",
            extra={
                "token": token,
                "oracle_price": oracle_price,
                "sentinel_price": sentinel_price,
                "deviation_percent": result.deviation_percent,
                "threshold": threshold,
                "has_deviation": result.has_deviation,
            },
        )
        return result

    async def _fetch(self, feed: PriceFeed, token: str) -> int:
        name = getattr(feed, "name", type(feed).__name__)
        with Timer(self._metrics, "price_feed_latency_seconds", labels={"feed": name}):
            try:
                price = await feed.get_price(token)
            except PriceFeedUnavailable:
                self._metrics.inc("sentinel_errors_total", labels={"op": "get_price", "code": "unavailable"})
                raise
            except SentinelError as exc:
                self._metrics.inc("sentinel_errors_total", labels={"op": "get_price", "code": type(exc).__name__})
                raise PriceFeedUnavailable(name, token, str(exc)) from exc
            except Exception as exc:
                self._metrics.inc("sentinel_errors_total", labels={"op": "get_price", "code": "unknown"})
                logger.error(
                    "Price feed failed",
                    extra={"feed": name, "token": token, "error": str(exc)},
                    exc_info=True,
                )
                raise PriceFeedUnavailable(name, token, str(exc)) from exc
        if price is None or int(price) < 0:
            raise PriceFeedUnavailable(name, token, f"invalid price {price!r}")
        return int(price)
