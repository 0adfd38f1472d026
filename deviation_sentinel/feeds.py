"""Price feeds: the per-token sentinel router and an exchange ticker feed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import ccxt.async_support as ccxt_async
from ccxt.base.errors import BaseError

from .access_control import SET_TOKEN_ORACLE_CONFIG, ensure_allowed
from .errors import PriceFeedUnavailable, TokenNotConfigured, ZeroAddress
from .events import TOKEN_ORACLE_CONFIG_UPDATED, EventSink, LoggingEventSink, SentinelEvent
from .interfaces import PermissionChecker, PriceFeed
from .models import is_zero_address, normalize_address

logger = logging.getLogger(__name__)

PRICE_DECIMALS = 36


def scale_price(price: Any, token_decimals: int) -> int:
    """Convert a human-readable USD price to the shared fixed-point convention.

    The result is ``price * 10**(36 - token_decimals)`` rounded down, so that
    multiplying a raw token amount by it yields a 36-decimal USD value.
    """

    if not 0 <= token_decimals <= PRICE_DECIMALS:
        raise ValueError(f"Token decimals must be within [0, {PRICE_DECIMALS}], got {token_decimals}")
    try:
        value = Decimal(str(price))
    except InvalidOperation as exc:
        raise ValueError(f"Price {price!r} is not numeric") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"Price {price!r} must be a finite, non-negative number")
    scaled = value.scaleb(PRICE_DECIMALS - token_decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


class SentinelOracle:
    """Route each token to its own secondary price feed."""

    name = "sentinel_oracle"

    def __init__(self, permission_checker: PermissionChecker, *, event_sink: Optional[EventSink] = None) -> None:
        self._permissions = permission_checker
        self._events = event_sink or LoggingEventSink()
        self._feeds: Dict[str, PriceFeed] = {}

    def set_token_oracle_config(self, token: str, feed: Optional[PriceFeed], *, caller: str) -> None:
        ensure_allowed(self._permissions, caller, SET_TOKEN_ORACLE_CONFIG)
        if is_zero_address(token):
            raise ZeroAddress("token")
        if feed is None or (hasattr(feed, "address") and is_zero_address(getattr(feed, "address"))):
            raise ZeroAddress("oracle")
        self._feeds[normalize_address(token)] = feed
        feed_name = getattr(feed, "name", type(feed).__name__)
        logger.info("Sentinel oracle route updated", extra={"token": token, "feed": feed_name})
        self._events.publish(SentinelEvent(TOKEN_ORACLE_CONFIG_UPDATED, {"token": token, "oracle": feed_name}))

    def feed_for(self, token: str) -> Optional[PriceFeed]:
        return self._feeds.get(normalize_address(token))

    async def get_price(self, token: str) -> int:
        feed = self.feed_for(token)
        if feed is None:
            raise TokenNotConfigured(token)
        return await feed.get_price(token)


@dataclass(frozen=True)
class TickerRoute:
    symbol: str
    decimals: int


class CcxtTickerFeed:
    """Last traded price of an exchange market, via a ``ccxt`` async client.

    Quote currencies are treated as USD; route tokens to USD or USD-stable
    quoted symbols only.
    """

    def __init__(self, exchange: Any, routes: Mapping[str, TickerRoute], *, name: Optional[str] = None) -> None:
        self.exchange = exchange
        self.name = name or f"ccxt:{getattr(exchange, 'id', 'exchange')}"
        self._routes = {normalize_address(token): route for token, route in routes.items()}

    @classmethod
    def from_exchange_id(
        cls,
        exchange_id: str,
        routes: Mapping[str, TickerRoute],
        *,
        options: Optional[Mapping[str, Any]] = None,
    ) -> "CcxtTickerFeed":
        exchange_class = getattr(ccxt_async, exchange_id, None)
        if exchange_class is None:
            raise ValueError(f"Unknown ccxt exchange id {exchange_id!r}")
        config: Dict[str, Any] = {"enableRateLimit": True}
        config.update(options or {})
        return cls(exchange_class(config), routes)

    async def get_price(self, token: str) -> int:
        route = self._routes.get(normalize_address(token))
        if route is None:
            raise TokenNotConfigured(token)
        try:
            ticker = await self.exchange.fetch_ticker(route.symbol)
        except BaseError as exc:
            logger.error(
                "Ticker fetch failed",
                extra={"feed": self.name, "symbol": route.symbol, "error": str(exc)},
            )
            raise PriceFeedUnavailable(self.name, token, str(exc)) from exc
        last = ticker.get("last") if isinstance(ticker, Mapping) else None
        if last is None and isinstance(ticker, Mapping):
            last = ticker.get("close")
        if last is None:
            raise PriceFeedUnavailable(self.name, token, f"no last price for {route.symbol}")
        try:
            return scale_price(last, route.decimals)
        except ValueError as exc:
            raise PriceFeedUnavailable(self.name, token, str(exc)) from exc

    async def close(self) -> None:
        closer = getattr(self.exchange, "close", None)
        if closer is not None:
            await closer()
