"""Read-only HTTP API exposing market health to observers.

Enforcement stays with keepers; nothing here mutates sentinel or risk engine
state.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .controller import DeviationController
from .errors import DownstreamError, NotConfigured
from .interfaces import Market
from .models import normalize_address

logger = logging.getLogger(__name__)


def create_app(controller: DeviationController, markets: Iterable[Market]) -> FastAPI:
    app = FastAPI(title="Deviation Sentinel")
    app.state.controller = controller
    app.state.markets = {normalize_address(market.address): market for market in markets}

    def _market(request: Request, address: str) -> Market:
        registry: Dict[str, Market] = request.app.state.markets
        market = registry.get(normalize_address(address))
        if market is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown market {address}")
        return market

    @app.get("/health", response_class=JSONResponse)
    async def health(request: Request) -> Dict[str, Any]:
        return {"status": "ok", "dry_run": request.app.state.controller.dry_run}

    @app.get("/api/markets", response_class=JSONResponse)
    async def list_markets(request: Request) -> Dict[str, Any]:
        return {"markets": sorted(request.app.state.markets)}

    @app.get("/api/markets/{address}/deviation", response_class=JSONResponse)
    async def market_deviation(address: str, request: Request) -> Dict[str, Any]:
        market = _market(request, address)
        try:
            result = await request.app.state.controller.check_price_deviation(market)
        except NotConfigured as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except DownstreamError as exc:
            logger.warning("Deviation check failed", extra={"market": address, "error": str(exc)})
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return {"market": market.address, **result.to_payload()}

    @app.get("/api/markets/{address}/status", response_class=JSONResponse)
    async def market_status(address: str, request: Request) -> Dict[str, Any]:
        market = _market(request, address)
        try:
            return await request.app.state.controller.market_status(market)
        except DownstreamError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    @app.get("/api/tokens/{token}/config", response_class=JSONResponse)
    async def token_config(token: str, request: Request) -> Dict[str, Any]:
        config = request.app.state.controller.token_config(token)
        if not config.is_configured:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Token {token} is not configured")
        return {"token": token, **config.as_dict()}

    @app.get("/api/metrics", response_class=JSONResponse)
    async def metrics(request: Request) -> Dict[str, Any]:
        return request.app.state.controller.metrics.snapshot()

    return app
