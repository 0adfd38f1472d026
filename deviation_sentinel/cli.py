"""CLI entry point for the keeper service."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Optional, Sequence

import uvicorn

from .config import Settings, load_sentinel_config
from .controller import DeviationController
from .keeper_loop import run_keeper
from .logging_setup import configure_logging
from .service import BindingsFactory, build_controller, resolve_bindings, select_markets
from .web import create_app

logger = logging.getLogger(__name__)

__all__ = ["load_bindings_factory", "main"]


def load_bindings_factory(spec: str) -> BindingsFactory:
    """Import ``module:attribute`` and return the bindings factory it names."""

    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Bindings must be given as 'module:attribute', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ValueError(f"Cannot import bindings module {module_name!r}: {exc}") from exc
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ValueError(f"Bindings factory {spec!r} is missing or not callable")
    return factory


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the price deviation keeper")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the JSON sentinel configuration. Defaults to $SENTINEL_CONFIG.",
    )
    parser.add_argument(
        "--bindings",
        default=os.environ.get("SENTINEL_BINDINGS"),
        metavar="MODULE:FACTORY",
        help=(
            "Callable that receives the loaded configuration and returns SentinelBindings "
            "(feeds, permission checker, admin and markets). Defaults to $SENTINEL_BINDINGS."
        ),
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Number of keeper passes to run. Use 0 to loop indefinitely.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Plan transitions without calling the risk engine")
    parser.add_argument("--api-host", default="127.0.0.1", help="Host address for the read-only API")
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="Serve the read-only API on this port while the keeper runs.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)

    if not args.bindings:
        parser.error("--bindings or SENTINEL_BINDINGS is required")
    if args.iterations < 0:
        parser.error("--iterations must be >= 0")

    try:
        return asyncio.run(_run_cli(args))
    except FileNotFoundError as exc:
        parser.error(str(exc))
    except json.JSONDecodeError as exc:
        parser.error(f"Configuration file is not valid JSON: {exc}")
    except (TypeError, ValueError) as exc:
        parser.error(str(exc))
    return 1


async def _run_cli(args: argparse.Namespace) -> int:
    base = load_sentinel_config(args.config) if args.config else None
    config = Settings.from_environment(base)
    if args.dry_run:
        config = replace(config, dry_run=True)
    configure_logging(config.debug)
    if not config.keeper_address:
        raise ValueError("No keeper address configured; set keeper_address or SENTINEL_KEEPER_ADDRESS")

    factory = load_bindings_factory(args.bindings)
    bindings = await resolve_bindings(factory, config)
    try:
        controller = build_controller(
            config,
            oracle=bindings.oracle,
            sentinel_oracle=bindings.sentinel_oracle,
            permission_checker=bindings.permission_checker,
            admin=bindings.admin,
            multi_pool_engine=bindings.multi_pool_engine,
        )
        markets = select_markets(config, bindings.markets)
        logger.info(
            "Starting keeper",
            extra={
                "keeper": config.keeper_address,
                "markets": len(markets),
                "interval": config.interval_seconds,
                "dry_run": config.dry_run,
            },
        )
        keeper = run_keeper(
            controller,
            markets,
            keeper=config.keeper_address,
            interval_seconds=config.interval_seconds,
            iterations=args.iterations or None,
        )
        if args.api_port is None:
            await keeper
        else:
            await _serve_alongside(controller, markets, keeper, host=args.api_host, port=args.api_port)
        return 0
    finally:
        await bindings.aclose()


async def _serve_alongside(
    controller: DeviationController, markets: Sequence, keeper: Awaitable[None], *, host: str, port: int
) -> None:
    app = create_app(controller, markets)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None))
    api = asyncio.ensure_future(server.serve())
    logger.info("Serving read-only API", extra={"host": host, "port": port})
    try:
        await keeper
    finally:
        server.should_exit = True
        await api


if __name__ == "__main__":  # pragma: no cover - manual invocation hook
    sys.exit(main())
