"""Collaborator contracts consumed by the sentinel."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, Tuple, Union

from .models import Action


class PriceFeed(Protocol):
    """Returns ``price * 10**token_decimals`` scaled to 36 decimals."""

    name: str

    async def get_price(self, token: str) -> int:
        ...


@dataclass(frozen=True)
class PoolMarket:
    is_listed: bool
    collateral_factor: int
    liquidation_threshold: int


class RiskEngine(Protocol):
    address: str

    async def set_actions_paused(self, markets: Sequence[str], actions: Sequence[Action], paused: bool) -> None:
        ...

    async def action_paused(self, market: str, action: Action) -> bool:
        ...


class MultiPoolRiskEngine(RiskEngine, Protocol):
    """Comptroller partitioning risk parameters into pools (e-mode groups)."""

    async def first_pool_id(self) -> int:
        ...

    async def last_pool_id(self) -> int:
        ...

    async def pool_markets(self, pool_id: int, market: str) -> PoolMarket:
        ...

    async def set_collateral_factor(
        self, pool_id: int, market: str, collateral_factor: int, liquidation_threshold: int
    ) -> int:
        """Return ``0`` on success, a comptroller error code otherwise."""


class SinglePoolRiskEngine(RiskEngine, Protocol):
    async def markets(self, market: str) -> Tuple[bool, int, int]:
        ...

    async def set_collateral_factor(self, market: str, collateral_factor: int, liquidation_threshold: int) -> None:
        """Raise on failure."""


AnyRiskEngine = Union[MultiPoolRiskEngine, SinglePoolRiskEngine]


class Market(Protocol):
    address: str

    async def underlying(self) -> str:
        ...

    async def comptroller(self) -> AnyRiskEngine:
        ...


class PermissionChecker(Protocol):
    def is_allowed_to_call(self, caller: str, operation: str) -> bool:
        ...


__all__ = [
    "PriceFeed",
    "PoolMarket",
    "RiskEngine",
    "MultiPoolRiskEngine",
    "SinglePoolRiskEngine",
    "AnyRiskEngine",
    "Market",
    "PermissionChecker",
]
