"""Keeper-driven price deviation sentinel for lending markets."""

from .controller import DeviationController, DeviationOutcome, plan_transition
from .errors import (
    ExceedsMaxDeviation,
    InvalidDeviation,
    MonitoringDisabled,
    NotConfigured,
    PriceFeedUnavailable,
    RiskEngineRejected,
    SentinelError,
    TokenNotConfigured,
    Unauthorized,
    UnauthorizedKeeper,
    ZeroAddress,
)
from .evaluator import evaluate_deviation
from .models import Action, DeviationResult, MarketState, TokenMonitorConfig

__all__ = [
    "Action",
    "DeviationController",
    "DeviationOutcome",
    "DeviationResult",
    "ExceedsMaxDeviation",
    "InvalidDeviation",
    "MarketState",
    "MonitoringDisabled",
    "NotConfigured",
    "PriceFeedUnavailable",
    "RiskEngineRejected",
    "SentinelError",
    "TokenMonitorConfig",
    "TokenNotConfigured",
    "Unauthorized",
    "UnauthorizedKeeper",
    "ZeroAddress",
    "evaluate_deviation",
    "plan_transition",
]
