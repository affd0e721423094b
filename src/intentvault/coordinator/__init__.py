from .approval import ApprovalSigner, plan_route
from .coordinator import ExecutionCoordinator
from .ledger import IntentLedger, IntentRecord
from .rate_limit import RateDecision, SlidingWindowRateLimiter
from .swap import SimulatedSwapEngine, SwapEngine, SwapResult
from .validator import IntentValidator, ValidationOutcome

__all__ = [
    "ApprovalSigner",
    "plan_route",
    "ExecutionCoordinator",
    "IntentLedger",
    "IntentRecord",
    "RateDecision",
    "SlidingWindowRateLimiter",
    "SimulatedSwapEngine",
    "SwapEngine",
    "SwapResult",
    "IntentValidator",
    "ValidationOutcome",
]
