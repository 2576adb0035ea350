"""Domain entities, per-cycle value types and the error taxonomy."""
from .errors import (
    RebalanceError,
    PortfolioNotFoundError,
    InactivePortfolioError,
    AssetNotFoundError,
    ChainReadError,
    PriceUnavailableError,
    InvalidSwap,
    SwapExecutionError,
    ConfirmationTimeoutError,
    FatalResourceError,
    AllocationSumInvariantViolation,
    InvalidJobTransition,
)
from .models import (
    Asset,
    Portfolio,
    Allocation,
    RebalanceJob,
    SwapRecord,
    DeviationResult,
    SwapOperation,
    RebalancePlan,
    RebalancePolicy,
    RebalanceType,
    JobStatus,
    MONITORING_INTERVALS,
    check_allocation_sum,
    parse_policy,
    utcnow,
)

__all__ = [
    "RebalanceError",
    "PortfolioNotFoundError",
    "InactivePortfolioError",
    "AssetNotFoundError",
    "ChainReadError",
    "PriceUnavailableError",
    "InvalidSwap",
    "SwapExecutionError",
    "ConfirmationTimeoutError",
    "FatalResourceError",
    "AllocationSumInvariantViolation",
    "InvalidJobTransition",
    "Asset",
    "Portfolio",
    "Allocation",
    "RebalanceJob",
    "SwapRecord",
    "DeviationResult",
    "SwapOperation",
    "RebalancePlan",
    "RebalancePolicy",
    "RebalanceType",
    "JobStatus",
    "MONITORING_INTERVALS",
    "check_allocation_sum",
    "parse_policy",
    "utcnow",
]
