"""Domain models for portfolio monitoring and rebalancing.

Persistent entities (Asset, Portfolio, Allocation, RebalanceJob) and the
ephemeral per-cycle values (DeviationResult, SwapOperation, RebalancePlan).
Every model validates itself on construction.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..utils.validation import (
    ValidationError,
    ZERO_ADDRESS,
    validate_eth_address,
    validate_in_set,
    validate_int_range,
    validate_non_empty,
    validate_positive,
    validate_probability,
    validate_range,
)
from .errors import AllocationSumInvariantViolation, InvalidJobTransition, InvalidSwap


# Monitoring frequency -> seconds
MONITORING_INTERVALS: Dict[str, int] = {
    "10s": 10,
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}

MIN_THRESHOLD = 0.001
MAX_THRESHOLD = 0.5
ALLOCATION_SUM_TOLERANCE = 0.001


def utcnow() -> datetime:
    """Naive UTC timestamp (the storage layer keeps timestamps timezone-free)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class RebalancePolicy(Enum):
    """How a portfolio decides to act on drift."""
    THRESHOLD = "threshold"  # act only on assets past the tolerance
    STRICT_PERIODIC = "strict_periodic"  # always move toward exact targets


class RebalanceType(Enum):
    """Tag recorded on a RebalanceJob."""
    THRESHOLD = "threshold"
    STRICT_PERIODIC = "strict_periodic"
    MANUAL = "manual"

    @classmethod
    def for_policy(cls, policy: RebalancePolicy) -> "RebalanceType":
        return cls(policy.value)


class JobStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_JOB_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.EXECUTING, JobStatus.CANCELLED},
    JobStatus.EXECUTING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


def parse_policy(value: RebalancePolicy | str) -> RebalancePolicy:
    if isinstance(value, RebalancePolicy):
        return value
    try:
        return RebalancePolicy(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"rebalance_policy must be one of {[p.value for p in RebalancePolicy]}, got {value}"
        )


def check_allocation_sum(targets: Iterable[float], tolerance: float = ALLOCATION_SUM_TOLERANCE) -> float:
    """Return the sum of target fractions, raising if it is not 1 within tolerance."""
    total = float(sum(targets))
    if not abs(total - 1.0) < tolerance:
        raise AllocationSumInvariantViolation(total, tolerance)
    return total


@dataclass
class Asset:
    """A token on a chain. Shared reference data; only is_active may change once used."""
    symbol: str
    address: str
    decimals: int
    name: str = ""
    chain_id: int = 8453
    is_active: bool = True
    price_feed_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.symbol = validate_non_empty(self.symbol, "symbol").strip().upper()
        self.address = validate_eth_address(self.address, "address")
        self.decimals = validate_int_range(self.decimals, "decimals", 0, 18)
        if not self.name:
            self.name = self.symbol

    @property
    def is_native(self) -> bool:
        """Zero address denotes the chain's native coin."""
        return self.address == ZERO_ADDRESS


@dataclass
class Portfolio:
    owner_address: str
    name: str
    rebalance_policy: RebalancePolicy = RebalancePolicy.THRESHOLD
    rebalance_threshold: float = 0.05
    monitoring_frequency: str = "1h"
    signing_key_ref: str = ""
    is_active: bool = True
    monitoring_enabled: bool = True
    total_value_usd: float = 0.0
    last_rebalance_at: Optional[datetime] = None
    last_observed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.owner_address = validate_eth_address(self.owner_address, "owner_address")
        self.name = validate_non_empty(self.name, "name", max_length=100)
        self.rebalance_policy = parse_policy(self.rebalance_policy)
        self.rebalance_threshold = validate_range(
            self.rebalance_threshold, "rebalance_threshold", MIN_THRESHOLD, MAX_THRESHOLD
        )
        validate_in_set(self.monitoring_frequency, "monitoring_frequency", MONITORING_INTERVALS)
        validate_positive(self.total_value_usd, "total_value_usd", allow_zero=True)

    @property
    def interval_seconds(self) -> int:
        return MONITORING_INTERVALS[self.monitoring_frequency]


@dataclass
class Allocation:
    """Target/actual binding of one asset inside one portfolio."""
    portfolio_id: str
    asset_id: str
    target_percentage: float
    current_percentage: float = 0.0
    current_value_usd: float = 0.0
    current_balance: str = "0"  # smallest integer unit, as a string
    current_price_usd: float = 0.0
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.target_percentage = validate_probability(self.target_percentage, "target_percentage")
        self.current_percentage = validate_probability(self.current_percentage, "current_percentage")
        validate_positive(self.current_value_usd, "current_value_usd", allow_zero=True)
        if not str(self.current_balance).isdigit():
            raise ValidationError(f"current_balance must be a non-negative integer string, got {self.current_balance!r}")
        self.current_balance = str(self.current_balance)

    @property
    def balance_raw(self) -> int:
        return int(self.current_balance)


@dataclass
class SwapRecord:
    """Swap descriptor as stored on a RebalanceJob (token amounts as raw strings)."""
    from_asset: str
    to_asset: str
    amount: str
    expected_amount: str
    min_amount_out: str = "0"
    amount_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "amount": self.amount,
            "expected_amount": self.expected_amount,
            "min_amount_out": self.min_amount_out,
            "amount_usd": self.amount_usd,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRecord":
        return cls(
            from_asset=data["from_asset"],
            to_asset=data["to_asset"],
            amount=str(data["amount"]),
            expected_amount=str(data["expected_amount"]),
            min_amount_out=str(data.get("min_amount_out", "0")),
            amount_usd=float(data.get("amount_usd", 0.0)),
        )


@dataclass
class RebalanceJob:
    """Audit record of one executed (or attempted) rebalance."""
    portfolio_id: str
    rebalance_type: RebalanceType
    deviation_detected: float
    swaps: List[SwapRecord] = field(default_factory=list)
    tx_hashes: List[str] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        validate_positive(self.deviation_detected, "deviation_detected", allow_zero=True)

    def transition(self, new_status: JobStatus, error_message: Optional[str] = None) -> None:
        """Advance the status, enforcing pending -> executing -> completed|failed."""
        if new_status not in ALLOWED_JOB_TRANSITIONS[self.status]:
            raise InvalidJobTransition(self.status.value, new_status.value)
        self.status = new_status
        now = utcnow()
        if new_status is JobStatus.EXECUTING:
            self.executed_at = now
        elif new_status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
            self.completed_at = now
        if error_message is not None:
            self.error_message = error_message


@dataclass(frozen=True)
class DeviationResult:
    """Per-asset drift computed from the balances persisted this cycle."""
    asset: Asset
    target_percentage: float
    current_percentage: float
    deviation: float
    needs_rebalance: bool
    current_value_usd: float
    target_value_usd: float
    price_usd: float = 0.0
    current_balance_raw: int = 0

    @property
    def symbol(self) -> str:
        return self.asset.symbol

    @property
    def gap_usd(self) -> float:
        """Positive when the asset must be bought, negative when it must be sold."""
        return self.target_value_usd - self.current_value_usd


@dataclass(frozen=True)
class SwapOperation:
    """One planned swap; consumed by the executor within the same cycle."""
    from_asset: Asset
    to_asset: Asset
    amount_in_usd: float
    amount_in_tokens: int
    expected_amount_out: int
    min_amount_out: int
    priority: float

    def __post_init__(self):
        if self.from_asset.symbol == self.to_asset.symbol:
            raise InvalidSwap(f"Cannot swap {self.from_asset.symbol} to itself")
        if self.amount_in_usd <= 0:
            raise InvalidSwap(f"Swap amount must be positive, got {self.amount_in_usd}")
        if self.amount_in_tokens < 0 or self.expected_amount_out < 0 or self.min_amount_out < 0:
            raise InvalidSwap("Token amounts cannot be negative")
        if self.min_amount_out > self.expected_amount_out:
            raise InvalidSwap("min_amount_out cannot exceed expected_amount_out")

    def describe(self) -> str:
        return f"{self.from_asset.symbol} -> {self.to_asset.symbol}"

    def to_record(self) -> SwapRecord:
        return SwapRecord(
            from_asset=self.from_asset.symbol,
            to_asset=self.to_asset.symbol,
            amount=str(self.amount_in_tokens),
            expected_amount=str(self.expected_amount_out),
            min_amount_out=str(self.min_amount_out),
            amount_usd=round(self.amount_in_usd, 6),
        )


@dataclass
class RebalancePlan:
    portfolio_id: str
    policy: RebalancePolicy
    total_value_usd: float
    deviations: List[DeviationResult] = field(default_factory=list)
    swaps: List[SwapOperation] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def max_deviation(self) -> float:
        return max((d.deviation for d in self.deviations), default=0.0)

    @property
    def needs_rebalance(self) -> bool:
        return len(self.swaps) > 0

    @property
    def total_swap_usd(self) -> float:
        return sum(s.amount_in_usd for s in self.swaps)
