"""Pydantic schemas for configuration validation."""
from __future__ import annotations
from typing import Optional
from pydantic import BaseModel, Field, field_validator


MONITORING_FREQUENCIES = ("10s", "1m", "5m", "15m", "1h", "4h", "1d")


class PlannerConfig(BaseModel):
    """Swap planner numeric policy."""
    usd_epsilon: float = Field(default=0.01, ge=0, description="USD gap treated as already on target")
    dust_floor_usd: float = Field(default=0.01, ge=0, description="Smallest swap worth emitting (USD)")
    slippage_tolerance: float = Field(default=0.005, ge=0, lt=1, description="Slippage buffer applied to min amount out")
    damping_factor: float = Field(default=1.0, gt=0, le=1, description="Fraction of each gap corrected per cycle")
    allocation_sum_tolerance: float = Field(default=0.001, gt=0, lt=1, description="Tolerance on sum of target fractions")


class ExecutorConfig(BaseModel):
    """Swap executor and confirmation wait settings."""
    confirmation_timeout_seconds: float = Field(default=60.0, gt=0, description="Max wait for a receipt")
    poll_interval_seconds: float = Field(default=2.0, gt=0, description="Receipt polling interval")
    approval_multiplier: int = Field(default=2, ge=1, description="Approve this multiple of the swap amount")
    dust_floor_usd: float = Field(default=0.01, ge=0, description="Swaps below this USD amount are rejected")


class OracleConfig(BaseModel):
    """Price oracle (Pyth Hermes) settings."""
    hermes_url: str = Field(default="https://hermes.pyth.network", description="Hermes REST endpoint")
    poll_interval_seconds: float = Field(default=10.0, gt=0, description="Background refresh interval")
    max_price_age_seconds: float = Field(default=300.0, gt=0, description="Cached quotes older than this are refetched")
    request_timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP timeout")
    max_retries: int = Field(default=3, ge=1, description="Attempts per Hermes request")
    record_history: bool = Field(default=True, description="Persist fetched quotes to price history")


class ChainConfig(BaseModel):
    """JSON-RPC chain access settings."""
    rpc_url: str = Field(default="https://mainnet.base.org/", description="JSON-RPC endpoint")
    chain_id: int = Field(default=8453, gt=0, description="EVM chain id")
    request_timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP timeout")
    max_retries: int = Field(default=3, ge=1, description="Attempts per RPC call")


class StorageConfig(BaseModel):
    """Persistence settings."""
    db_path: str = Field(default="data/openrebalance.duckdb", description="DuckDB file (or :memory:)")


class SchedulerConfig(BaseModel):
    """Monitoring scheduler settings."""
    default_frequency: str = Field(default="1h", description="Interval for new portfolios")
    default_threshold: float = Field(default=0.05, ge=0.001, le=0.5, description="Default rebalance tolerance")
    default_policy: str = Field(default="threshold", description="threshold or strict_periodic")

    @field_validator("default_frequency")
    @classmethod
    def validate_frequency(cls, v):
        if v not in MONITORING_FREQUENCIES:
            raise ValueError(f"default_frequency must be one of {MONITORING_FREQUENCIES}")
        return v

    @field_validator("default_policy")
    @classmethod
    def validate_policy(cls, v):
        if v not in ("threshold", "strict_periodic"):
            raise ValueError("default_policy must be threshold or strict_periodic")
        return v


class LoggingConfig(BaseModel):
    """Logging settings."""
    log_dir: str = Field(default="logs", description="Directory for JSON log files")
    level: str = Field(default="INFO", description="Root level for openrebalance loggers")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v):
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("level must be DEBUG, INFO, WARNING, ERROR or CRITICAL")
        return v


class Config(BaseModel):
    """Main configuration schema."""
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    signing_key_ref: Optional[str] = Field(default=None, description="Default signing-key reference for new portfolios")
