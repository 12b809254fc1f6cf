"""Configuration for ledgers and the repayment collector."""

from __future__ import annotations
from dataclasses import dataclass
import os


@dataclass
class LedgerConfig:
    """Settings for constructing a Ledger."""

    name: str = "main"
    verbose: bool = False

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Create config from LOANLEDGER_NAME / LOANLEDGER_VERBOSE."""
        return cls(
            name=os.getenv("LOANLEDGER_NAME", "main"),
            verbose=os.getenv("LOANLEDGER_VERBOSE", "false").lower() == "true",
        )


@dataclass
class CollectorConfig:
    """
    Repayment collector settings.

    poll_interval_seconds: spacing of RepaymentCollector.poll_times()
    max_attempts: submission attempts per installment (transient failures only)
    lead_seconds: how long before the next due time an installment is paid
    log_level: level passed to setup_logging by callers that own logging
    """

    poll_interval_seconds: int = 30
    max_attempts: int = 3
    lead_seconds: int = 0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.poll_interval_seconds <= 0:
            raise ValueError(f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.lead_seconds < 0:
            raise ValueError(f"lead_seconds cannot be negative, got {self.lead_seconds}")

    @classmethod
    def from_env(cls) -> CollectorConfig:
        """Create config from LOANLEDGER_* environment variables."""
        return cls(
            poll_interval_seconds=int(os.getenv("LOANLEDGER_POLL_INTERVAL", "30")),
            max_attempts=int(os.getenv("LOANLEDGER_MAX_ATTEMPTS", "3")),
            lead_seconds=int(os.getenv("LOANLEDGER_LEAD_SECONDS", "0")),
            log_level=os.getenv("LOANLEDGER_LOG_LEVEL", "INFO"),
        )
