"""In-memory views of vault state and keeper outcomes.

Nothing here is persisted: every tick re-reads the chain and builds fresh
objects.
"""

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

USDC_DECIMALS = 6

# UserEvaluation.outcome values
OUTCOME_ERROR = "error"
OUTCOME_CLOSED = "closed"
OUTCOME_IN_RANGE = "in_range"
OUTCOME_SKIPPED = "skipped"
OUTCOME_REBALANCED = "rebalanced"
OUTCOME_FAILED = "failed"


def format_units(value: int, decimals: int) -> str:
    """Renders a raw integer amount as a plain decimal string (no exponent)."""
    amount = Decimal(value) / (Decimal(10) ** decimals)
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


@dataclass(frozen=True)
class PositionSnapshot:
    tick_lower: int
    tick_upper: int
    liquidity: int
    deposited_usdc: int
    deposit_timestamp: int
    salt: bytes = b""

    @classmethod
    def from_chain(cls, raw):
        """Builds a snapshot from the getPosition() output tuple."""
        return cls(
            tick_lower=int(raw[0]),
            tick_upper=int(raw[1]),
            liquidity=int(raw[2]),
            deposited_usdc=int(raw[3]),
            deposit_timestamp=int(raw[4]),
            salt=bytes(raw[5]) if len(raw) > 5 else b"",
        )

    @property
    def is_closed(self) -> bool:
        return self.liquidity == 0

    @property
    def deposited_usdc_human(self) -> str:
        return format_units(self.deposited_usdc, USDC_DECIMALS)

    @property
    def deposit_time_iso(self) -> str:
        ts = datetime.datetime.fromtimestamp(self.deposit_timestamp, tz=datetime.timezone.utc)
        return ts.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class StrategyConfig:
    range_width: int
    rebalance_threshold: int  # bps
    slippage: int  # bps

    @classmethod
    def from_chain(cls, raw):
        """Builds a config from the getConfig() output tuple."""
        return cls(
            range_width=int(raw[0]),
            rebalance_threshold=int(raw[1]),
            slippage=int(raw[2]),
        )

    @property
    def rebalance_threshold_pct(self) -> str:
        return format_units(self.rebalance_threshold, 2)


@dataclass(frozen=True)
class UserState:
    position: PositionSnapshot
    config: StrategyConfig
    needs_rebalance: bool


@dataclass(frozen=True)
class RebalanceDecision:
    should_rebalance: bool
    reasoning: str
    fallback: bool = False


@dataclass
class UserEvaluation:
    user: str
    outcome: str
    decision: Optional[RebalanceDecision] = None
    tx_hash: Optional[str] = None


@dataclass
class TickReport:
    tracked: int = 0
    evaluations: List[UserEvaluation] = field(default_factory=list)
    elapsed_ms: float = 0.0

    def count(self, outcome):
        return sum(1 for e in self.evaluations if e.outcome == outcome)

    @property
    def rebalanced(self) -> int:
        return self.count(OUTCOME_REBALANCED)

    @property
    def failed(self) -> int:
        return self.count(OUTCOME_FAILED)
