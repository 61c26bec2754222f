"""
Core data model: scored opportunities, positions, watchlist entries, orders
and finalized trade records.

Timestamps are epoch seconds (float). Percentages are expressed on a 0-100
scale unless the field name says otherwise.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Confidence(str, Enum):
    IGNORE = "ignore"
    WATCH = "watch"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_ORDER.index(self)

    @property
    def is_actionable(self) -> bool:
        """Low, medium and high verdicts may be bought directly."""
        return self.rank >= Confidence.LOW.rank


_CONFIDENCE_ORDER = [
    Confidence.IGNORE,
    Confidence.WATCH,
    Confidence.LOW,
    Confidence.MEDIUM,
    Confidence.HIGH,
]


class PositionStatus(str, Enum):
    OPEN = "open"
    PARTIAL = "partial"
    CLOSED = "closed"


class CloseReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    TIMEOUT = "timeout"
    DEAD_DATA = "dead_data"
    MANUAL = "manual"


class WatchState(str, Enum):
    WATCHING = "watching"
    DIP_DETECTED = "dip_detected"
    WAITING_REBOUND = "waiting_rebound"
    BUY_SIGNAL = "buy_signal"
    EXPIRED = "expired"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (WatchState.BUY_SIGNAL, WatchState.EXPIRED, WatchState.ABANDONED)


@dataclass
class ScoredOpportunity:
    """Output of the external scorer for one discovered asset."""
    mint: str
    symbol: str
    score: float  # 0-100
    confidence: Confidence
    reasons: List[str] = field(default_factory=list)
    name: str = ""

    # Market context captured at detection (optional, used by entry guards)
    price_native: float = 0.0
    market_cap: float = 0.0
    volume_5m: float = 0.0
    buy_count_5m: int = 0
    sell_count_5m: int = 0
    detected_at: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.confidence, Confidence):
            self.confidence = Confidence(str(self.confidence).lower())

    @property
    def buy_ratio_5m(self) -> float:
        total = self.buy_count_5m + self.sell_count_5m
        return self.buy_count_5m / total if total > 0 else 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoredOpportunity":
        return cls(
            mint=data["mint"],
            symbol=data.get("symbol", data["mint"][:6]),
            score=float(data.get("score", 0.0)),
            confidence=Confidence(str(data.get("confidence", "ignore")).lower()),
            reasons=list(data.get("reasons") or []),
            name=data.get("name", ""),
            price_native=float(data.get("price_native", 0.0) or 0.0),
            market_cap=float(data.get("market_cap", 0.0) or 0.0),
            volume_5m=float(data.get("volume_5m", 0.0) or 0.0),
            buy_count_5m=int(data.get("buy_count_5m", 0) or 0),
            sell_count_5m=int(data.get("sell_count_5m", 0) or 0),
            detected_at=data.get("detected_at"),
        )


@dataclass
class TradeOrder:
    """Order emitted by the risk gate (buy) or the supervisor (sell)."""
    side: str  # "buy" | "sell"
    mint: str
    symbol: str
    reason: str
    amount_sol: Optional[float] = None  # buys
    percent_to_sell: Optional[float] = None  # sells, % of the original position
    priority: str = "normal"  # "normal" | "high"
    position_id: Optional[str] = None


@dataclass
class Position:
    """One capital commitment, from fill to close."""
    mint: str
    symbol: str
    entry_price: float
    entry_amount_sol: float
    token_amount: float
    entry_time: float
    score: float = 0.0
    name: str = ""
    entry_reference: str = ""
    id: str = field(default_factory=lambda: f"pos_{uuid.uuid4().hex[:12]}")

    current_price: float = 0.0
    highest_price: float = 0.0
    pnl_pct: float = 0.0
    pnl_sol: float = 0.0

    remaining_pct: float = 100.0
    take_profit_stage: int = 0
    is_runner: bool = False
    runner_promoted_at: Optional[float] = None

    status: PositionStatus = PositionStatus.OPEN
    close_reason: Optional[CloseReason] = None

    # Proceeds and realized P&L booked by partial exits so far
    proceeds_sol: float = 0.0
    realized_pnl_sol: float = 0.0
    exit_references: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.current_price:
            self.current_price = self.entry_price
        if not self.highest_price:
            self.highest_price = self.entry_price

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED

    @property
    def committed_sol(self) -> float:
        """Capital still tied up in the open slice."""
        return self.entry_amount_sol * (self.remaining_pct / 100.0)

    @property
    def peak_pnl_pct(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return ((self.highest_price - self.entry_price) / self.entry_price) * 100.0

    @property
    def mode(self) -> str:
        return "runner" if self.is_runner else "scalp"

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.entry_time)

    def update_price(self, price: float) -> None:
        """Apply a live price: P&L and the post-entry high-water mark."""
        self.current_price = price
        if self.entry_price > 0:
            self.pnl_pct = ((price - self.entry_price) / self.entry_price) * 100.0
        self.pnl_sol = (price - self.entry_price) * self.token_amount * (self.remaining_pct / 100.0)
        if price > self.highest_price:
            self.highest_price = price

    def promote_to_runner(self, now: float) -> None:
        self.is_runner = True
        self.runner_promoted_at = now


@dataclass
class WatchEntry:
    """An opportunity parked on the watchlist until a dip and a rebound."""
    opportunity: ScoredOpportunity
    added_at: float
    highest_price: float
    lowest_since_high: float
    current_price: float
    last_check: float
    dip_pct: float = 0.0
    dip_detected: bool = False
    state: WatchState = WatchState.WATCHING
    history: List[WatchState] = field(default_factory=lambda: [WatchState.WATCHING])

    @property
    def mint(self) -> str:
        return self.opportunity.mint

    @property
    def symbol(self) -> str:
        return self.opportunity.symbol

    def observe(self, price: float, now: float) -> float:
        """Record a price tick and return the retracement from the high (%)."""
        self.current_price = price
        self.last_check = now
        if price > self.highest_price:
            self.highest_price = price
            self.lowest_since_high = price
        if price < self.lowest_since_high:
            self.lowest_since_high = price
        if self.highest_price > 0:
            self.dip_pct = ((self.highest_price - self.lowest_since_high) / self.highest_price) * 100.0
        return self.dip_pct

    def rebound_pct(self, price: float) -> float:
        if self.lowest_since_high <= 0:
            return 0.0
        return ((price - self.lowest_since_high) / self.lowest_since_high) * 100.0

    def transition(self, state: WatchState) -> None:
        self.state = state
        self.history.append(state)


@dataclass
class TradeRecord:
    """Finalized trade handed to storage once a position is fully closed."""
    id: str
    mint: str
    symbol: str
    entry_price: float
    exit_price: float
    invested_sol: float
    returned_sol: float
    pnl_sol: float
    pnl_pct: float
    entry_time: float
    exit_time: float
    duration_seconds: float
    score: float
    close_reason: str
    references: List[str] = field(default_factory=list)
    is_runner: bool = False

    @property
    def is_win(self) -> bool:
        return self.pnl_sol > 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["entry_at"] = datetime.fromtimestamp(self.entry_time, tz=timezone.utc).isoformat()
        d["exit_at"] = datetime.fromtimestamp(self.exit_time, tz=timezone.utc).isoformat()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)
