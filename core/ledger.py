"""
Shared Ledger: the single in-memory record of capital, open positions and
daily performance counters.

Every component receives the same Ledger instance. Mutations go through the
methods below; nothing else writes its fields.

Invariant kept by every operation:
    available_capital == total_capital - sum(p.committed_sol for open p)
"""

import logging
import time
from collections import OrderedDict, deque
from typing import Callable, Deque, Dict, List, Optional

from core.models import CloseReason, Position, PositionStatus, TradeRecord, WatchEntry

logger = logging.getLogger(__name__)


class Ledger:
    SEEN_LIMIT = 10_000
    SEEN_EVICT = 5_000
    CLOSED_TODAY_LIMIT = 500

    def __init__(
        self,
        initial_capital: float,
        reserve_floor: float,
        clock: Callable[[], float] = time.time,
        seen_limit: int = SEEN_LIMIT,
        seen_evict: int = SEEN_EVICT,
        closed_today_limit: int = CLOSED_TODAY_LIMIT,
    ):
        self.clock = clock
        self.initial_capital = float(initial_capital)
        self.reserve_floor = float(reserve_floor)

        self.total_capital = float(initial_capital)
        self.available_capital = float(initial_capital)

        self.positions: Dict[str, Position] = {}
        self.closed_today: Deque[TradeRecord] = deque(maxlen=closed_today_limit)

        self.daily_pnl_sol = 0.0
        self.daily_pnl_pct = 0.0
        self.daily_trade_count = 0
        self.daily_win_count = 0
        self.daily_loss_count = 0

        self.is_paused = False
        self.pause_until: Optional[float] = None

        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._seen_limit = seen_limit
        self._seen_evict = seen_evict
        self.watchlist: Dict[str, WatchEntry] = {}

        self.start_time = clock()
        self.last_reset_at = self.start_time

    # ------------------------------------------------------------------
    # Capital
    # ------------------------------------------------------------------

    def set_balance(self, balance: float) -> None:
        """Seed capital at startup (no open positions yet)."""
        self.total_capital = float(balance)
        self.available_capital = float(balance) - self.committed_capital()

    def sync_balance(self, balance: float) -> None:
        """Reconcile against an external balance reading."""
        committed = self.committed_capital()
        previous = self.total_capital
        self.total_capital = float(balance)
        self.available_capital = float(balance) - committed
        logger.info(
            f"Capital synced: total {previous:.4f} -> {balance:.4f} SOL, "
            f"committed={committed:.4f}, available={self.available_capital:.4f}"
        )

    def committed_capital(self) -> float:
        return sum(p.committed_sol for p in self.positions.values())

    def invariant_gap(self) -> float:
        """Drift between available capital and total minus committed (should be ~0)."""
        return self.available_capital - (self.total_capital - self.committed_capital())

    @property
    def daily_loss_ratio(self) -> float:
        if self.initial_capital <= 0:
            return 0.0
        return abs(self.daily_pnl_sol) / self.initial_capital

    @property
    def daily_win_rate(self) -> float:
        return self.daily_win_count / max(1, self.daily_trade_count)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    @property
    def open_count(self) -> int:
        return len(self.positions)

    def open_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if not p.is_closed]

    def has_position_for(self, mint: str) -> bool:
        return any(p.mint == mint for p in self.positions.values())

    def register_position(self, position: Position) -> None:
        if position.id in self.positions:
            raise ValueError(f"Position {position.id} already registered")
        self.positions[position.id] = position
        self.available_capital -= position.entry_amount_sol
        logger.debug(
            f"Registered {position.symbol} ({position.id}): {position.entry_amount_sol:.4f} SOL committed, "
            f"available={self.available_capital:.4f}"
        )

    def record_partial_exit(
        self,
        position: Position,
        percent: float,
        proceeds_sol: float,
        reference: str = "",
    ) -> float:
        """
        Book a partial exit of `percent` of the original position.

        Returns the realized P&L of the slice.
        """
        if position.is_closed or position.id not in self.positions:
            raise ValueError(f"Position {position.id} is not open")

        percent = max(0.0, min(percent, position.remaining_pct))
        slice_cost = position.entry_amount_sol * (percent / 100.0)
        pnl = proceeds_sol - slice_cost

        position.remaining_pct = max(0.0, position.remaining_pct - percent)
        position.status = PositionStatus.PARTIAL
        position.proceeds_sol += proceeds_sol
        position.realized_pnl_sol += pnl
        if reference:
            position.exit_references.append(reference)

        self.available_capital += proceeds_sol
        self.total_capital += pnl
        self._book_pnl(pnl)
        return pnl

    def record_close(
        self,
        position: Position,
        reason: CloseReason,
        proceeds_sol: float,
        reference: str = "",
        now: Optional[float] = None,
    ) -> TradeRecord:
        """Close the remaining slice, remove the position and return its trade record."""
        if position.is_closed or position.id not in self.positions:
            raise ValueError(f"Position {position.id} is not open")

        now = self.clock() if now is None else now
        slice_cost = position.committed_sol
        slice_pnl = proceeds_sol - slice_cost

        position.proceeds_sol += proceeds_sol
        position.realized_pnl_sol += slice_pnl
        position.remaining_pct = 0.0
        position.status = PositionStatus.CLOSED
        position.close_reason = reason
        if reference:
            position.exit_references.append(reference)
        del self.positions[position.id]

        self.available_capital += proceeds_sol
        self.total_capital += slice_pnl
        self._book_pnl(slice_pnl)

        invested = position.entry_amount_sol
        returned = position.proceeds_sol
        trade_pnl = returned - invested
        record = TradeRecord(
            id=position.id,
            mint=position.mint,
            symbol=position.symbol,
            entry_price=position.entry_price,
            exit_price=position.current_price,
            invested_sol=invested,
            returned_sol=returned,
            pnl_sol=trade_pnl,
            pnl_pct=(trade_pnl / invested) * 100.0 if invested > 0 else 0.0,
            entry_time=position.entry_time,
            exit_time=now,
            duration_seconds=max(0.0, now - position.entry_time),
            score=position.score,
            close_reason=reason.value,
            references=[r for r in [position.entry_reference, *position.exit_references] if r],
            is_runner=position.is_runner,
        )

        self.daily_trade_count += 1
        if record.is_win:
            self.daily_win_count += 1
        else:
            self.daily_loss_count += 1
        self.closed_today.append(record)
        return record

    def _book_pnl(self, delta: float) -> None:
        self.daily_pnl_sol += delta
        if self.initial_capital > 0:
            self.daily_pnl_pct = (self.daily_pnl_sol / self.initial_capital) * 100.0

    # ------------------------------------------------------------------
    # Pause and daily reset
    # ------------------------------------------------------------------

    def pause(self, until: float) -> None:
        self.is_paused = True
        self.pause_until = until

    def clear_pause(self) -> None:
        self.is_paused = False
        self.pause_until = None

    def reset_daily(self) -> None:
        logger.info(
            f"Daily reset: pnl={self.daily_pnl_sol:+.4f} SOL, trades={self.daily_trade_count} "
            f"(W={self.daily_win_count} L={self.daily_loss_count})"
        )
        self.daily_pnl_sol = 0.0
        self.daily_pnl_pct = 0.0
        self.daily_trade_count = 0
        self.daily_win_count = 0
        self.daily_loss_count = 0
        self.closed_today.clear()
        self.clear_pause()
        self.last_reset_at = self.clock()

    # ------------------------------------------------------------------
    # Intake dedupe
    # ------------------------------------------------------------------

    def mark_seen(self, mint: str) -> bool:
        """Remember an identifier; False if it was already seen."""
        if mint in self._seen:
            return False
        self._seen[mint] = self.clock()
        if len(self._seen) > self._seen_limit:
            for _ in range(min(self._seen_evict, len(self._seen))):
                self._seen.popitem(last=False)
        return True

    def was_seen(self, mint: str) -> bool:
        return mint in self._seen

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def snapshot(self) -> Dict:
        return {
            "total_capital": round(self.total_capital, 6),
            "available_capital": round(self.available_capital, 6),
            "committed_capital": round(self.committed_capital(), 6),
            "open_positions": self.open_count,
            "daily_pnl_sol": round(self.daily_pnl_sol, 6),
            "daily_pnl_pct": round(self.daily_pnl_pct, 2),
            "daily_trades": self.daily_trade_count,
            "daily_wins": self.daily_win_count,
            "daily_losses": self.daily_loss_count,
            "paused": self.is_paused,
            "pause_until": self.pause_until,
            "watchlist": len(self.watchlist),
        }
