"""
Analytics: Trade Log

Append-only storage for finalized trades plus the performance stats used in
the periodic summary.

Backends:
- JSON Lines (`trades.jsonl`): source of truth, read back by load_trades()
- CSV (`trades.csv`): spreadsheet-friendly mirror
"""

import csv
import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from core.events import EventType, OutboundEvent
from core.models import TradeRecord

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "id", "mint", "symbol", "entry_at", "exit_at",
    "entry_price", "exit_price", "invested_sol", "returned_sol",
    "pnl_sol", "pnl_pct", "duration_seconds", "score",
    "close_reason", "is_runner", "references",
]


class TradeLog:
    """Persistent trade log (JSONL + CSV mirror)."""

    def __init__(self, log_dir: str = "data/trades", write_csv: bool = True):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.json_file = self.log_dir / "trades.jsonl"
        self.csv_file = self.log_dir / "trades.csv"
        self.write_csv = write_csv
        self._lock = threading.Lock()

        if write_csv:
            self._init_csv()

        logger.info(f"TradeLog initialized: dir={log_dir}, csv={write_csv}")

    def _init_csv(self):
        """Initialize CSV file with headers"""
        if not self.csv_file.exists():
            with open(self.csv_file, "w", newline="") as f:
                csv.writer(f).writerow(CSV_COLUMNS)

    def handle_event(self, event: OutboundEvent) -> None:
        """EventBus sink: persist trade records, ignore everything else."""
        if event.type != EventType.TRADE_RECORD:
            return
        record = event.data.get("record")
        if isinstance(record, TradeRecord):
            self.save(record)

    def save(self, trade: TradeRecord) -> None:
        row = trade.to_dict()
        with self._lock:
            with open(self.json_file, "a") as f:
                f.write(json.dumps(row) + "\n")
            if self.write_csv:
                with open(self.csv_file, "a", newline="") as f:
                    writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS, extrasaction="ignore")
                    writer.writerow({**row, "references": json.dumps(trade.references)})

        logger.info(
            f"Logged trade: {trade.id} ({trade.symbol}, {trade.close_reason}, "
            f"PnL={trade.pnl_sol:+.4f} SOL, return={trade.pnl_pct:+.2f}%)"
        )

    def load_trades(self, limit: Optional[int] = None) -> List[TradeRecord]:
        """Read trades back, oldest first. Corrupt lines are skipped."""
        if not self.json_file.exists():
            return []

        trades: List[TradeRecord] = []
        with open(self.json_file) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    trades.append(TradeRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Skipping corrupt trade line {lineno} in {self.json_file}: {e}")
        if limit is not None:
            trades = trades[-limit:]
        return trades

    def performance_stats(self) -> Dict:
        """Summary statistics over every logged trade"""
        trades = self.load_trades()
        if not trades:
            return {
                "total_trades": 0,
                "wins": 0,
                "losses": 0,
                "win_rate": 0.0,
                "total_pnl_sol": 0.0,
                "avg_pnl_pct": 0.0,
                "best_trade_pct": 0.0,
                "worst_trade_pct": 0.0,
            }

        wins = sum(1 for t in trades if t.is_win)
        return {
            "total_trades": len(trades),
            "wins": wins,
            "losses": len(trades) - wins,
            "win_rate": wins / len(trades) * 100.0,
            "total_pnl_sol": sum(t.pnl_sol for t in trades),
            "avg_pnl_pct": sum(t.pnl_pct for t in trades) / len(trades),
            "best_trade_pct": max(t.pnl_pct for t in trades),
            "worst_trade_pct": min(t.pnl_pct for t in trades),
        }
