"""
Trade log persistence and the all-time stats used in summaries.
"""
import csv
import json

import pytest

from analytics.trade_log import CSV_COLUMNS, TradeLog
from core.events import EventBus, EventType
from core.models import TradeRecord
from tests.helpers import START_TIME


def _trade(trade_id="pos_1", pnl_sol=0.02, pnl_pct=20.0, **overrides) -> TradeRecord:
    values = dict(
        id=trade_id,
        mint="MINT_A",
        symbol="A",
        entry_price=1.0,
        exit_price=1.2,
        invested_sol=0.1,
        returned_sol=0.1 + pnl_sol,
        pnl_sol=pnl_sol,
        pnl_pct=pnl_pct,
        entry_time=START_TIME,
        exit_time=START_TIME + 120,
        duration_seconds=120,
        score=62,
        close_reason="take_profit",
        references=["sig1", "sig2"],
    )
    values.update(overrides)
    return TradeRecord(**values)


@pytest.fixture
def trade_log(tmp_path):
    return TradeLog(log_dir=str(tmp_path / "trades"))


class TestPersistence:
    def test_save_and_load(self, trade_log):
        trade_log.save(_trade())

        loaded = trade_log.load_trades()

        assert loaded == [_trade()]

    def test_csv_mirror_has_header_and_row(self, trade_log):
        trade_log.save(_trade())

        with open(trade_log.csv_file, newline="") as f:
            rows = list(csv.DictReader(f))

        assert list(rows[0].keys()) == CSV_COLUMNS
        assert rows[0]["symbol"] == "A"
        assert rows[0]["exit_at"].startswith("2023-11-14T")
        assert json.loads(rows[0]["references"]) == ["sig1", "sig2"]

    def test_csv_disabled(self, tmp_path):
        log = TradeLog(log_dir=str(tmp_path), write_csv=False)
        log.save(_trade())

        assert not log.csv_file.exists()
        assert len(log.load_trades()) == 1

    def test_corrupt_lines_skipped(self, trade_log):
        trade_log.save(_trade("pos_1"))
        with open(trade_log.json_file, "a") as f:
            f.write("{not json\n")
            f.write(json.dumps({"id": "partial"}) + "\n")
            f.write("\n")
        trade_log.save(_trade("pos_2"))

        assert [t.id for t in trade_log.load_trades()] == ["pos_1", "pos_2"]

    def test_limit_returns_most_recent(self, trade_log):
        for i in range(5):
            trade_log.save(_trade(f"pos_{i}"))

        assert [t.id for t in trade_log.load_trades(limit=2)] == ["pos_3", "pos_4"]

    def test_reopening_keeps_history(self, tmp_path):
        TradeLog(log_dir=str(tmp_path)).save(_trade())

        reopened = TradeLog(log_dir=str(tmp_path))

        assert len(reopened.load_trades()) == 1
        with open(reopened.csv_file) as f:
            assert sum(1 for _ in f) == 2


class TestEventSink:
    def test_persists_trade_record_events_only(self, trade_log):
        bus = EventBus()
        bus.subscribe(trade_log.handle_event)

        bus.emit(EventType.BUY, title="buy", mint="MINT_A")
        bus.emit(EventType.TRADE_RECORD, title="trade", record=_trade())
        bus.emit(EventType.TRADE_RECORD, title="not a record", record={"id": "x"})
        bus.dispatch_pending()

        assert [t.id for t in trade_log.load_trades()] == ["pos_1"]


class TestPerformanceStats:
    def test_empty_log(self, trade_log):
        stats = trade_log.performance_stats()

        assert stats["total_trades"] == 0
        assert stats["win_rate"] == 0.0

    def test_stats_over_all_trades(self, trade_log):
        trade_log.save(_trade("w1", pnl_sol=0.02, pnl_pct=20.0))
        trade_log.save(_trade("w2", pnl_sol=0.01, pnl_pct=10.0))
        trade_log.save(_trade("l1", pnl_sol=-0.015, pnl_pct=-15.0, close_reason="stop_loss"))

        stats = trade_log.performance_stats()

        assert stats["total_trades"] == 3
        assert stats["wins"] == 2
        assert stats["losses"] == 1
        assert stats["win_rate"] == pytest.approx(66.6667, rel=1e-4)
        assert stats["total_pnl_sol"] == pytest.approx(0.015)
        assert stats["avg_pnl_pct"] == pytest.approx(5.0)
        assert stats["best_trade_pct"] == pytest.approx(20.0)
        assert stats["worst_trade_pct"] == pytest.approx(-15.0)
