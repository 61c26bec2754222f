"""
Tests for the shared Ledger: capital bookkeeping across partial exits and
closes, daily counters, and the bounded seen-identifier set.
"""
import pytest

from core.ledger import Ledger
from core.models import CloseReason, PositionStatus
from tests.helpers import FakeClock, make_position


def _ledger(clock=None):
    return Ledger(initial_capital=1.0, reserve_floor=0.1, clock=clock or FakeClock())


class TestCapitalBookkeeping:
    def test_register_commits_entry_capital(self):
        ledger = _ledger()
        ledger.register_position(make_position(amount_sol=0.1))

        assert ledger.available_capital == pytest.approx(0.9)
        assert ledger.total_capital == pytest.approx(1.0)
        assert ledger.committed_capital() == pytest.approx(0.1)
        assert ledger.invariant_gap() == pytest.approx(0.0, abs=1e-12)

    def test_duplicate_registration_rejected(self):
        ledger = _ledger()
        position = make_position()
        ledger.register_position(position)

        with pytest.raises(ValueError):
            ledger.register_position(position)

    def test_partial_exit_books_slice_pnl(self):
        ledger = _ledger()
        position = make_position(amount_sol=0.1)
        ledger.register_position(position)

        pnl = ledger.record_partial_exit(position, 30, proceeds_sol=0.036, reference="sig1")

        assert pnl == pytest.approx(0.006)
        assert position.remaining_pct == pytest.approx(70)
        assert position.status == PositionStatus.PARTIAL
        assert ledger.available_capital == pytest.approx(0.936)
        assert ledger.total_capital == pytest.approx(1.006)
        assert ledger.daily_pnl_sol == pytest.approx(0.006)
        assert ledger.invariant_gap() == pytest.approx(0.0, abs=1e-12)
        # Partial exits do not count as trades
        assert ledger.daily_trade_count == 0

    def test_partial_exit_clamped_to_remaining(self):
        ledger = _ledger()
        position = make_position(amount_sol=0.1)
        ledger.register_position(position)
        ledger.record_partial_exit(position, 80, proceeds_sol=0.08)

        ledger.record_partial_exit(position, 50, proceeds_sol=0.02)

        assert position.remaining_pct == pytest.approx(0.0)
        assert 0.0 <= position.remaining_pct <= 100.0

    def test_close_after_partial_reports_whole_trade(self):
        clock = FakeClock()
        ledger = _ledger(clock)
        position = make_position(amount_sol=0.1, entry_time=clock())
        ledger.register_position(position)
        ledger.record_partial_exit(position, 30, proceeds_sol=0.036, reference="sig1")
        clock.advance(120)

        record = ledger.record_close(position, CloseReason.TAKE_PROFIT, proceeds_sol=0.084, reference="sig2")

        assert position.status == PositionStatus.CLOSED
        assert position.remaining_pct == 0.0
        assert position.id not in ledger.positions
        assert record.invested_sol == pytest.approx(0.1)
        assert record.returned_sol == pytest.approx(0.12)
        assert record.pnl_sol == pytest.approx(0.02)
        assert record.pnl_pct == pytest.approx(20.0)
        assert record.duration_seconds == pytest.approx(120)
        assert record.close_reason == "take_profit"
        assert record.references == ["sig1", "sig2"]

        assert ledger.total_capital == pytest.approx(1.02)
        assert ledger.available_capital == pytest.approx(1.02)
        assert ledger.daily_pnl_sol == pytest.approx(0.02)
        assert ledger.daily_pnl_pct == pytest.approx(2.0)
        assert ledger.invariant_gap() == pytest.approx(0.0, abs=1e-12)

    def test_close_counts_win_or_loss_once(self):
        ledger = _ledger()
        winner = make_position(mint="MINT_W", amount_sol=0.1)
        loser = make_position(mint="MINT_L", amount_sol=0.1)
        ledger.register_position(winner)
        ledger.register_position(loser)

        ledger.record_close(winner, CloseReason.TRAILING_STOP, proceeds_sol=0.13)
        ledger.record_close(loser, CloseReason.STOP_LOSS, proceeds_sol=0.09)

        assert ledger.daily_trade_count == 2
        assert ledger.daily_win_count == 1
        assert ledger.daily_loss_count == 1
        assert len(ledger.closed_today) == 2
        assert ledger.daily_win_rate == pytest.approx(0.5)

    def test_position_closes_exactly_once(self):
        ledger = _ledger()
        position = make_position()
        ledger.register_position(position)
        ledger.record_close(position, CloseReason.MANUAL, proceeds_sol=0.1)

        with pytest.raises(ValueError):
            ledger.record_close(position, CloseReason.MANUAL, proceeds_sol=0.1)
        with pytest.raises(ValueError):
            ledger.record_partial_exit(position, 10, proceeds_sol=0.01)
        assert ledger.daily_trade_count == 1

    def test_sync_balance_subtracts_committed(self):
        ledger = _ledger()
        position = make_position(amount_sol=0.2)
        ledger.register_position(position)
        ledger.record_partial_exit(position, 50, proceeds_sol=0.1)

        ledger.sync_balance(1.5)

        assert ledger.total_capital == pytest.approx(1.5)
        assert ledger.available_capital == pytest.approx(1.4)
        assert ledger.invariant_gap() == pytest.approx(0.0, abs=1e-12)


class TestDailyState:
    def test_reset_daily_clears_counters_and_pause(self):
        clock = FakeClock()
        ledger = _ledger(clock)
        position = make_position()
        ledger.register_position(position)
        ledger.record_close(position, CloseReason.STOP_LOSS, proceeds_sol=0.05)
        ledger.pause(clock() + 600)
        clock.advance(3600)

        ledger.reset_daily()

        assert ledger.daily_pnl_sol == 0.0
        assert ledger.daily_pnl_pct == 0.0
        assert ledger.daily_trade_count == 0
        assert ledger.daily_win_count == 0
        assert ledger.daily_loss_count == 0
        assert len(ledger.closed_today) == 0
        assert ledger.is_paused is False
        assert ledger.pause_until is None
        assert ledger.last_reset_at == clock()
        # Capital itself is not a daily figure
        assert ledger.total_capital == pytest.approx(0.95)

    def test_loss_ratio_uses_initial_capital(self):
        ledger = Ledger(initial_capital=0.6, reserve_floor=0.06)
        ledger.daily_pnl_sol = -0.05

        assert ledger.daily_loss_ratio == pytest.approx(0.05 / 0.6)


class TestSeenSet:
    def test_mark_seen_reports_new_identifiers_only(self):
        ledger = _ledger()

        assert ledger.mark_seen("abc") is True
        assert ledger.mark_seen("abc") is False
        assert ledger.was_seen("abc")

    def test_oldest_half_evicted_past_limit(self):
        ledger = Ledger(1.0, 0.1, clock=FakeClock(), seen_limit=10, seen_evict=5)
        for i in range(11):
            ledger.mark_seen(f"m{i}")

        assert ledger.seen_count == 6
        assert not ledger.was_seen("m0")
        assert not ledger.was_seen("m4")
        assert ledger.was_seen("m5")
        assert ledger.was_seen("m10")

    def test_snapshot_shape(self):
        ledger = _ledger()
        ledger.register_position(make_position(amount_sol=0.1))

        snap = ledger.snapshot()

        assert snap["open_positions"] == 1
        assert snap["committed_capital"] == pytest.approx(0.1)
        assert snap["paused"] is False
