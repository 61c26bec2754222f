"""
Tests for RiskEngine: gate ordering, pause side effects, sizing tiers and
adjustments, and capital sync.
"""
import pytest

from core.events import EventBus, EventType
from core.exceptions import CriticalDataUnavailable
from core.ledger import Ledger
from core.risk import RiskEngine
from infra.metrics import MetricsRecorder
from tests.helpers import FakeClock, make_opportunity, make_policy, make_position, run


@pytest.fixture
def setup():
    clock = FakeClock()
    policy = make_policy()
    ledger = Ledger(policy.risk.initial_capital_sol, policy.risk.reserve_sol, clock=clock)
    events = EventBus()
    metrics = MetricsRecorder(enabled=False)
    engine = RiskEngine(policy.risk, events=events, metrics=metrics, clock=clock)
    return engine, ledger, events, clock, metrics


class TestGate:
    def test_fresh_ledger_allows(self, setup):
        engine, ledger, *_ = setup
        assert engine.can_open_position(ledger).approved

    def test_deployable_capital_is_available_minus_reserve(self, setup):
        engine, ledger, *_ = setup
        assert engine.deployable_capital(ledger) == pytest.approx(0.54)

        ledger.available_capital = 0.05
        assert engine.deployable_capital(ledger) == 0.0

    def test_position_cap(self, setup):
        engine, ledger, _, _, metrics = setup
        for i in range(18):
            ledger.register_position(make_position(mint=f"MINT_{i}", amount_sol=0.001))

        result = engine.can_open_position(ledger)

        assert not result.approved
        assert "max_open_positions" in result.violated_checks
        assert metrics.count("denial:position_cap") == 1

    def test_dust_denied(self, setup):
        engine, ledger, *_ = setup
        ledger.available_capital = 0.064  # deployable 0.004 < 0.005

        result = engine.can_open_position(ledger)

        assert not result.approved
        assert "min_deployable" in result.violated_checks

    def test_small_loss_allows(self, setup):
        # Scenario 2: -0.05 on 0.6 initial is ~8.3%, below the 30% ceiling
        engine, ledger, events, *_ = setup
        ledger.daily_pnl_sol = -0.05

        assert engine.can_open_position(ledger).approved
        assert not ledger.is_paused
        assert events.pending_of(EventType.RISK_ALERT) == []

    def test_daily_loss_at_ceiling_pauses_with_one_alert(self, setup):
        # Scenario 5
        engine, ledger, events, clock, metrics = setup
        ledger.daily_pnl_sol = -0.18  # exactly 30% of 0.6

        result = engine.can_open_position(ledger)

        assert not result.approved
        assert result.violated_checks == ["daily_loss"]
        assert ledger.is_paused is True
        assert ledger.pause_until == pytest.approx(clock() + 20 * 60)
        assert len(events.pending_of(EventType.RISK_ALERT)) == 1
        assert metrics.count("denial:daily_loss") == 1

        # Still paused on the next evaluation; no second alert
        again = engine.can_open_position(ledger)
        assert not again.approved
        assert again.violated_checks == ["paused"]
        assert "min remaining" in again.reason
        assert len(events.pending_of(EventType.RISK_ALERT)) == 1

    def test_profit_never_trips_daily_loss(self, setup):
        engine, ledger, *_ = setup
        ledger.daily_pnl_sol = 0.5

        assert engine.can_open_position(ledger).approved

    def test_pause_blocks_until_expiry_then_clears(self, setup):
        engine, ledger, _, clock, _ = setup
        ledger.pause(clock() + 600)

        clock.advance(599)
        assert not engine.can_open_position(ledger).approved
        assert ledger.is_paused

        clock.advance(1)  # now == pause_until
        assert engine.can_open_position(ledger).approved
        assert ledger.is_paused is False
        assert ledger.pause_until is None

    def test_pause_checked_before_cap(self, setup):
        engine, ledger, _, clock, _ = setup
        for i in range(18):
            ledger.register_position(make_position(mint=f"MINT_{i}", amount_sol=0.001))
        ledger.pause(clock() + 60)

        result = engine.can_open_position(ledger)

        assert result.violated_checks == ["paused"]

    def test_cap_checked_before_daily_loss(self, setup):
        # The daily-loss side effect only happens once the cap check passed
        engine, ledger, events, *_ = setup
        for i in range(18):
            ledger.register_position(make_position(mint=f"MINT_{i}", amount_sol=0.001))
        ledger.daily_pnl_sol = -0.3

        result = engine.can_open_position(ledger)

        assert result.violated_checks == ["max_open_positions"]
        assert not ledger.is_paused
        assert events.pending_of(EventType.RISK_ALERT) == []


class TestSizing:
    def test_high_tier_base_size(self, setup):
        # Scenario 1: deployable 0.5, score 65 -> 6% -> 0.03
        engine, ledger, *_ = setup
        ledger.available_capital = 0.56

        size = engine.position_size(make_opportunity(score=65, confidence="high"), ledger)

        assert size == pytest.approx(0.03)

    def test_loss_shrinks_proportionally(self, setup):
        # Scenario 2: factor max(0.5, 1 - 0.0833) ~= 0.917
        engine, ledger, *_ = setup
        ledger.daily_pnl_sol = -0.05
        base = 0.54 * 0.025

        size = engine.position_size(make_opportunity(score=40, confidence="low"), ledger)

        assert size == pytest.approx(base * (1 - 0.05 / 0.6))

    def test_loss_shrink_never_below_half(self, setup):
        engine, ledger, *_ = setup
        ledger.daily_pnl_sol = -0.5  # ratio 0.83
        base = 0.54 * 0.06

        size = engine.position_size(make_opportunity(score=70, confidence="high"), ledger)

        assert size == pytest.approx(base * 0.5)

    def test_win_boost_needs_more_than_two_wins_and_good_rate(self, setup):
        engine, ledger, *_ = setup
        opp = make_opportunity(score=55)
        base = 0.54 * 0.04
        ledger.daily_pnl_sol = 0.05
        ledger.daily_trade_count = 4
        ledger.daily_win_count = 3

        assert engine.position_size(opp, ledger) == pytest.approx(base * 1.1)

        ledger.daily_win_count = 2
        ledger.daily_trade_count = 2
        assert engine.position_size(opp, ledger) == pytest.approx(base)

    def test_tiers_monotonic_and_bounded(self, setup):
        engine, ledger, *_ = setup
        deployable = engine.deployable_capital(ledger)

        low = engine.position_size(make_opportunity(score=45, confidence="low"), ledger)
        medium = engine.position_size(make_opportunity(score=52), ledger)
        high = engine.position_size(make_opportunity(score=80, confidence="high"), ledger)

        assert high >= medium >= low
        for size in (low, medium, high):
            assert 0.003 <= size <= 0.15 * deployable + 1e-12

    def test_dust_floor_applies_last(self, setup):
        engine, ledger, *_ = setup
        ledger.available_capital = 0.1  # deployable 0.04, 2.5% = 0.001

        size = engine.position_size(make_opportunity(score=10, confidence="low"), ledger)

        assert size == pytest.approx(0.003)

    def test_cap_applies_after_floor(self):
        # Oversized tier: 40% of deployable gets capped at 15%
        policy = make_policy(size_pct_low=40, size_pct_medium=40, size_pct_high=40)
        ledger = Ledger(0.6, 0.06, clock=FakeClock())
        engine = RiskEngine(policy.risk, clock=ledger.clock)

        size = engine.position_size(make_opportunity(score=90, confidence="high"), ledger)

        assert size == pytest.approx(0.54 * 0.15)


class TestShouldBuy:
    def test_watch_and_ignore_are_not_actionable(self, setup):
        engine, ledger, *_ = setup

        assert engine.should_buy(make_opportunity(confidence="watch", score=40), ledger) is None
        assert engine.should_buy(make_opportunity(confidence="ignore", score=10), ledger) is None

    def test_order_for_actionable_opportunity(self, setup):
        engine, ledger, *_ = setup

        order = engine.should_buy(make_opportunity(score=58), ledger)

        assert order is not None
        assert order.side == "buy"
        assert order.mint == "MINT_A"
        assert order.priority == "high"
        assert order.amount_sol == pytest.approx(0.54 * 0.04)
        assert "58/100" in order.reason

    def test_normal_priority_below_threshold(self, setup):
        engine, ledger, *_ = setup

        order = engine.should_buy(make_opportunity(score=48, confidence="low"), ledger)

        assert order.priority == "normal"

    def test_duplicate_asset_refused(self, setup):
        engine, ledger, _, _, metrics = setup
        ledger.register_position(make_position(mint="MINT_A"))

        assert engine.should_buy(make_opportunity(mint="MINT_A"), ledger) is None
        assert metrics.count("denial:duplicate_asset") == 1

    def test_denied_gate_returns_none(self, setup):
        engine, ledger, _, clock, _ = setup
        ledger.pause(clock() + 60)

        assert engine.should_buy(make_opportunity(score=90, confidence="high"), ledger) is None


class TestCapitalSync:
    def test_sync_uses_provider_minus_committed(self):
        ledger = Ledger(0.6, 0.06, clock=FakeClock())
        ledger.register_position(make_position(amount_sol=0.1))
        engine = RiskEngine(make_policy().risk, balance_provider=lambda: 0.8)

        balance = run(engine.sync_capital(ledger))

        assert balance == 0.8
        assert ledger.total_capital == pytest.approx(0.8)
        assert ledger.available_capital == pytest.approx(0.7)

    def test_sync_propagates_provider_failure(self):
        ledger = Ledger(0.6, 0.06, clock=FakeClock())

        def broken():
            raise CriticalDataUnavailable("solana_rpc.getBalance")

        engine = RiskEngine(make_policy().risk, balance_provider=broken)

        with pytest.raises(CriticalDataUnavailable):
            run(engine.sync_capital(ledger))
        assert ledger.total_capital == pytest.approx(0.6)

    def test_sync_without_provider_is_noop(self):
        ledger = Ledger(0.6, 0.06, clock=FakeClock())
        engine = RiskEngine(make_policy().risk)

        assert run(engine.sync_capital(ledger)) == pytest.approx(0.6)
