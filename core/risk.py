"""
Core: Risk Engine

Capital gate and position sizer. Decides whether a new position may open and
how large it should be, from the shared Ledger and the risk section of
policy.yaml.

Checks (in order):
1. Daily-loss pause
2. Open position cap
3. Daily loss ceiling (enters pause)
4. Dust (deployable capital floor)

`can_open_position` is not a pure predicate: a daily-loss breach puts the
ledger into pause and emits one risk alert.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from core.events import EventBus, EventType
from core.ledger import Ledger
from core.models import ScoredOpportunity, TradeOrder
from infra.metrics import MetricsRecorder
from tools.config_validator import RiskPolicy

logger = logging.getLogger(__name__)

# Tolerance for "meets or exceeds" comparisons on float ratios
_EPS = 1e-9


@dataclass
class RiskCheckResult:
    """Result of risk check"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = field(default_factory=list)


class RiskEngine:
    """
    Enforces capital constraints from policy.yaml.

    All state lives on the Ledger passed to each call; the engine itself only
    holds policy and collaborators.
    """

    def __init__(
        self,
        policy: RiskPolicy,
        events: Optional[EventBus] = None,
        balance_provider: Optional[Callable[[], float]] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.events = events
        self.balance_provider = balance_provider
        self.metrics = metrics
        self.clock = clock
        logger.info(
            f"Initialized RiskEngine: reserve={policy.reserve_sol} SOL, "
            f"max_positions={policy.max_open_positions}, daily_loss_limit={policy.daily_loss_limit_pct}%"
        )

    # ------------------------------------------------------------------
    # Capital
    # ------------------------------------------------------------------

    def deployable_capital(self, ledger: Ledger) -> float:
        return max(0.0, ledger.available_capital - self.policy.reserve_sol)

    async def sync_capital(self, ledger: Ledger) -> float:
        """
        Reconcile the ledger against the external balance.

        Raises whatever the balance provider raises (CriticalDataUnavailable
        for an unreachable RPC); callers decide whether that is fatal.
        """
        if self.balance_provider is None:
            logger.debug("No balance provider configured; skipping capital sync")
            return ledger.total_capital
        balance = await asyncio.to_thread(self.balance_provider)
        ledger.sync_balance(balance)
        return balance

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def can_open_position(self, ledger: Ledger) -> RiskCheckResult:
        now = self.clock()

        result = self._check_pause(ledger, now)
        if result.approved:
            result = self._check_position_cap(ledger)
        if result.approved:
            result = self._check_daily_loss(ledger, now)
        if result.approved:
            result = self._check_dust(ledger)

        if not result.approved and self.metrics:
            self.metrics.record_gate_denial(result.reason or "")
        return result

    def _check_pause(self, ledger: Ledger, now: float) -> RiskCheckResult:
        if not ledger.is_paused:
            return RiskCheckResult(approved=True)

        if ledger.pause_until is not None and now < ledger.pause_until:
            remaining = math.ceil((ledger.pause_until - now) / 60.0)
            return RiskCheckResult(
                approved=False,
                reason=f"Paused ({remaining} min remaining)",
                violated_checks=["paused"],
            )

        logger.info("Daily-loss pause expired, trading resumes")
        ledger.clear_pause()
        return RiskCheckResult(approved=True)

    def _check_position_cap(self, ledger: Ledger) -> RiskCheckResult:
        if ledger.open_count >= self.policy.max_open_positions:
            return RiskCheckResult(
                approved=False,
                reason=f"Max positions reached ({self.policy.max_open_positions})",
                violated_checks=["max_open_positions"],
            )
        return RiskCheckResult(approved=True)

    def _check_daily_loss(self, ledger: Ledger, now: float) -> RiskCheckResult:
        ceiling = self.policy.daily_loss_limit_pct / 100.0
        loss_ratio = ledger.daily_loss_ratio
        if ledger.daily_pnl_sol >= 0 or loss_ratio < ceiling - _EPS:
            return RiskCheckResult(approved=True)

        pause_until = now + self.policy.pause_minutes * 60.0
        ledger.pause(pause_until)
        logger.warning(
            f"🚨 DAILY LOSS LIMIT HIT: {loss_ratio * 100:.1f}% of initial capital "
            f"(limit: {self.policy.daily_loss_limit_pct}%) - pausing {self.policy.pause_minutes:g} min"
        )
        if self.events:
            self.events.emit(
                EventType.RISK_ALERT,
                title="🛑 Daily Loss Limit Reached",
                message=(
                    f"Daily loss of {loss_ratio * 100:.1f}%, new entries paused for "
                    f"{self.policy.pause_minutes:g} min"
                ),
                daily_pnl_sol=round(ledger.daily_pnl_sol, 6),
                daily_pnl_pct=round(ledger.daily_pnl_pct, 2),
                pause_until=pause_until,
            )
        return RiskCheckResult(
            approved=False,
            reason="Daily loss limit reached, trading paused",
            violated_checks=["daily_loss"],
        )

    def _check_dust(self, ledger: Ledger) -> RiskCheckResult:
        deployable = self.deployable_capital(ledger)
        if deployable < self.policy.min_deployable_sol:
            return RiskCheckResult(
                approved=False,
                reason=f"Insufficient deployable capital ({deployable:.4f} SOL)",
                violated_checks=["min_deployable"],
            )
        return RiskCheckResult(approved=True)

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def tier_pct(self, score: float) -> float:
        if score >= self.policy.high_score:
            return self.policy.size_pct_high
        if score >= self.policy.medium_score:
            return self.policy.size_pct_medium
        return self.policy.size_pct_low

    def position_size(self, opportunity: ScoredOpportunity, ledger: Ledger) -> float:
        """
        Size in SOL for an opportunity.

        Base is a score-tier share of deployable capital, shrunk on a losing
        day (never below `loss_shrink_floor` of base), boosted on a winning day
        with a good win rate. Dust floor and 15% cap are applied last.
        """
        deployable = self.deployable_capital(ledger)
        size = deployable * (self.tier_pct(opportunity.score) / 100.0)

        if ledger.daily_pnl_sol < 0:
            factor = max(self.policy.loss_shrink_floor, 1.0 - ledger.daily_loss_ratio)
            size *= factor

        if (
            ledger.daily_pnl_sol > 0
            and ledger.daily_win_count > self.policy.win_boost_min_wins
            and ledger.daily_win_rate > self.policy.win_boost_min_rate
        ):
            size *= self.policy.win_boost

        size = max(self.policy.min_position_sol, size)
        size = min(deployable * (self.policy.max_position_pct / 100.0), size)

        logger.info(
            f"Position size for {opportunity.symbol}: {size:.4f} SOL "
            f"(score: {opportunity.score:.0f}, deployable: {deployable:.4f} SOL)"
        )
        return size

    def should_buy(self, opportunity: ScoredOpportunity, ledger: Ledger) -> Optional[TradeOrder]:
        if not opportunity.confidence.is_actionable:
            return None

        check = self.can_open_position(ledger)
        if not check.approved:
            logger.warning(f"Buy denied for {opportunity.symbol}: {check.reason}")
            return None

        if ledger.has_position_for(opportunity.mint):
            logger.info(f"Buy skipped for {opportunity.symbol}: position already open")
            if self.metrics:
                self.metrics.record_gate_denial("already open")
            return None

        size = self.position_size(opportunity, ledger)
        return TradeOrder(
            side="buy",
            mint=opportunity.mint,
            symbol=opportunity.symbol,
            amount_sol=size,
            reason=f"Score {opportunity.score:.0f}/100 ({opportunity.confidence.value})",
            priority="high" if opportunity.score >= self.policy.high_priority_score else "normal",
        )
