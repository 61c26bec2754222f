"""
Position Management: supervision of every open position from fill to close

Two cadences drive each position:

- fast_check: all open positions concurrently. Dead-data handling (no price),
  quick-cut / early / hard stops, the absolute loss ceiling and the runner
  breakeven exit.
- slow_check: sequential. Runner promotion (multi-signal quorum), then the
  scalp or runner profile: breakeven, stepped trailing stop, profit ladder
  and timeout.

A per-position asyncio.Lock serialises the two loops on the same position,
so a position is closed at most once. A failed sell changes nothing: the
position keeps its status, the ledger is untouched and a later tick may try
again.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.dexscreener import PairSnapshot
from core.events import EventBus, EventType
from core.exceptions import ExecutionFailed
from core.execution import BuyResult, ExecutionVenue, SellResult
from core.ledger import Ledger
from core.models import CloseReason, Position, ScoredOpportunity, TradeOrder
from infra.metrics import MetricsRecorder
from tools.config_validator import PolicyConfig, ProfilePolicy

logger = logging.getLogger(__name__)


@dataclass
class PositionExitSignal:
    """Signal to close a position"""
    reason: CloseReason
    detail: str
    pnl_pct: float
    peak_pnl_pct: float
    age_seconds: float


class PositionManager:
    """
    Position supervisor.

    `price_client` needs `fetch_price(mint) -> Optional[float]` and
    `fetch_pair(mint) -> Optional[PairSnapshot]` (both async, never raising).
    """

    def __init__(
        self,
        ledger: Ledger,
        policy: PolicyConfig,
        venue: ExecutionVenue,
        price_client,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock=time.time,
    ):
        self.ledger = ledger
        self.policy = policy
        self.venue = venue
        self.price_client = price_client
        self.events = events
        self.metrics = metrics
        self.clock = clock

        # position id -> time the price was first missing
        self.dead_timers: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        logger.info(
            f"PositionManager initialized: hard_stop={policy.stops.hard_stop_pct}%, "
            f"loss_ceiling={policy.stops.max_trailing_loss_pct}%, "
            f"runner_promotion={policy.runner.promotion_pnl_pct}% "
            f"(quorum {policy.runner.promotion_quorum}/4)"
        )

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    def open_position(
        self,
        order: TradeOrder,
        fill: BuyResult,
        opportunity: Optional[ScoredOpportunity] = None,
    ) -> Position:
        """Register a filled buy into the ledger and start supervising it."""
        now = self.clock()
        entry_price = fill.fill_price
        if not entry_price and fill.filled_quantity > 0:
            entry_price = order.amount_sol / fill.filled_quantity

        position = Position(
            mint=order.mint,
            symbol=order.symbol,
            entry_price=entry_price,
            entry_amount_sol=order.amount_sol,
            token_amount=fill.filled_quantity,
            entry_time=now,
            score=opportunity.score if opportunity else 0.0,
            name=opportunity.name if opportunity else "",
            entry_reference=fill.reference,
        )
        if opportunity is not None and self.is_early_runner(opportunity):
            position.promote_to_runner(now)
            logger.info(f"🚀 {position.symbol}: early runner profile at entry (mcap {opportunity.market_cap:,.0f})")

        self.ledger.register_position(position)
        logger.info(
            f"BUY {position.symbol}: {position.entry_amount_sol:.4f} SOL @ {entry_price:.12f} "
            f"({position.mode}, score {position.score:.0f})"
        )
        if self.events:
            self.events.emit(
                EventType.BUY,
                title=f"🟢 Bought {position.symbol}",
                message=order.reason,
                mint=position.mint,
                symbol=position.symbol,
                amount_sol=position.entry_amount_sol,
                price=entry_price,
                score=position.score,
                mode=position.mode,
                reference=fill.reference,
            )
        return position

    def is_early_runner(self, opportunity: ScoredOpportunity) -> bool:
        entry = self.policy.entry
        return (
            0 < opportunity.market_cap < entry.early_runner_max_market_cap
            and opportunity.buy_ratio_5m > entry.early_runner_min_buy_ratio
            and opportunity.volume_5m > 0
        )

    # ------------------------------------------------------------------
    # Fast loop
    # ------------------------------------------------------------------

    async def fast_check(self) -> None:
        positions = self.ledger.open_positions()
        if not positions:
            return

        results = await asyncio.gather(
            *(self._fast_check_one(p) for p in positions),
            return_exceptions=True,
        )
        for position, result in zip(positions, results):
            if isinstance(result, Exception):
                logger.error(f"Fast check failed for {position.symbol}: {result}", exc_info=result)

        if self.metrics:
            self.metrics.record_dead_data_positions(len(self.dead_timers))

    async def _fast_check_one(self, position: Position) -> None:
        price = await self._fetch_price(position.mint)
        async with self._lock_for(position.id):
            if not self._is_open(position):
                return
            now = self.clock()

            if not price:
                signal = self.check_dead_data(position, now)
                if signal:
                    await self._close_position(position, signal)
                return

            if self.dead_timers.pop(position.id, None) is not None:
                logger.info(f"{position.symbol}: price recovered, dead-data timer cleared")

            position.update_price(price)
            signal = self.check_fast_exit(position, now)
            if signal:
                await self._close_position(position, signal)

    def check_dead_data(self, position: Position, now: float) -> Optional[PositionExitSignal]:
        """Advance the dead-data timer for a position with no price; return a close signal when due."""
        if position.id not in self.dead_timers:
            self.dead_timers[position.id] = now
            logger.info(f"{position.symbol}: price lost, dead-data timer started")

        dead_for = now - self.dead_timers[position.id]
        pnl = position.pnl_pct
        dd = self.policy.dead_data

        detail = None
        if pnl > 0 and dead_for > dd.positive_grace_seconds:
            detail = f"no price for {dead_for:.0f}s while in profit (+{pnl:.1f}%), locking the gain"
        elif pnl <= dd.stop_loss_pct and dead_for > dd.timeout_seconds:
            detail = f"no price for {dead_for:.0f}s at {pnl:.1f}% (below {dd.stop_loss_pct}%)"
        elif dd.stop_loss_pct < pnl < 0 and dead_for > dd.timeout_seconds + dd.extension_seconds:
            detail = f"no price for {dead_for:.0f}s at {pnl:.1f}% (extension elapsed)"
        elif dead_for > dd.hard_max_seconds:
            detail = f"no price for {dead_for:.0f}s, forced close"

        if detail is None:
            return None
        return self._signal(position, CloseReason.DEAD_DATA, detail, now)

    def check_fast_exit(self, position: Position, now: float) -> Optional[PositionExitSignal]:
        """
        Protective exits evaluated on every fast tick.

        Priority order: quick-cut > early stop > hard stop > loss ceiling > runner breakeven.
        The first three apply to scalp positions only; the loss ceiling applies to all.
        """
        stops = self.policy.stops
        age = position.age_seconds(now)
        pnl = position.pnl_pct

        if not position.is_runner:
            if age < stops.quick_cut_seconds and pnl <= stops.quick_cut_pct:
                return self._signal(position, CloseReason.STOP_LOSS, f"⚡ quick-cut {pnl:.1f}% in {age:.0f}s", now)
            if age < stops.early_stop_seconds and pnl <= stops.early_stop_pct:
                return self._signal(position, CloseReason.STOP_LOSS, f"⚡ early stop {pnl:.1f}% in {age:.0f}s", now)
            if pnl <= stops.hard_stop_pct:
                return self._signal(position, CloseReason.STOP_LOSS, f"⛔ hard stop {pnl:.1f}%", now)

        if pnl <= stops.max_trailing_loss_pct:
            return self._signal(
                position, CloseReason.STOP_LOSS,
                f"⛔ loss ceiling {pnl:.1f}% (limit {stops.max_trailing_loss_pct}%)", now,
            )

        runner = self.policy.runner
        if (
            position.is_runner
            and pnl <= runner.breakeven_pnl_pct
            and position.peak_pnl_pct >= runner.breakeven_peak_pct
        ):
            return self._signal(
                position, CloseReason.TRAILING_STOP,
                f"runner breakeven (peak +{position.peak_pnl_pct:.1f}%)", now,
            )
        return None

    # ------------------------------------------------------------------
    # Slow loop
    # ------------------------------------------------------------------

    async def slow_check(self) -> None:
        for position in self.ledger.open_positions():
            try:
                await self._slow_check_one(position)
            except Exception as exc:
                logger.error(f"Slow check failed for {position.symbol}: {exc}", exc_info=True)
        self._prune_locks()

    async def _slow_check_one(self, position: Position) -> None:
        price = await self._fetch_price(position.mint)
        if not price:
            return  # dead data is the fast loop's job

        pair = None
        if not position.is_runner and self._pnl_at(position, price) >= self.policy.runner.promotion_pnl_pct:
            pair = await self._fetch_pair(position.mint)

        async with self._lock_for(position.id):
            if not self._is_open(position):
                return
            now = self.clock()
            position.update_price(price)

            if pair is not None and not position.is_runner:
                self.maybe_promote(position, pair, now)

            if position.is_runner:
                await self._apply_profile(position, self.policy.runner, now)
            else:
                await self._apply_profile(position, self.policy.scalp, now)

    def runner_signal_count(self, pair: PairSnapshot) -> int:
        runner = self.policy.runner
        signals = [
            pair.avg_volume_5m > 0 and pair.volume_5m > pair.avg_volume_5m * runner.volume_acceleration,
            pair.buy_ratio >= runner.min_buy_ratio,
            pair.price_change_5m > 0,
            pair.market_cap < runner.max_market_cap,
        ]
        return sum(1 for s in signals if s)

    def maybe_promote(self, position: Position, pair: PairSnapshot, now: float) -> bool:
        if position.pnl_pct < self.policy.runner.promotion_pnl_pct:
            return False
        count = self.runner_signal_count(pair)
        if count < self.policy.runner.promotion_quorum:
            logger.debug(f"{position.symbol}: runner quorum not met ({count}/{self.policy.runner.promotion_quorum})")
            return False
        position.promote_to_runner(now)
        logger.info(
            f"🚀 {position.symbol} promoted to RUNNER at +{position.pnl_pct:.1f}% "
            f"({count}/4 signals)"
        )
        return True

    async def _apply_profile(self, position: Position, profile: ProfilePolicy, now: float) -> None:
        tag = "🚀RUNNER" if position.is_runner else "SCALP"
        peak = position.peak_pnl_pct
        pnl = position.pnl_pct

        # Runner breakeven is enforced by the fast loop
        if not position.is_runner and peak >= profile.breakeven_peak_pct and pnl <= profile.breakeven_pnl_pct:
            signal = self._signal(position, CloseReason.TRAILING_STOP, f"{tag} breakeven (peak +{peak:.1f}%)", now)
            await self._close_position(position, signal)
            return

        if peak > profile.trailing_activation_pct:
            trail = profile.trail_for(peak)
            if position.current_price <= position.highest_price * (1 - trail):
                signal = self._signal(
                    position, CloseReason.TRAILING_STOP,
                    f"{tag} trailing (peak +{peak:.1f}%, trail {trail * 100:.0f}%, exit {pnl:+.1f}%)", now,
                )
                await self._close_position(position, signal)
                return

        await self.run_profit_ladder(position, profile, tag)
        if not self._is_open(position):
            return

        if position.age_seconds(now) > profile.max_age_seconds and position.pnl_pct <= profile.timeout_max_pnl_pct:
            signal = self._signal(
                position, CloseReason.TIMEOUT,
                f"{tag} timeout after {position.age_seconds(now) / 60:.0f} min ({position.pnl_pct:+.1f}%)", now,
            )
            await self._close_position(position, signal)

    async def run_profit_ladder(self, position: Position, profile: ProfilePolicy, tag: str = "") -> int:
        """
        Fire every ladder step the current P&L has reached, in order.

        The stage index only advances after a successful sell, so a step never
        fires twice and a failed sell is retried on a later tick.
        Returns the number of steps fired.
        """
        fired = 0
        ladder = profile.profit_ladder
        while self._is_open(position) and position.take_profit_stage < len(ladder):
            step = ladder[position.take_profit_stage]
            if position.pnl_pct < step.trigger_pct:
                break
            reason = f"{tag} TP +{step.trigger_pct:.0f}%".strip()
            if not await self.partial_sell(position, step.sell_fraction * 100.0, reason):
                break
            position.take_profit_stage += 1
            fired += 1
        return fired

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def partial_sell(self, position: Position, percent: float, reason: str) -> bool:
        """Sell `percent` of the original position. Selling what remains is a full close."""
        percent = min(percent, position.remaining_pct)
        if percent <= 0:
            return False

        if percent >= position.remaining_pct - 1e-9:
            signal = self._signal(position, CloseReason.TAKE_PROFIT, reason, self.clock())
            return await self._close_position(position, signal)

        fraction_of_held = percent / position.remaining_pct * 100.0
        result = await self._execute_sell(position, fraction_of_held, reason)
        if not result.success:
            return False

        pnl = self.ledger.record_partial_exit(position, percent, result.sol_received, result.reference)
        logger.info(
            f"PARTIAL EXIT {position.symbol}: sold {percent:.0f}% ({reason}), "
            f"received {result.sol_received:.4f} SOL, slice P&L {pnl:+.4f}, remaining {position.remaining_pct:.0f}%"
        )
        if self.metrics:
            self.metrics.record_partial_exit(position.mode)
        if self.events and pnl > 0:
            self.events.emit(
                EventType.PROFIT_CLOSE,
                title=f"💰 {position.symbol} partial +{position.pnl_pct:.1f}%",
                message=reason,
                mint=position.mint,
                symbol=position.symbol,
                pnl_pct=round(position.pnl_pct, 2),
                pnl_sol=round(pnl, 6),
                partial=True,
                remaining_pct=position.remaining_pct,
            )
        return True

    async def close_position(self, position_id: str, reason: CloseReason = CloseReason.MANUAL) -> bool:
        """Close a position by id (manual or external request)."""
        position = self.ledger.positions.get(position_id)
        if position is None:
            return False
        async with self._lock_for(position_id):
            if not self._is_open(position):
                return False
            signal = self._signal(position, reason, reason.value, self.clock())
            return await self._close_position(position, signal)

    async def _close_position(self, position: Position, signal: PositionExitSignal) -> bool:
        result = await self._execute_sell(position, 100.0, signal.reason.value)
        if not result.success:
            logger.warning(f"Close of {position.symbol} ({signal.detail}) not filled, position stays open")
            return False

        record = self.ledger.record_close(
            position, signal.reason, result.sol_received, result.reference, now=self.clock()
        )
        self.dead_timers.pop(position.id, None)

        level = logging.WARNING if signal.reason in (CloseReason.STOP_LOSS, CloseReason.DEAD_DATA) else logging.INFO
        logger.log(
            level,
            f"EXIT {position.symbol} {signal.reason.value.upper()} ({position.mode}): {signal.detail} | "
            f"trade {record.pnl_pct:+.1f}% ({record.pnl_sol:+.4f} SOL) after {record.duration_seconds:.0f}s",
        )

        if self.metrics:
            self.metrics.record_close(signal.reason.value, position.mode)
        if self.events:
            self.events.emit(EventType.TRADE_RECORD, title=f"Trade {position.symbol}", record=record)
            if signal.reason == CloseReason.TRAILING_STOP and record.pnl_sol > 0:
                self.events.emit(
                    EventType.TRAILING_CLOSE,
                    title=f"📈 Trailing exit {position.symbol}",
                    message=signal.detail,
                    symbol=position.symbol,
                    pnl_pct=round(record.pnl_pct, 2),
                    pnl_sol=round(record.pnl_sol, 6),
                    peak_pnl_pct=round(signal.peak_pnl_pct, 2),
                )
            event_type = EventType.PROFIT_CLOSE if record.pnl_sol >= 0 else EventType.LOSS_CLOSE
            emoji = "💰" if record.pnl_sol >= 0 else "🔻"
            self.events.emit(
                event_type,
                title=f"{emoji} {position.symbol} {record.pnl_pct:+.1f}%",
                message=f"{'RUNNER' if position.is_runner else 'SCALP'}: {signal.detail}",
                mint=position.mint,
                symbol=position.symbol,
                pnl_pct=round(record.pnl_pct, 2),
                pnl_sol=round(record.pnl_sol, 6),
                reason=signal.reason.value,
                duration_seconds=round(record.duration_seconds),
            )
        return True

    async def _execute_sell(self, position: Position, fraction_pct: float, reason: str) -> SellResult:
        try:
            result = await self.venue.sell(position, fraction_pct, reason)
        except ExecutionFailed as exc:
            result = SellResult(success=False, error=exc.reason)
        except Exception as exc:
            logger.error(f"Venue raised on sell {position.symbol}: {exc}", exc_info=True)
            result = SellResult(success=False, error=str(exc))

        if not result.success:
            logger.warning(f"SELL FAILED {position.symbol} ({reason}): {result.error or 'no fill'}")
            if self.metrics:
                self.metrics.record_execution_failure("sell")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch_price(self, mint: str) -> Optional[float]:
        try:
            price = await self.price_client.fetch_price(mint)
        except Exception as exc:
            logger.debug(f"Price fetch raised for {mint[:8]}: {exc}")
            return None
        return price if price and price > 0 else None

    async def _fetch_pair(self, mint: str) -> Optional[PairSnapshot]:
        try:
            return await self.price_client.fetch_pair(mint)
        except Exception as exc:
            logger.debug(f"Pair fetch raised for {mint[:8]}: {exc}")
            return None

    @staticmethod
    def _pnl_at(position: Position, price: float) -> float:
        if position.entry_price <= 0:
            return 0.0
        return (price - position.entry_price) / position.entry_price * 100.0

    def _is_open(self, position: Position) -> bool:
        return not position.is_closed and position.id in self.ledger.positions

    def _lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = self._locks[position_id] = asyncio.Lock()
        return lock

    def _prune_locks(self) -> None:
        for position_id in list(self._locks):
            if position_id not in self.ledger.positions and not self._locks[position_id].locked():
                del self._locks[position_id]

    @staticmethod
    def _signal(position: Position, reason: CloseReason, detail: str, now: float) -> PositionExitSignal:
        return PositionExitSignal(
            reason=reason,
            detail=detail,
            pnl_pct=position.pnl_pct,
            peak_pnl_pct=position.peak_pnl_pct,
            age_seconds=position.age_seconds(now),
        )

    def clear_timers(self) -> None:
        self.dead_timers.clear()
        self._locks.clear()

    def open_summary(self) -> List[Dict]:
        now = self.clock()
        return [
            {
                "symbol": p.symbol,
                "mode": p.mode,
                "pnl_pct": round(p.pnl_pct, 2),
                "remaining_pct": p.remaining_pct,
                "age_minutes": round(p.age_seconds(now) / 60, 1),
            }
            for p in self.ledger.open_positions()
        ]
