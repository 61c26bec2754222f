"""
Core: Dip watchlist

Holds promising opportunities that were flagged at a local peak and waits
for a retracement followed by a confirmed rebound before emitting a buy
signal.

    watching -> dip_detected -> waiting_rebound -> buy_signal
                                                 | expired   (age)
                                                 | abandoned (dip too deep)

Entries live in `ledger.watchlist`, keyed by mint.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, Dict, List, Optional

from core.events import EventBus, EventType
from core.ledger import Ledger
from core.models import ScoredOpportunity, WatchEntry, WatchState
from infra.metrics import MetricsRecorder
from tools.config_validator import DipBuyerPolicy

logger = logging.getLogger(__name__)

PriceFetcher = Callable[[str], Awaitable[Optional[float]]]
BuySignalHandler = Callable[[ScoredOpportunity], Awaitable[None]]


class DipWatchlist:
    def __init__(
        self,
        ledger: Ledger,
        policy: DipBuyerPolicy,
        fetch_price: PriceFetcher,
        on_buy_signal: BuySignalHandler,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.policy = policy
        self.fetch_price = fetch_price
        self.on_buy_signal = on_buy_signal
        self.events = events
        self.metrics = metrics
        self.clock = clock
        self._sleep = asyncio.sleep

    @property
    def entries(self) -> Dict[str, WatchEntry]:
        return self.ledger.watchlist

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, mint: str) -> bool:
        return mint in self.entries

    async def add(self, opportunity: ScoredOpportunity) -> bool:
        """Start watching an opportunity. Needs a reference price; False if none."""
        mint = opportunity.mint
        if mint in self.entries:
            return False

        price = await self.fetch_price(mint)
        if not price:
            logger.info(f"{opportunity.symbol}: no reference price, not watched")
            return False

        if len(self.entries) >= self.policy.max_watchlist:
            self._evict_oldest()

        now = self.clock()
        self.entries[mint] = WatchEntry(
            opportunity=opportunity,
            added_at=now,
            highest_price=price,
            lowest_since_high=price,
            current_price=price,
            last_check=now,
        )
        self._record_transition(WatchState.WATCHING)
        logger.info(
            f"🔍 {opportunity.symbol} added to watchlist (score: {opportunity.score:.0f}, "
            f"price: {price:.12f} SOL), waiting for a dip"
        )
        if self.events:
            self.events.emit(
                EventType.DETECTION,
                title=f"🔍 {opportunity.symbol} on watch",
                message="Waiting for a dip before buying",
                mint=mint,
                symbol=opportunity.symbol,
                score=opportunity.score,
                reasons=list(opportunity.reasons),
                watching=True,
            )
        return True

    def _evict_oldest(self) -> None:
        oldest = min(self.entries.values(), key=lambda e: e.added_at)
        del self.entries[oldest.mint]
        logger.info(f"Watchlist full, evicted oldest entry {oldest.symbol}")

    def _remove(self, entry: WatchEntry, state: WatchState) -> None:
        entry.transition(state)
        self.entries.pop(entry.mint, None)
        self._record_transition(state)

    def _record_transition(self, state: WatchState) -> None:
        if self.metrics:
            self.metrics.record_watch_transition(state.value)
            self.metrics.record_watchlist_size(len(self.entries))

    async def check(self) -> None:
        """One watchlist tick. Entries are isolated from each other's failures."""
        for mint, entry in list(self.entries.items()):
            if self.entries.get(mint) is not entry:
                continue
            try:
                await self._check_entry(entry)
            except Exception as exc:
                logger.error(f"Watchlist check failed for {entry.symbol}: {exc}", exc_info=True)

    async def _check_entry(self, entry: WatchEntry) -> None:
        now = self.clock()
        if now - entry.added_at > self.policy.max_watch_seconds:
            logger.info(f"⏰ {entry.symbol}: watch window elapsed, removed")
            self._remove(entry, WatchState.EXPIRED)
            return

        price = await self.fetch_price(entry.mint)
        if not price:
            return

        dip = entry.observe(price, self.clock())

        if entry.state == WatchState.WATCHING:
            if dip >= self.policy.max_dip_pct:
                logger.warning(f"{entry.symbol}: dip too deep (-{dip:.1f}%), likely a dump, abandoned")
                self._remove(entry, WatchState.ABANDONED)
            elif dip >= self.policy.min_dip_pct:
                entry.dip_detected = True
                entry.transition(WatchState.DIP_DETECTED)
                entry.transition(WatchState.WAITING_REBOUND)
                self._record_transition(WatchState.DIP_DETECTED)
                self._record_transition(WatchState.WAITING_REBOUND)
                logger.info(f"📉 {entry.symbol}: dip detected (-{dip:.1f}%), waiting for rebound")
            return

        if entry.state == WatchState.WAITING_REBOUND:
            if dip >= self.policy.max_dip_pct:
                logger.warning(f"{entry.symbol}: dip kept deepening (-{dip:.1f}%), abandoned")
                self._remove(entry, WatchState.ABANDONED)
                return

            if entry.rebound_pct(price) >= self.policy.rebound_pct:
                await self._confirm_rebound(entry)

    async def _confirm_rebound(self, entry: WatchEntry) -> None:
        await self._sleep(self.policy.confirm_delay_seconds)
        if self.entries.get(entry.mint) is not entry:
            # Removed (or the watchlist was cleared) while waiting
            return

        confirm_price = await self.fetch_price(entry.mint)
        if not confirm_price or confirm_price <= entry.lowest_since_high:
            logger.info(f"{entry.symbol}: false rebound, price fell back, still waiting")
            return

        confirmed = entry.rebound_pct(confirm_price)
        if confirmed < self.policy.rebound_pct:
            logger.info(f"{entry.symbol}: rebound not confirmed ({confirmed:.1f}%), still waiting")
            return

        entry.current_price = confirm_price
        self._remove(entry, WatchState.BUY_SIGNAL)
        logger.info(
            f"🎯 {entry.symbol}: REBOUND CONFIRMED (+{confirmed:.1f}% from the low, checked twice), buy signal"
        )
        try:
            # Drift checks downstream compare against the confirmed price, not the old peak
            await self.on_buy_signal(replace(entry.opportunity, price_native=confirm_price))
        except Exception as exc:
            logger.error(f"Buy signal handler failed for {entry.symbol}: {exc}", exc_info=True)

    def info(self) -> List[Dict]:
        now = self.clock()
        return [
            {
                "symbol": e.symbol,
                "score": e.opportunity.score,
                "state": e.state.value,
                "dip_pct": round(e.dip_pct, 2),
                "watch_seconds": round(now - e.added_at),
            }
            for e in self.entries.values()
        ]

    def clear(self) -> None:
        self.entries.clear()
        if self.metrics:
            self.metrics.record_watchlist_size(0)
