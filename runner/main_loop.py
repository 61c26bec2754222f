"""
Sniper Runner: Main Loop

Wires the shared Ledger, risk gate, position supervisor and dip watchlist to
their adapters and drives every cadence as an asyncio task.

Tasks:
1. Fast loop     - protective exits on every open position (concurrent)
2. Slow loop     - promotion, trailing, profit ladder, timeouts (sequential)
3. Watchlist     - dip / rebound tracking
4. Intake queue  - one scored opportunity at a time, so gate checks never race
5. Summary       - capital sync, stats and a summary notification
6. Daily reset   - at local midnight, then every 24h
7. Dispatcher    - delivers outbound events to Discord and the trade log
"""

import argparse
import asyncio
import json
import logging
import signal
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Deque, List, Optional, Tuple

from analytics.trade_log import TradeLog
from backtest.paper_executor import PaperExecutor
from core.dexscreener import DexScreenerClient
from core.dip_buyer import DipWatchlist
from core.events import EventBus, EventType
from core.exceptions import ConfigurationError, ExecutionFailed
from core.execution import BuyResult, ExecutionVenue, HttpExecutionVenue
from core.ledger import Ledger
from core.models import Confidence, Position, ScoredOpportunity
from core.position_manager import PositionManager
from core.risk import RiskEngine
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.solana_rpc import SolanaRpcClient, resolve_public_key
from tools.config_validator import AppConfig, PolicyConfig, load_app_config, load_policy

logger = logging.getLogger(__name__)

# Intake item: (opportunity, source) where source is "feed" or "dip"
IntakeItem = Tuple[ScoredOpportunity, str]


def seconds_until_midnight(now: Optional[datetime] = None) -> float:
    """Seconds until the next local midnight."""
    now = now or datetime.now()
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(0.0, (tomorrow - now).total_seconds())


class TradingRuntime:
    """
    Runtime orchestrator.

    Responsibilities:
    - Own the shared Ledger and every core component
    - Serialize intake through a single queue
    - Run and cancel the periodic tasks as a group
    - Route outbound events to their sinks
    """

    def __init__(
        self,
        policy: PolicyConfig,
        app: AppConfig,
        venue: ExecutionVenue,
        price_client,
        balance_provider: Optional[Callable[[], float]] = None,
        trade_log: Optional[TradeLog] = None,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.app = app
        self.mode = app.mode
        self.venue = venue
        self.price_client = price_client
        self.balance_provider = balance_provider
        self.trade_log = trade_log
        self.alerts = alerts
        self.metrics = metrics
        self.clock = clock

        self.ledger = Ledger(policy.risk.initial_capital_sol, policy.risk.reserve_sol, clock=clock)
        self.events = EventBus()
        self.risk = RiskEngine(
            policy.risk,
            events=self.events,
            balance_provider=balance_provider,
            metrics=metrics,
            clock=clock,
        )
        self.manager = PositionManager(
            self.ledger,
            policy,
            venue,
            price_client,
            events=self.events,
            metrics=metrics,
            clock=clock,
        )
        self.watchlist = DipWatchlist(
            self.ledger,
            policy.dip_buyer,
            fetch_price=self._fetch_price,
            on_buy_signal=self._on_dip_buy_signal,
            events=self.events,
            metrics=metrics,
            clock=clock,
        )

        if alerts is not None:
            self.events.subscribe(alerts.handle_event)
        if trade_log is not None:
            self.events.subscribe(trade_log.handle_event)

        self._intake: Deque[IntakeItem] = deque()
        self._processing = False
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

        logger.info(f"Initialized TradingRuntime in {self.mode} mode (venue={venue.name})")

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit(self, opportunity: ScoredOpportunity) -> bool:
        """Queue a scored opportunity. False if this identifier was already seen."""
        if not self.ledger.mark_seen(opportunity.mint):
            return False
        self._intake.append((opportunity, "feed"))
        return True

    @property
    def queue_size(self) -> int:
        return len(self._intake)

    async def _on_dip_buy_signal(self, opportunity: ScoredOpportunity) -> None:
        logger.info(f"📉→📈 Dip-buy signal for {opportunity.symbol} (score: {opportunity.score:.0f})")
        self._intake.append((opportunity, "dip"))

    async def process_next(self) -> bool:
        """Handle one queued item unless another is still in flight. True if one was handled."""
        if self._processing or not self._intake:
            return False
        self._processing = True
        try:
            opportunity, source = self._intake.popleft()
            await self._route(opportunity, source)
        except Exception as exc:
            logger.error(f"Intake processing failed: {exc}", exc_info=True)
        finally:
            self._processing = False
        return True

    async def _route(self, opportunity: ScoredOpportunity, source: str) -> Optional[Position]:
        if source == "dip":
            # A confirmed rebound makes a watch verdict actionable
            if not opportunity.confidence.is_actionable:
                opportunity = replace(
                    opportunity,
                    confidence=Confidence.LOW,
                    reasons=[*opportunity.reasons, "Dip + rebound confirmed"],
                )
            return await self.execute_buy(opportunity)

        confidence = opportunity.confidence
        if confidence == Confidence.IGNORE:
            return None

        if confidence == Confidence.WATCH:
            if self.policy.dip_buyer.enabled:
                await self.watchlist.add(opportunity)
            return None

        logger.info(
            f"{opportunity.symbol}: score {opportunity.score:.0f} ({confidence.value}) -> direct buy"
        )
        reasons = list(opportunity.reasons)
        if confidence == Confidence.HIGH:
            reasons.append("⚡ High score, immediate buy")
        self.events.emit(
            EventType.DETECTION,
            title=f"🎯 {opportunity.symbol} detected",
            message=f"Score {opportunity.score:.0f}/100",
            mint=opportunity.mint,
            symbol=opportunity.symbol,
            score=opportunity.score,
            reasons=reasons,
        )
        return await self.execute_buy(opportunity)

    async def execute_buy(self, opportunity: ScoredOpportunity) -> Optional[Position]:
        """Gate, drift guard, venue fill, then register the position."""
        order = self.risk.should_buy(opportunity, self.ledger)
        if order is None:
            return None

        price = await self._fetch_price(opportunity.mint)
        if not price:
            logger.warning(f"{opportunity.symbol}: no live price, buy cancelled")
            return None

        if opportunity.price_native > 0:
            drift = (price - opportunity.price_native) / opportunity.price_native * 100.0
            entry = self.policy.entry
            if drift < entry.drift_abort_pct:
                logger.warning(
                    f"{opportunity.symbol}: price fell {drift:.1f}% since detection, buy CANCELLED"
                )
                return None
            if drift < entry.drift_caution_pct:
                logger.info(f"{opportunity.symbol}: price down {drift:.1f}% since detection, proceeding with caution")

        logger.info(
            f"Buying {opportunity.symbol} for {order.amount_sol:.4f} SOL (score: {opportunity.score:.0f})..."
        )
        try:
            fill = await self.venue.buy(order)
        except ExecutionFailed as exc:
            fill = BuyResult(success=False, error=exc.reason)
        except Exception as exc:
            logger.error(f"Venue raised on buy {opportunity.symbol}: {exc}", exc_info=True)
            fill = BuyResult(success=False, error=str(exc))

        if not fill.success or fill.filled_quantity <= 0:
            logger.warning(f"BUY FAILED {opportunity.symbol}: {fill.error or 'no fill'}")
            if self.metrics:
                self.metrics.record_execution_failure("buy")
            return None

        return self.manager.open_position(order, fill, opportunity)

    async def _fetch_price(self, mint: str) -> Optional[float]:
        try:
            price = await self.price_client.fetch_price(mint)
        except Exception as exc:
            logger.debug(f"Price fetch raised for {mint[:8]}: {exc}")
            return None
        return price if price and price > 0 else None

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    async def slow_tick(self) -> None:
        await self.manager.slow_check()
        if self.metrics:
            self.metrics.record_ledger(
                open_positions=self.ledger.open_count,
                daily_pnl_sol=self.ledger.daily_pnl_sol,
                deployable_sol=self.risk.deployable_capital(self.ledger),
                paused=self.ledger.is_paused,
            )

    async def summarize(self) -> dict:
        """Capital sync, log line and summary event."""
        if self.balance_provider is not None:
            try:
                await self.risk.sync_capital(self.ledger)
            except Exception as exc:
                logger.error(f"Capital sync failed, keeping local figures: {exc}")

        ledger = self.ledger
        stats = self.trade_log.performance_stats() if self.trade_log else {}
        watch = self.watchlist.info()
        watch_msg = ""
        if watch:
            watch_msg = " | " + ", ".join(f"{w['symbol']}({w['state']}, dip:{w['dip_pct']:.0f}%)" for w in watch)

        logger.info(
            f"Summary: PNL={ledger.daily_pnl_sol:+.4f} SOL | Trades={ledger.daily_trade_count} | "
            f"W={ledger.daily_win_count} L={ledger.daily_loss_count} | Positions={ledger.open_count} | "
            f"Watchlist={len(self.watchlist)}{watch_msg}"
        )

        summary = {
            "capital_sol": round(ledger.total_capital, 4),
            "open_positions": ledger.open_count,
            "daily_pnl_sol": round(ledger.daily_pnl_sol, 6),
            "daily_pnl_pct": round(ledger.daily_pnl_pct, 2),
            "total_trades": ledger.daily_trade_count,
            "win_rate": f"{ledger.daily_win_rate * 100:.0f}%",
            "watchlist": len(self.watchlist),
        }
        if stats:
            summary["all_time"] = stats
        self.events.emit(
            EventType.SUMMARY,
            title="📊 Periodic summary",
            message=f"{ledger.daily_trade_count} trade(s) today, {ledger.open_count} open",
            **summary,
        )
        return summary

    def reset_daily(self) -> None:
        self.ledger.reset_daily()

    async def _every(self, name: str, interval: float, work: Callable[[], Awaitable[None]]) -> None:
        """Run `work` every `interval` seconds until cancelled. Failures are logged, not fatal."""
        while True:
            started = time.monotonic()
            status = "ok"
            try:
                await work()
            except Exception as exc:
                status = "error"
                logger.error(f"{name} tick failed: {exc}", exc_info=True)
            if self.metrics:
                self.metrics.record_loop_tick(name, time.monotonic() - started, status)
            await asyncio.sleep(interval)

    async def _daily_reset_loop(self) -> None:
        await asyncio.sleep(seconds_until_midnight())
        while True:
            self.reset_daily()
            await asyncio.sleep(24 * 3600)

    async def _summary_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.summarize()
            except Exception as exc:
                logger.error(f"Summary failed: {exc}", exc_info=True)

    async def _queue_tick(self) -> None:
        await self.process_next()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def seed_capital(self) -> float:
        """
        Starting balance: the configured capital in PAPER mode, the wallet in LIVE mode.

        Raises:
            CriticalDataUnavailable: wallet balance could not be read
            RuntimeError: wallet holds less than the reserve
        """
        if self.balance_provider is None:
            balance = self.policy.risk.initial_capital_sol
            logger.info(f"Simulated balance (paper): {balance:.4f} SOL")
            return balance

        balance = await asyncio.to_thread(self.balance_provider)
        logger.info(f"Wallet balance: {balance:.4f} SOL")
        if balance < self.policy.risk.reserve_sol:
            raise RuntimeError(
                f"Insufficient balance {balance:.4f} SOL, at least {self.policy.risk.reserve_sol} SOL required"
            )
        self.ledger.set_balance(balance)
        return balance

    async def start(self) -> None:
        if self._tasks:
            return
        balance = await self.seed_capital()
        self._stop_event = asyncio.Event()

        loops = self.app.loops
        self._tasks = [
            asyncio.create_task(self._every("fast", loops.fast_seconds, self.manager.fast_check), name="fast"),
            asyncio.create_task(self._every("slow", loops.slow_seconds, self.slow_tick), name="slow"),
            asyncio.create_task(self._every("queue", loops.queue_seconds, self._queue_tick), name="queue"),
            asyncio.create_task(self._summary_loop(loops.summary_minutes * 60), name="summary"),
            asyncio.create_task(self._daily_reset_loop(), name="daily_reset"),
            asyncio.create_task(self.events.run(loops.dispatch_seconds), name="dispatcher"),
        ]
        if self.policy.dip_buyer.enabled:
            self._tasks.append(
                asyncio.create_task(
                    self._every("watchlist", self.policy.dip_buyer.check_interval_seconds, self.watchlist.check),
                    name="watchlist",
                )
            )

        self.events.emit(
            EventType.STARTUP,
            title="🚀 Sniper started",
            message="📝 PAPER TRADING, no real SOL used" if self.mode == "PAPER" else "💰 LIVE TRADING",
            mode=self.mode,
            capital_sol=round(balance, 4),
        )
        logger.info(
            f"🚀 Runtime started ({self.mode}): {len(self._tasks)} tasks, "
            f"deployable {self.risk.deployable_capital(self.ledger):.4f} SOL"
        )

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self) -> None:
        """Cancel every task, clear timer-keyed state and log the shutdown summary."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.manager.clear_timers()
        self.watchlist.clear()
        # Flush anything emitted during the last ticks
        await asyncio.to_thread(self.events.dispatch_pending)

        ledger = self.ledger
        logger.info("=" * 60)
        logger.info("Sniper stopping")
        logger.info(f"Daily PNL: {ledger.daily_pnl_sol:+.4f} SOL")
        logger.info(
            f"Trades: {ledger.daily_trade_count} ({ledger.daily_win_count}W / {ledger.daily_loss_count}L)"
        )
        logger.info(f"Open positions: {ledger.open_count}")
        if ledger.open_count:
            logger.warning("⚠️  Positions still open:")
            for p in self.manager.open_summary():
                logger.info(f"  → {p['symbol']} ({p['mode']}): {p['pnl_pct']:+.1f}%, {p['remaining_pct']:.0f}% held")
        logger.info("=" * 60)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def replay_feed(self, path: str) -> int:
        """Submit every scored opportunity from a JSON Lines file. Returns how many were queued."""
        lines = await asyncio.to_thread(Path(path).read_text)
        queued = 0
        for lineno, line in enumerate(lines.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                opportunity = ScoredOpportunity.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, ValueError) as exc:
                logger.warning(f"Skipping feed line {lineno}: {exc}")
                continue
            if self.submit(opportunity):
                queued += 1
        logger.info(f"Feed {path}: {queued} opportunity(ies) queued")
        return queued

    async def run(self, feed: Optional[str] = None, duration: Optional[float] = None) -> None:
        await self.start()
        try:
            if feed:
                await self.replay_feed(feed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=duration)
            except asyncio.TimeoutError:
                logger.info(f"Run duration of {duration:g}s elapsed")
        finally:
            await self.stop()


def build_runtime(config_dir: str = "config", mode: Optional[str] = None) -> TradingRuntime:
    """
    Load config and wire adapters for the selected mode.

    Raises:
        ConfigurationError: invalid config or missing LIVE credentials
    """
    policy = load_policy(config_dir)
    app = load_app_config(config_dir)
    if mode:
        app = app.model_copy(update={"mode": mode.upper()})

    _configure_logging(app)

    endpoints = app.endpoints
    price_client = DexScreenerClient(endpoints.dexscreener_url, timeout=endpoints.request_timeout_seconds)

    metrics = MetricsRecorder(enabled=app.monitoring.metrics_enabled, port=app.monitoring.metrics_port)
    metrics.start()

    alerts = AlertService.from_config(app.monitoring.alerts.model_dump())
    trade_log = TradeLog(app.storage.trades_dir)

    balance_provider = None
    if app.mode == "LIVE":
        if not endpoints.executor_url:
            raise ConfigurationError("endpoints.executor_url is required in LIVE mode")
        public_key = resolve_public_key(app.wallet.public_key)
        rpc = SolanaRpcClient(endpoints.solana_rpc_url, timeout=endpoints.request_timeout_seconds)

        def balance_provider() -> float:
            return rpc.get_balance_sol(public_key)

        venue: ExecutionVenue = HttpExecutionVenue(endpoints.executor_url)
    elif app.mode == "PAPER":
        venue = PaperExecutor(price_client, app.paper)
    else:
        raise ConfigurationError(f"Invalid mode: {app.mode}")

    return TradingRuntime(
        policy,
        app,
        venue,
        price_client,
        balance_provider=balance_provider,
        trade_log=trade_log,
        alerts=alerts,
        metrics=metrics,
    )


def _configure_logging(app: AppConfig) -> None:
    log_path = Path(app.logging.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, app.logging.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )
    logger.info(f"Starting sniper in mode={app.mode}")


async def _run(runtime: TradingRuntime, feed: Optional[str], duration: Optional[float]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runtime.request_stop)
        except NotImplementedError:  # pragma: no cover - Windows
            pass
    await runtime.run(feed=feed, duration=duration)


def main():
    """Entry point"""
    parser = argparse.ArgumentParser(description="Solana sniper: risk gate and position supervisor")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--mode", choices=["PAPER", "LIVE"], help="Override app.yaml mode")
    parser.add_argument("--feed", help="JSON Lines file of scored opportunities to replay into the intake")
    parser.add_argument("--duration", type=float, help="Stop after this many seconds")

    args = parser.parse_args()

    runtime = build_runtime(config_dir=args.config_dir, mode=args.mode)
    asyncio.run(_run(runtime, args.feed, args.duration))


if __name__ == "__main__":
    main()
