"""
Paper-trading venue

Fills orders against the live DexScreener price without touching a wallet.

Models:
1. **Entry slippage** - buys fill 1-3% above the live price
2. **Exit slippage** - sells fill 2-5% below the reference price
3. **Loss realism cap** - the supervisor only sees a crash after it happened,
   so a paper sell at -45% would overstate what a real stop fills at.
   Sells below `max_realistic_loss_pct` are repriced to that level minus a
   random jitter (-14% to -16% with defaults).

The cap exists only here. Live venues report whatever they actually got.
"""

import logging
import random
import time
import uuid
from typing import Optional

from core.execution import BuyResult, ExecutionVenue, SellResult
from core.models import Position, TradeOrder
from tools.config_validator import PaperSettings

logger = logging.getLogger(__name__)


class PaperExecutor(ExecutionVenue):
    """
    Simulated venue.

    `price_client` needs an async `fetch_price(mint) -> Optional[float]`.
    """

    name = "paper"

    def __init__(self, price_client, settings: Optional[PaperSettings] = None, rng: Optional[random.Random] = None):
        self.price_client = price_client
        self.settings = settings or PaperSettings()
        self.rng = rng or random.Random(self.settings.seed)
        logger.info(
            f"Initialized PaperExecutor: entry_slip={self.settings.entry_slippage_pct}%, "
            f"exit_slip={self.settings.exit_slippage_pct}%, loss_cap={self.settings.max_realistic_loss_pct}%"
        )

    def _slippage(self, bounds) -> float:
        low, high = bounds
        return self.rng.uniform(low, high) / 100.0

    @staticmethod
    def _reference(side: str) -> str:
        return f"paper_{side}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"

    async def buy(self, order: TradeOrder) -> BuyResult:
        price = await self.price_client.fetch_price(order.mint)
        if not price:
            logger.warning(f"[SIM] BUY {order.symbol}: no live price, order cancelled")
            return BuyResult(success=False, error="no price")

        amount = order.amount_sol or 0.0
        slip = self._slippage(self.settings.entry_slippage_pct)
        fill_price = price * (1 + slip)
        quantity = amount / fill_price

        logger.info(
            f"[SIM] BUY {order.symbol}: {amount:.4f} SOL @ {fill_price:.12f} (slip +{slip * 100:.1f}%)"
        )
        return BuyResult(
            success=True,
            fill_price=fill_price,
            filled_quantity=quantity,
            reference=self._reference("buy"),
        )

    def capped_exit_price(self, position: Position) -> float:
        """Reference price for a paper sell, with the loss realism cap applied."""
        price = position.current_price
        if position.entry_price <= 0:
            return price
        pnl = (price - position.entry_price) / position.entry_price * 100.0
        cap = self.settings.max_realistic_loss_pct
        if pnl < cap:
            capped = cap - self.rng.uniform(0, self.settings.loss_cap_jitter_pct)
            logger.info(f"[SIM] SELL {position.symbol}: live {pnl:.1f}% capped to {capped:.1f}%")
            price = position.entry_price * (1 + capped / 100.0)
        return price

    async def sell(self, position: Position, fraction_pct: float, reason: str) -> SellResult:
        held = position.token_amount * (position.remaining_pct / 100.0)
        tokens = held * (fraction_pct / 100.0)
        invested = position.committed_sol * (fraction_pct / 100.0)

        price = self.capped_exit_price(position)
        slip = self._slippage(self.settings.exit_slippage_pct)
        received = max(0.0, tokens * price * (1 - slip))

        effective = ((received / invested) - 1) * 100.0 if invested > 0 else 0.0
        logger.info(
            f"[SIM] SELL {fraction_pct:.0f}% of {position.symbol} ({reason}) -> "
            f"{received:.6f} SOL ({effective:+.1f}%)"
        )
        return SellResult(
            success=True,
            sol_received=received,
            reference=self._reference("sell"),
            extra={"exit_price": price, "slippage_pct": slip * 100.0},
        )
