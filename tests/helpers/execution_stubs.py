"""
Test helpers for the risk gate, supervisor and watchlist tests.

Provides scripted price feeds, a controllable venue and a fake clock so the
core can be driven tick by tick without network access.
"""

import asyncio
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set, Tuple

from core.dexscreener import PairSnapshot
from core.exceptions import ExecutionFailed
from core.execution import BuyResult, ExecutionVenue, SellResult
from core.models import Confidence, Position, ScoredOpportunity, TradeOrder
from tools.config_validator import PolicyConfig, RiskPolicy

START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class StubPriceClient:
    """
    Scripted prices per mint.

    Each fetch consumes the next scripted value; the last value sticks.
    `None` in a script means "no price" (dead data).
    """

    def __init__(self, prices: Optional[Dict[str, Iterable[Optional[float]]]] = None):
        self.prices: Dict[str, List[Optional[float]]] = {}
        self.pairs: Dict[str, PairSnapshot] = {}
        self.failing: Set[str] = set()
        self.calls: Counter = Counter()
        for mint, script in (prices or {}).items():
            self.set_price(mint, *script)

    def set_price(self, mint: str, *values: Optional[float]) -> None:
        self.prices[mint] = list(values)

    def set_pair(self, mint: str, pair: PairSnapshot) -> None:
        self.pairs[mint] = pair

    async def fetch_price(self, mint: str) -> Optional[float]:
        self.calls[mint] += 1
        if mint in self.failing:
            raise RuntimeError(f"feed down for {mint}")
        script = self.prices.get(mint)
        if not script:
            return None
        if len(script) > 1:
            return script.pop(0)
        return script[0]

    async def fetch_pair(self, mint: str) -> Optional[PairSnapshot]:
        return self.pairs.get(mint)


class StubVenue(ExecutionVenue):
    """
    Venue that fills at a fixed price and sells at the position's current price.

    No slippage, so realized P&L in tests equals the price move exactly.
    """

    name = "stub"

    def __init__(self, fill_price: float = 1.0):
        self.fill_price = fill_price
        self.buys: List[TradeOrder] = []
        self.sells: List[Tuple[str, float, str]] = []
        self.fail_buys = False
        self.fail_sells = False
        self.raise_on_sell = False

    async def buy(self, order: TradeOrder) -> BuyResult:
        self.buys.append(order)
        if self.fail_buys:
            return BuyResult(success=False, error="stub rejected buy")
        return BuyResult(
            success=True,
            fill_price=self.fill_price,
            filled_quantity=order.amount_sol / self.fill_price,
            reference=f"buy_{len(self.buys)}",
        )

    async def sell(self, position: Position, fraction_pct: float, reason: str) -> SellResult:
        self.sells.append((position.id, fraction_pct, reason))
        if self.raise_on_sell:
            raise ExecutionFailed("sell", position.mint, "stub outage")
        if self.fail_sells:
            return SellResult(success=False, error="stub rejected sell")
        held = position.token_amount * (position.remaining_pct / 100.0)
        tokens = held * (fraction_pct / 100.0)
        return SellResult(
            success=True,
            sol_received=tokens * position.current_price,
            reference=f"sell_{len(self.sells)}",
        )


def make_opportunity(
    mint: str = "MINT_A",
    score: float = 60.0,
    confidence: str = "medium",
    symbol: Optional[str] = None,
    **overrides,
) -> ScoredOpportunity:
    return ScoredOpportunity(
        mint=mint,
        symbol=symbol or mint.replace("MINT_", ""),
        score=score,
        confidence=Confidence(confidence),
        reasons=overrides.pop("reasons", ["volume spike"]),
        **overrides,
    )


def make_position(
    mint: str = "MINT_A",
    entry_price: float = 1.0,
    amount_sol: float = 0.1,
    entry_time: float = START_TIME,
    **overrides,
) -> Position:
    return Position(
        mint=mint,
        symbol=overrides.pop("symbol", mint.replace("MINT_", "")),
        entry_price=entry_price,
        entry_amount_sol=amount_sol,
        token_amount=amount_sol / entry_price,
        entry_time=entry_time,
        **overrides,
    )


def make_policy(**risk_overrides) -> PolicyConfig:
    return PolicyConfig(risk=RiskPolicy(**risk_overrides))


def make_pair(**overrides) -> PairSnapshot:
    """A pair that satisfies every runner signal unless overridden."""
    values = dict(
        price_native=1.2,
        market_cap=80_000,
        volume_5m=5_000,
        volume_1h=12_000,  # avg 5m = 1000
        buys_5m=70,
        sells_5m=30,
        price_change_5m=4.0,
    )
    values.update(overrides)
    return PairSnapshot(**values)


def run(coro):
    return asyncio.run(coro)
