"""
Core: Execution venue contract

The core hands a sizing decision to a venue and gets a fill back. Routing and
settlement live behind the venue; the core only sees success or failure.

A venue may report a failed fill either by returning `success=False` or by
raising `ExecutionFailed`. Callers treat both the same way: no state change.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from core.exceptions import ExecutionFailed
from core.models import Position, TradeOrder

logger = logging.getLogger(__name__)


@dataclass
class BuyResult:
    """Result of a buy"""
    success: bool
    fill_price: float = 0.0
    filled_quantity: float = 0.0
    reference: str = ""
    error: Optional[str] = None


@dataclass
class SellResult:
    """Result of a (partial) sell"""
    success: bool
    sol_received: float = 0.0
    reference: str = ""
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class ExecutionVenue(ABC):
    """Turns orders into fills."""

    name = "venue"

    @abstractmethod
    async def buy(self, order: TradeOrder) -> BuyResult:
        ...

    @abstractmethod
    async def sell(self, position: Position, fraction_pct: float, reason: str) -> SellResult:
        """Sell `fraction_pct` percent of the tokens currently held."""
        ...


class HttpExecutionVenue(ExecutionVenue):
    """
    LIVE venue: forwards orders to an external swap executor service.

    POST {base_url}/buy  {mint, amount_sol, priority}
        -> {success, fill_price, filled_quantity, signature}
    POST {base_url}/sell {mint, token_amount, fraction_pct, reason}
        -> {success, sol_received, signature}
    """

    name = "http"

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, side: str, mint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            r = self.session.post(f"{self.base_url}/{side}", json=payload, timeout=self.timeout)
            r.raise_for_status()
            data = r.json() or {}
        except (requests.RequestException, ValueError) as e:
            raise ExecutionFailed(side, mint, f"executor unreachable: {e}") from e

        if not data.get("success"):
            raise ExecutionFailed(side, mint, data.get("error") or "rejected")
        return data

    async def buy(self, order: TradeOrder) -> BuyResult:
        payload = {"mint": order.mint, "amount_sol": order.amount_sol, "priority": order.priority}
        data = await asyncio.to_thread(self._post, "buy", order.mint, payload)
        return BuyResult(
            success=True,
            fill_price=float(data.get("fill_price") or 0),
            filled_quantity=float(data.get("filled_quantity") or 0),
            reference=str(data.get("signature") or ""),
        )

    async def sell(self, position: Position, fraction_pct: float, reason: str) -> SellResult:
        held = position.token_amount * (position.remaining_pct / 100.0)
        payload = {
            "mint": position.mint,
            "token_amount": held,
            "fraction_pct": fraction_pct,
            "reason": reason,
        }
        data = await asyncio.to_thread(self._post, "sell", position.mint, payload)
        return SellResult(
            success=True,
            sol_received=float(data.get("sol_received") or 0),
            reference=str(data.get("signature") or ""),
        )
