"""
DexScreener client: live native price and a pair snapshot per token.

Every call runs the blocking `requests` request in a worker thread under an
asyncio timeout, and every failure degrades to None. A missing price is the
supervisor's "dead data" signal, never an exception.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens"


@dataclass
class PairSnapshot:
    """Market context of a token's main pair"""
    price_native: float
    market_cap: float
    volume_5m: float
    volume_1h: float
    buys_5m: int
    sells_5m: int
    price_change_5m: float

    @property
    def avg_volume_5m(self) -> float:
        """Average 5m volume over the last hour."""
        return self.volume_1h / 12.0 if self.volume_1h > 0 else 0.0

    @property
    def buy_ratio(self) -> float:
        total = self.buys_5m + self.sells_5m
        return self.buys_5m / total if total > 0 else 0.0

    @classmethod
    def from_pair(cls, pair: Dict[str, Any]) -> "PairSnapshot":
        volume = pair.get("volume") or {}
        txns = (pair.get("txns") or {}).get("m5") or {}
        change = pair.get("priceChange") or {}
        return cls(
            price_native=float(pair.get("priceNative") or 0),
            market_cap=float(pair.get("marketCap") or pair.get("fdv") or 0),
            volume_5m=float(volume.get("m5") or 0),
            volume_1h=float(volume.get("h1") or 0),
            buys_5m=int(txns.get("buys") or 0),
            sells_5m=int(txns.get("sells") or 0),
            price_change_5m=float(change.get("m5") or 0),
        )


class DexScreenerClient:
    def __init__(
        self,
        base_url: str = DEXSCREENER_TOKENS_URL,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get_first_pair(self, mint: str) -> Optional[Dict[str, Any]]:
        r = self.session.get(f"{self.base_url}/{mint}", timeout=self.timeout)
        r.raise_for_status()
        pairs = (r.json() or {}).get("pairs") or []
        return pairs[0] if pairs else None

    async def _fetch_pair_raw(self, mint: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._get_first_pair, mint),
                timeout=self.timeout + 1.0,
            )
        except asyncio.TimeoutError:
            logger.debug(f"DexScreener timeout for {mint[:8]}")
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"DexScreener fetch failed for {mint[:8]}: {e}")
        return None

    async def fetch_price(self, mint: str) -> Optional[float]:
        """Native (SOL) price, or None when no usable price is available."""
        pair = await self._fetch_pair_raw(mint)
        if not pair:
            return None
        try:
            price = float(pair.get("priceNative") or 0)
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None

    async def fetch_pair(self, mint: str) -> Optional[PairSnapshot]:
        pair = await self._fetch_pair_raw(mint)
        if not pair:
            return None
        try:
            return PairSnapshot.from_pair(pair)
        except (TypeError, ValueError) as e:
            logger.debug(f"Unparseable pair for {mint[:8]}: {e}")
            return None
