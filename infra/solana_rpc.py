"""Wallet balance lookup over Solana JSON-RPC."""

import logging
import os
from typing import Optional

import requests

from core.exceptions import ConfigurationError, CriticalDataUnavailable

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


class SolanaRpcClient:
    def __init__(self, rpc_url: Optional[str] = None, timeout: float = 10.0, session: Optional[requests.Session] = None):
        if rpc_url and "${" in rpc_url:
            rpc_url = os.path.expandvars(rpc_url)
            if "${" in rpc_url:
                rpc_url = None
        self.rpc_url = rpc_url or DEFAULT_RPC_URL
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_balance_sol(self, public_key: str) -> float:
        """
        Native SOL balance of a wallet.

        Raises:
            CriticalDataUnavailable: RPC unreachable or returned an error
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getBalance", "params": [public_key]}
        try:
            r = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            r.raise_for_status()
            data = r.json() or {}
        except (requests.RequestException, ValueError) as e:
            raise CriticalDataUnavailable("solana_rpc.getBalance", e) from e

        if "error" in data:
            raise CriticalDataUnavailable(f"solana_rpc.getBalance: {data['error']}")
        try:
            lamports = int(data["result"]["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise CriticalDataUnavailable("solana_rpc.getBalance: malformed response", e) from e
        return lamports / LAMPORTS_PER_SOL


def resolve_public_key(configured: Optional[str]) -> str:
    """Wallet public key from config (with ${VAR} expansion) or WALLET_PUBLIC_KEY."""
    key = configured or ""
    if "${" in key:
        key = os.path.expandvars(key)
        if "${" in key:
            key = ""
    key = key or os.getenv("WALLET_PUBLIC_KEY", "")
    if not key:
        raise ConfigurationError("WALLET_PUBLIC_KEY is required in LIVE mode")
    return key
