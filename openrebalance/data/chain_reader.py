"""
Chain read access: token balances and transaction receipts.

JsonRpcChainReader talks plain JSON-RPC over HTTP. StaticChainReader keeps
balances and receipts in memory for dry runs and tests.
"""
from __future__ import annotations
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from openrebalance.config.schemas import ChainConfig
from openrebalance.domain.errors import ChainReadError
from openrebalance.utils.logging import get_logger
from openrebalance.utils.retry import retry_call
from openrebalance.utils.validation import ZERO_ADDRESS

LOGGER = get_logger(__name__)

BALANCE_OF_SELECTOR = "0x70a08231"


@dataclass(frozen=True)
class TokenBalance:
    balance_raw: int
    balance_formatted: float


def format_units(raw: int, decimals: int) -> float:
    return float(Decimal(int(raw)) / (Decimal(10) ** decimals))


class ChainReader(ABC):
    """Read-only view of an EVM chain."""

    @abstractmethod
    def get_token_balance(self, owner: str, asset_address: str, decimals: int) -> TokenBalance:
        """Balance of owner; the zero address reads the native coin.

        Raises:
            ChainReadError: If the balance cannot be read.
        """
        pass

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt of a mined transaction, or None while it is pending."""
        pass


class JsonRpcChainReader(ChainReader):
    """Minimal JSON-RPC client (eth_getBalance, eth_call, eth_getTransactionReceipt)."""

    def __init__(self, config: Optional[ChainConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or ChainConfig()
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        def _post():
            response = self.session.post(
                self.config.rpc_url, json=payload, timeout=self.config.request_timeout_seconds
            )
            response.raise_for_status()
            return response.json()

        try:
            body = retry_call(_post, retries=self.config.max_retries, retry_on=(requests.RequestException,),
                              label=f"rpc {method}")
        except requests.RequestException as e:
            raise ChainReadError(f"{method} failed: {e}")
        if body.get("error"):
            raise ChainReadError(f"{method} failed: {body['error'].get('message', body['error'])}")
        return body.get("result")

    def get_token_balance(self, owner: str, asset_address: str, decimals: int) -> TokenBalance:
        if asset_address.lower() == ZERO_ADDRESS:
            result = self._rpc("eth_getBalance", [owner, "latest"])
        else:
            data = BALANCE_OF_SELECTOR + owner.lower().removeprefix("0x").rjust(64, "0")
            result = self._rpc("eth_call", [{"to": asset_address, "data": data}, "latest"])
        try:
            raw = int(result, 16) if result and result != "0x" else 0
        except (TypeError, ValueError):
            raise ChainReadError(f"Unexpected balance payload for {asset_address}: {result!r}")
        return TokenBalance(raw, format_units(raw, decimals))

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            return None
        status = receipt.get("status")
        if isinstance(status, str):
            receipt = dict(receipt, status=int(status, 16))
        return receipt


class StaticChainReader(ChainReader):
    """In-memory balances keyed by (owner, asset address) and receipts keyed by hash."""

    def __init__(self):
        self.balances: Dict[tuple, int] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.failing_assets: set = set()

    def set_balance(self, owner: str, asset_address: str, raw: int) -> None:
        self.balances[(owner.lower(), asset_address.lower())] = int(raw)

    def adjust_balance(self, owner: str, asset_address: str, delta: int) -> None:
        key = (owner.lower(), asset_address.lower())
        self.balances[key] = self.balances.get(key, 0) + int(delta)

    def fail_reads_for(self, asset_address: str) -> None:
        self.failing_assets.add(asset_address.lower())

    def get_token_balance(self, owner: str, asset_address: str, decimals: int) -> TokenBalance:
        if asset_address.lower() in self.failing_assets:
            raise ChainReadError(f"RPC unavailable for {asset_address}")
        raw = self.balances.get((owner.lower(), asset_address.lower()), 0)
        return TokenBalance(raw, format_units(raw, decimals))

    def set_receipt(self, tx_hash: str, status: int = 1, **fields) -> None:
        self.receipts[tx_hash] = dict(fields, transactionHash=tx_hash, status=status)

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_hash)
