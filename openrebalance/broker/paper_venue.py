"""Paper swap venue: fills swaps at oracle prices against an in-memory chain.

Balances live in a StaticChainReader so a refresh after execution observes
the swapped amounts. Failures can be scripted per swap to exercise abort
paths and the fatal-error policy.
"""
from __future__ import annotations
import hashlib
import itertools
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from openrebalance.broker.abstract import AbilityClient, AbilityResponse, SwapQuote, SwapVenue
from openrebalance.data.chain_reader import StaticChainReader
from openrebalance.data.oracle import PriceOracle
from openrebalance.domain.models import Asset
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)

PAPER_ROUTER = "0x2626664c2603336e57b271c5c0b26f421741e481"


class _PaperApproval(AbilityClient):
    def __init__(self, venue: "PaperSwapVenue"):
        self.venue = venue
        self.allowances: Dict[Tuple[str, str], int] = {}

    def precheck(self, params: Dict[str, Any], context: Dict[str, Any]) -> AbilityResponse:
        key = (context["delegator"].lower(), params["token_address"].lower())
        already = self.allowances.get(key, 0) >= int(params["amount"])
        return AbilityResponse(True, {"already_approved": already})

    def execute(self, params: Dict[str, Any], context: Dict[str, Any]) -> AbilityResponse:
        key = (context["delegator"].lower(), params["token_address"].lower())
        self.allowances[key] = int(params["amount"])
        tx_hash = self.venue.next_hash()
        self.venue.chain.set_receipt(tx_hash, status=1)
        self.venue.approvals.append(dict(params))
        return AbilityResponse(True, {"tx_hash": tx_hash})


class _PaperSwap(AbilityClient):
    def __init__(self, venue: "PaperSwapVenue"):
        self.venue = venue

    def precheck(self, params: Dict[str, Any], context: Dict[str, Any]) -> AbilityResponse:
        owner = context["delegator"]
        held = self.venue.chain.balances.get((owner.lower(), params["token_in"].lower()), 0)
        if held < int(params["amount_in"]):
            return AbilityResponse(False, error="Not enough balance for swap")
        return AbilityResponse(True)

    def execute(self, params: Dict[str, Any], context: Dict[str, Any]) -> AbilityResponse:
        self.venue.swap_calls += 1
        call = self.venue.swap_calls
        self.venue.submitted.append(dict(params))

        error = self.venue.scripted_errors.get(call)
        if error is not None:
            LOGGER.info(f"Paper swap {call} rejected: {error}")
            return AbilityResponse(False, error=error)

        tx_hash = self.venue.next_hash()
        if call in self.venue.scripted_reverts:
            self.venue.chain.set_receipt(tx_hash, status=0)
            return AbilityResponse(True, {"tx_hash": tx_hash})
        if call in self.venue.scripted_pending:
            return AbilityResponse(True, {"tx_hash": tx_hash})

        owner = context["delegator"]
        amount_out = int(params["quote"]["amount_out_raw"])
        self.venue.chain.adjust_balance(owner, params["token_in"], -int(params["amount_in"]))
        self.venue.chain.adjust_balance(owner, params["token_out"], amount_out)
        self.venue.chain.set_receipt(tx_hash, status=1)
        return AbilityResponse(True, {"tx_hash": tx_hash})


class PaperSwapVenue(SwapVenue):
    """
    Usage:
        venue = PaperSwapVenue(chain, oracle, assets)
        venue.fail_swap(2, "execution reverted")   # second swap call fails
        venue.revert_swap(3)                       # third swap mines with status 0
    """

    def __init__(self, chain: StaticChainReader, oracle: PriceOracle, assets: Iterable[Asset],
                 spender_address: str = PAPER_ROUTER):
        self.chain = chain
        self.oracle = oracle
        self.assets: Dict[str, Asset] = {a.address: a for a in assets}
        self.spender_address = spender_address
        self.approval_client = _PaperApproval(self)
        self.swap_client = _PaperSwap(self)
        self.submitted: List[Dict[str, Any]] = []
        self.approvals: List[Dict[str, Any]] = []
        self.swap_calls = 0
        self.scripted_errors: Dict[int, str] = {}
        self.scripted_reverts: set = set()
        self.scripted_pending: set = set()
        self._counter = itertools.count(1)

    def next_hash(self) -> str:
        return "0x" + hashlib.sha256(f"paper-{next(self._counter)}".encode()).hexdigest()

    def add_asset(self, asset: Asset) -> None:
        self.assets[asset.address] = asset

    def fail_swap(self, call_number: int, error: str) -> None:
        self.scripted_errors[call_number] = error

    def revert_swap(self, call_number: int) -> None:
        self.scripted_reverts.add(call_number)

    def leave_pending(self, call_number: int) -> None:
        self.scripted_pending.add(call_number)

    def get_quote(self, token_in: str, token_out: str, amount_in_raw: int, recipient: str) -> SwapQuote:
        asset_in = self.assets[token_in.lower()]
        asset_out = self.assets[token_out.lower()]
        price_in = self.oracle.get_price(asset_in.symbol)
        price_out = self.oracle.get_price(asset_out.symbol)
        if price_in is None or price_out is None or price_out.price <= 0:
            raise ValueError(f"No paper price for {asset_in.symbol}/{asset_out.symbol}")
        value = Decimal(int(amount_in_raw)) / (Decimal(10) ** asset_in.decimals) * Decimal(str(price_in.price))
        out = (value / Decimal(str(price_out.price)) * (Decimal(10) ** asset_out.decimals)).to_integral_value(
            rounding=ROUND_DOWN
        )
        return SwapQuote(int(amount_in_raw), int(out), {"venue": "paper", "amount_out_raw": int(out)})
