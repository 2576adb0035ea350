"""
Swap Venue Abstraction Layer.
Defines the interface the swap executor dispatches approvals and swaps through.

Each operation follows the precheck -> execute protocol of a delegated
signing ability: precheck validates without side effects, execute signs and
submits and returns the transaction hash in `result["tx_hash"]`.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class AbilityResponse:
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def tx_hash(self) -> Optional[str]:
        return self.result.get("tx_hash")


@dataclass(frozen=True)
class SwapQuote:
    """Venue quote for a swap; `route` is opaque venue data passed back on execute."""
    amount_in_raw: int
    amount_out_raw: int
    route: Dict[str, Any] = field(default_factory=dict)


class AbilityClient(ABC):
    """
    A signed on-chain action (ERC-20 approval or swap).
    """

    @abstractmethod
    def precheck(self, params: Dict[str, Any], context: Dict[str, Any]) -> AbilityResponse:
        """Validate params. For approvals, result["already_approved"] reports an existing allowance."""
        pass

    @abstractmethod
    def execute(self, params: Dict[str, Any], context: Dict[str, Any]) -> AbilityResponse:
        """Sign and submit. result["tx_hash"] holds the submitted transaction hash."""
        pass


class SwapVenue(ABC):
    """
    Abstract base for swap venues (DEX routers).
    """

    spender_address: str
    approval_client: AbilityClient
    swap_client: AbilityClient

    @abstractmethod
    def get_quote(self, token_in: str, token_out: str, amount_in_raw: int, recipient: str) -> SwapQuote:
        """Quote swapping amount_in_raw of token_in into token_out."""
        pass
