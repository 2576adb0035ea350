"""Swap venue interfaces and the paper venue."""
from .abstract import AbilityClient, AbilityResponse, SwapQuote, SwapVenue
from .paper_venue import PaperSwapVenue

__all__ = ["AbilityClient", "AbilityResponse", "SwapQuote", "SwapVenue", "PaperSwapVenue"]
