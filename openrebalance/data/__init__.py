"""Data sources: price oracle and chain reader."""
from .oracle import PriceOracle, PriceQuote, PythPriceService, StaticPriceOracle
from .chain_reader import ChainReader, JsonRpcChainReader, StaticChainReader, TokenBalance

__all__ = [
    "PriceOracle",
    "PriceQuote",
    "PythPriceService",
    "StaticPriceOracle",
    "ChainReader",
    "JsonRpcChainReader",
    "StaticChainReader",
    "TokenBalance",
]
