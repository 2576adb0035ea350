"""OpenRebalance: drift monitoring and swap-based rebalancing for on-chain portfolios."""

__version__ = "0.1.0"
