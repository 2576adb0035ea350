"""Portfolio and asset management services."""
from .asset_service import DEFAULT_ASSETS, AssetService
from .portfolio_service import PortfolioDetails, PortfolioService

__all__ = ["DEFAULT_ASSETS", "AssetService", "PortfolioDetails", "PortfolioService"]
