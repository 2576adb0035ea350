"""Asset catalog management."""
from __future__ import annotations
from typing import List, Optional

from openrebalance.domain.errors import AssetNotFoundError
from openrebalance.domain.models import Asset
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Base mainnet tokens with their Pyth price feed ids
DEFAULT_ASSETS = (
    {
        "symbol": "USDC",
        "name": "USD Coin",
        "address": "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
        "decimals": 6,
        "price_feed_id": "0xeaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
    },
    {
        "symbol": "WETH",
        "name": "Wrapped Ether",
        "address": "0x4200000000000000000000000000000000000006",
        "decimals": 18,
        "price_feed_id": "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    },
    {
        "symbol": "WBTC",
        "name": "Wrapped Bitcoin",
        "address": "0x0555e30da8f98308edb960aa94c0db47230d2b9c",
        "decimals": 8,
        "price_feed_id": "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
    },
)


class AssetService:
    def __init__(self, repository: PortfolioRepository, chain_id: int = 8453):
        self.repository = repository
        self.chain_id = chain_id

    def register_asset(self, symbol: str, address: str, decimals: int, name: str = "",
                       price_feed_id: Optional[str] = None) -> Asset:
        asset = Asset(symbol=symbol, address=address, decimals=decimals, name=name,
                      chain_id=self.chain_id, price_feed_id=price_feed_id)
        self.repository.add_asset(asset)
        LOGGER.info(f"Asset registered: {asset.symbol} ({asset.address})", extra={"symbol": asset.symbol})
        return asset

    def list_assets(self, active_only: bool = True) -> List[Asset]:
        return self.repository.list_assets(active_only=active_only)

    def get_asset(self, symbol: str) -> Asset:
        asset = self.repository.get_asset_by_symbol(symbol)
        if asset is None:
            raise AssetNotFoundError(symbol)
        return asset

    def set_asset_active(self, symbol: str, is_active: bool) -> Asset:
        return self.repository.set_asset_active(symbol, is_active)

    def seed_default_assets(self) -> List[Asset]:
        """Register the default tokens that are not in the catalog yet."""
        created = []
        for entry in DEFAULT_ASSETS:
            if self.repository.get_asset_by_symbol(entry["symbol"]) is None:
                created.append(self.register_asset(**entry))
        return created

    def price_feed_ids(self) -> dict:
        """symbol -> price feed id for every active asset that has one."""
        return {a.symbol: a.price_feed_id for a in self.list_assets() if a.price_feed_id}
