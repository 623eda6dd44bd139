"""
Price and token-metadata lookups consumed by the transaction classifier.
"""

from backend_tradesync.pricing.gateway import (  # noqa: F401
    AssetInfo,
    HttpPriceGateway,
    PriceGateway,
    placeholder_asset,
)

__all__ = ["AssetInfo", "HttpPriceGateway", "PriceGateway", "placeholder_asset"]
