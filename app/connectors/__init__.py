"""Platform connectors for the Brand Metrics platform"""

from app.connectors.base_connector import BaseConnector
from app.connectors.shopify_connector import ShopifyConnector
from app.connectors.meta_ads_connector import MetaAdsConnector

__all__ = [
    "BaseConnector",
    "ShopifyConnector",
    "MetaAdsConnector"
]
