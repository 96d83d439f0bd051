"""Database models for the Brand Metrics platform"""

from app.models.brand import Brand, PlatformConnection

from app.models.shopify import (
    ShopifyOrder,
    ShopifyRefund,
    ShopifyCustomer,
    ShopifyProduct
)

from app.models.meta_ads import (
    MetaCampaign,
    MetaAdDailyInsight,
    MetaDemographic
)

from app.models.sync_jobs import (
    EtlJob,
    EtlCursor,
    QueueJob
)
