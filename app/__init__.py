"""Brand Metrics platform: Shopify and Meta Ads ingestion and dashboard metrics"""

__version__ = "1.0.0"
