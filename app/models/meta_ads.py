"""
Meta Ads Data Models

Stores campaigns, daily campaign insights and age/gender breakdowns pulled
from the Meta Marketing API.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Date, BigInteger, ForeignKey, Numeric, UniqueConstraint
from datetime import datetime

from app.models.base import Base


class MetaCampaign(Base):
    """Campaign metadata (one row per brand and campaign)"""
    __tablename__ = "meta_campaigns"
    __table_args__ = (
        UniqueConstraint("brand_id", "campaign_id", name="uq_meta_campaigns_brand_campaign"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)
    account_id = Column(String, index=True)

    campaign_id = Column(String, index=True, nullable=False)
    name = Column(String)
    status = Column(String, nullable=True)
    objective = Column(String, nullable=True)
    daily_budget = Column(Numeric(12, 2), nullable=True)
    lifetime_budget = Column(Numeric(12, 2), nullable=True)

    created_time = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MetaAdDailyInsight(Base):
    """
    Daily campaign-level performance

    Budgets and spend are in account currency.
    """
    __tablename__ = "meta_ad_daily_insights"
    __table_args__ = (
        UniqueConstraint("brand_id", "campaign_id", "date", name="uq_meta_insights_brand_campaign_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)
    account_id = Column(String, index=True)

    campaign_id = Column(String, index=True, nullable=False)
    campaign_name = Column(String, nullable=True)
    date = Column(Date, index=True, nullable=False)

    spend = Column(Numeric(12, 2), default=0)
    impressions = Column(BigInteger, default=0)
    clicks = Column(BigInteger, default=0)
    reach = Column(BigInteger, default=0)
    purchases = Column(Float, default=0)
    purchase_value = Column(Numeric(12, 2), default=0)

    ctr = Column(Float, nullable=True)
    cpc = Column(Float, nullable=True)
    cpm = Column(Float, nullable=True)

    synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MetaDemographic(Base):
    """Daily account-level spend by age and gender"""
    __tablename__ = "meta_demographics"
    __table_args__ = (
        UniqueConstraint("brand_id", "account_id", "date", "age", "gender", name="uq_meta_demographics_row"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)
    account_id = Column(String, index=True)

    date = Column(Date, index=True, nullable=False)
    age = Column(String, nullable=False)
    gender = Column(String, nullable=False)

    spend = Column(Numeric(12, 2), default=0)
    impressions = Column(BigInteger, default=0)
    clicks = Column(BigInteger, default=0)
    reach = Column(BigInteger, default=0)

    synced_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
