"""
Tenant models: brands and their platform connections
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime

from app.models.base import Base


class Brand(Base):
    """
    A tenant: one customer's store / ad account grouping.

    Every synced row is scoped by brand_id.
    """
    __tablename__ = "brands"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    owner_id = Column(String, index=True, nullable=True)  # External auth user id

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connections = relationship(
        "PlatformConnection",
        back_populates="brand",
        cascade="all, delete-orphan"
    )


class PlatformConnection(Base):
    """
    Stored OAuth credential linking a Brand to Shopify or Meta.

    Shopify connections use shop_domain; Meta connections use account_id
    (the ad account id, with or without the act_ prefix).
    """
    __tablename__ = "platform_connections"

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="CASCADE"), index=True, nullable=False)

    platform = Column(String, index=True, nullable=False)  # shopify, meta
    shop_domain = Column(String, nullable=True)
    account_id = Column(String, index=True, nullable=True)
    access_token = Column(Text, nullable=False)
    account_created_at = Column(DateTime, nullable=True)

    status = Column(String, default="active", index=True)  # active, inactive
    sync_status = Column(String, default="pending")  # pending, in_progress, completed, failed
    sync_metadata = Column("metadata", JSON, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    brand = relationship("Brand", back_populates="connections")

    @property
    def is_active(self) -> bool:
        return self.status == "active"
