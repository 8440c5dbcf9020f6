"""
Store Settings Model

Key-value store for deployment-wide settings. The Shiprocket auth token
(with its expiry and failure cooldown) lives here under a single key.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func

from shiprocket_fulfillment.core.database import Base


class StoreSetting(Base):
    """
    Key-value store for store configuration.

    value is a JSON object so structured entries such as the cached token
    round-trip without a dedicated table.
    """
    __tablename__ = "store_settings"

    id = Column(Integer, primary_key=True, index=True)

    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
