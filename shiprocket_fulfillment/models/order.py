"""
Order models

Only the columns the fulfillment flow reads or writes are mapped here; the
storefront owns the rest of the schema.

shiprocket_order_id / shiprocket_shipment_id are dedicated columns so
tracking lookups do not have to parse notes.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Text, JSON, Numeric, BigInteger, Index
from sqlalchemy.orm import relationship

from shiprocket_fulfillment.core.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)

    order_number = Column(String, unique=True, index=True, nullable=True)
    status = Column(String, default="pending", index=True)
    email = Column(String, nullable=True)

    # Pricing
    subtotal = Column(Numeric(12, 2), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=True)

    # Addresses are stored as loose JSON by the checkout flow
    shipping_address = Column(JSON)
    billing_address = Column(JSON, nullable=True)
    shipping_method = Column(String)
    tracking_number = Column(String)

    # Shiprocket references
    shiprocket_order_id = Column(BigInteger, nullable=True)
    shiprocket_shipment_id = Column(BigInteger, nullable=True)

    # Payment
    payment_method = Column(String)

    notes = Column(Text)

    # Timestamps
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    shipped_at = Column(DateTime)

    items = relationship("OrderItem", back_populates="order")

    __table_args__ = (
        Index("ix_orders_shiprocket_shipment_id", "shiprocket_shipment_id"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String, nullable=True)

    name = Column(String)
    sku = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=1)
    weight = Column(Float, nullable=True)  # kg, per unit

    order = relationship("Order", back_populates="items")
