"""
Shipment creation records

Two-phase marker for vendor shipment creation. A record is written as
PENDING before the vendor is called and moved to its final state after.
A record left in VENDOR_ORDER_CREATED means the vendor holds an order
whose shipment was never generated; reconciliation lists those.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON, Index, Enum as SQLEnum
)

from shipping_engine.core.database import Base


class CreationState(str, enum.Enum):
    """Creation record lifecycle"""
    PENDING = "pending"  # Vendor call not yet answered
    VENDOR_ORDER_CREATED = "vendor_order_created"  # Step one done, shipment missing
    COMPLETED = "completed"
    FAILED = "failed"


class ShipmentCreationRecord(Base):
    __tablename__ = "shipment_creation_records"
    __table_args__ = (
        Index("ix_shipment_creation_records_state", "state"),
        Index("ix_shipment_creation_records_order_id", "order_id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(String(100), nullable=False)
    provider_id = Column(String(50), nullable=False)
    service_id = Column(String(100), nullable=True)
    is_return = Column(Boolean, default=False)

    state = Column(SQLEnum(CreationState), nullable=False, default=CreationState.PENDING)

    # Vendor identifiers, filled in as they become known
    vendor_order_id = Column(String(100), nullable=True)
    vendor_shipment_id = Column(String(100), nullable=True)
    tracking_id = Column(String(100), nullable=True)

    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    vendor_response = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<ShipmentCreationRecord {self.id} {self.provider_id}:{self.order_id} {self.state}>"
