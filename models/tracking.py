from sqlalchemy import Column, String, Integer, DateTime, Date, Text, Index, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, TrackingStatus


class OrderTracking(Base):
    """
    Shipment of one customer order, keyed by its carrier tracking code.

    Rows are created by the order system; the tracking pipeline only
    refreshes status, regions and events for orders not yet delivered.
    """
    __tablename__ = "order_trackings"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tracking_code = Column(String(100), nullable=False, unique=True)

    order_id = Column(String(100), nullable=True)
    site = Column(String(100), nullable=True)
    delivery_type = Column(Integer, nullable=False, default=1)

    status = Column(Integer, nullable=False, default=int(TrackingStatus.NOT_FOUND), index=True)
    original_region = Column(String(100), nullable=True)
    destination_region = Column(String(100), nullable=True)
    current_process = Column(Text, nullable=True)
    total_days = Column(Integer, nullable=True)
    order_date = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    details = relationship("OrderTrackingDetail", back_populates="tracking", cascade="all, delete-orphan")


class OrderTrackingDetail(Base):
    """Single carrier event on the origin or destination leg."""
    __tablename__ = "order_tracking_details"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_tracking_id = Column(BigIntPK, ForeignKey("order_trackings.id", ondelete="CASCADE"), nullable=False)

    event_time = Column(String(50), nullable=True)
    status_text = Column(Text, nullable=False)
    region = Column(Integer, nullable=False)  # TrackingRegion

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    tracking = relationship("OrderTracking", back_populates="details")

    __table_args__ = (
        Index("idx_tracking_details_tracking", "order_tracking_id"),
    )
