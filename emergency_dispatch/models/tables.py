"""
Responder and emergency request tables
"""
import uuid

from sqlalchemy import Column, String, ForeignKey, Text, DateTime, Integer, Index, func
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import declared_attr, relationship
from geoalchemy2 import Geometry
from emergency_dispatch.core.database import Base


class RecordMixin:
    """UUID primary key plus created/updated audit columns"""

    @declared_attr
    def id(cls):
        return Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    @declared_attr
    def created_at(cls):
        return Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @declared_attr
    def updated_at(cls):
        return Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ResponderRecord(RecordMixin, Base):
    """Responder, one row per captain"""
    __tablename__ = "responders"
    
    name = Column(String(255), nullable=False, default="")
    service_type = Column(String(20), nullable=False)  # ambulance, fire, police
    availability = Column(String(20), default="offline", nullable=False)  # offline, available, busy
    location = Column(Geometry("POINT", srid=4326, spatial_index=True), nullable=True)
    last_location_update = Column(DateTime(timezone=True), nullable=True)
    current_request_id = Column(UUID(as_uuid=True), nullable=True)
    
    __table_args__ = (
        Index("ix_responders_service_type_availability", "service_type", "availability"),
    )


class EmergencyRequestRecord(RecordMixin, Base):
    """Emergency request and its lifecycle timestamps"""
    __tablename__ = "emergency_requests"
    
    requester_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    service_type = Column(String(20), nullable=False)
    location = Column(Geometry("POINT", srid=4326, spatial_index=True), nullable=True)
    address = Column(Text, nullable=True)
    description = Column(Text, nullable=False, default="")
    emergency_type = Column(String(100), nullable=True)
    status = Column(String(20), default="pending", nullable=False, index=True)
    assigned_responder_id = Column(UUID(as_uuid=True), ForeignKey("responders.id"), nullable=True)
    dispatch_attempts = Column(Integer, default=0, nullable=False)
    declined_responder_ids = Column(ARRAY(UUID(as_uuid=True)), default=list, nullable=False)
    
    # Timestamps for lifecycle tracking
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    estimated_arrival_at = Column(DateTime(timezone=True), nullable=True)
    actual_arrival_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    
    # Relationships
    assigned_responder = relationship("ResponderRecord")
