from sqlalchemy import BigInteger, Column, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship

from crmsync.database import Base
from crmsync.models.contact import _utcnow


class Order(Base):
    """Conversation thread. ``main_id`` is the cross-channel thread key."""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False)
    main_id = Column(BigInteger, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="unsorted")
    source = Column(Text, nullable=False, default="telegram_bot")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    contact = relationship("Contact", back_populates="orders")

    __table_args__ = (Index("idx_orders_contact_created", "contact_id", "created_at"),)
