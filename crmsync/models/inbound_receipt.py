"""
InboundReceipt: one row per accepted provider event.
A redelivered event hits the unique constraint and is skipped.
"""

from sqlalchemy import BigInteger, Column, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP

from crmsync.database import Base
from crmsync.models.contact import _utcnow


class InboundReceipt(Base):
    __tablename__ = "inbound_receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel = Column(Text, nullable=False, default="telegram")
    external_user_id = Column(BigInteger, nullable=False)
    channel_message_id = Column(BigInteger, nullable=False)
    received_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("channel", "external_user_id", "channel_message_id", name="uq_inbound_receipts_event"),
    )
