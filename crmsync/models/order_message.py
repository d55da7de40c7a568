from sqlalchemy import Column, ForeignKey, Integer, UniqueConstraint

from crmsync.database import Base


class OrderMessage(Base):
    __tablename__ = "order_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False)

    __table_args__ = (UniqueConstraint("order_id", "message_id", name="uq_order_messages_pair"),)
