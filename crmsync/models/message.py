from sqlalchemy import BigInteger, Column, Index, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from crmsync.database import Base
from crmsync.models.contact import _utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    main_id = Column(BigInteger, nullable=False)
    author_type = Column(Text, nullable=False)  # client, operator, bot, system
    author_name = Column(Text)
    content = Column(Text)
    message_type = Column(Text, nullable=False, default="text")  # text, voice, image, file, video
    message_id_tg = Column(BigInteger)
    reply_to_mess_id_tg = Column(BigInteger)
    attachment_url = Column(Text)
    client_ref = Column(Text)
    reactions = Column(JSONB, nullable=False, default=list)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("main_id", "message_id_tg", name="uq_messages_thread_channel_id"),
        Index("idx_messages_main_created", "main_id", "created_at"),
    )
