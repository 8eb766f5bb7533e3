"""Q&A history: asked questions, generated answers and the posts cited."""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models.ingest_run import new_sortable_id


class QAMessage(Base):
    """One question answered over a user's posts in a date window."""

    __tablename__ = "qa_messages"
    __table_args__ = (Index("ix_qa_messages_user_created", "user_id", "created_at"),)

    id = Column(String, primary_key=True, default=new_sortable_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    date_from = Column(DateTime(timezone=True), nullable=False)
    date_to = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="qa_messages")
    sources = relationship("QASource", back_populates="qa_message", cascade="all, delete-orphan")


class QASource(Base):
    """A stored post cited by an answer."""

    __tablename__ = "qa_sources"

    qa_id = Column(String, ForeignKey("qa_messages.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    x_post_id = Column(BigInteger, primary_key=True, autoincrement=False)

    qa_message = relationship("QAMessage", back_populates="sources")
