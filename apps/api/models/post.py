"""Post model for ingested feed content."""

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Post(Base):
    """One ingested post, stored once per following user."""

    __tablename__ = "posts"
    __table_args__ = (Index("ix_posts_user_published", "user_id", "published_at"),)

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    x_post_id = Column(BigInteger, primary_key=True, autoincrement=False)
    author_id = Column(BigInteger, ForeignKey("authors.x_author_id"), nullable=False, index=True)
    published_at = Column(DateTime(timezone=True), nullable=False, index=True)
    url = Column(String, nullable=False)
    text = Column(Text, nullable=False, default="")
    conversation_id = Column(BigInteger, nullable=True)
    ingested_at = Column(DateTime(timezone=True), server_default=func.now())
    first_visible_at = Column(DateTime(timezone=True), server_default=func.now())
    edited_seen = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="posts")
    author = relationship("Author")
