"""Follow relationship between a user and a feed author."""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from database import Base


class UserFollowing(Base):
    """(user, followed author) pair refreshed during ingestion."""

    __tablename__ = "user_following"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    x_author_id = Column(BigInteger, ForeignKey("authors.x_author_id"), primary_key=True, index=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="following")
    author = relationship("Author")
