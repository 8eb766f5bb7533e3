"""Author model (global, shared by every user's feed)."""

from sqlalchemy import BigInteger, Column, DateTime, String

from database import Base


class Author(Base):
    """Feed participant profile, upserted with last-write-wins semantics."""

    __tablename__ = "authors"

    x_author_id = Column(BigInteger, primary_key=True, autoincrement=False)
    handle = Column(String, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
