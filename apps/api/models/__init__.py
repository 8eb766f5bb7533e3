"""Models package."""

from .user import User
from .author import Author
from .user_following import UserFollowing
from .post import Post
from .ingest_run import IngestRun
from .qa_message import QAMessage, QASource
