"""Routers package."""

from . import (
    health,
    auth,
    ingest,
    following,
    posts,
    qa,
)
