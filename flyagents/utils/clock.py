"""Naive-UTC timestamps, matching how SQLite stores DateTime columns."""

from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
