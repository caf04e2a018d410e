"""
Test helper utilities shared across test modules
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError

# Reference time every fake clock starts at
T0 = datetime(2024, 1, 1, 12, 0, 0)


class FakeClock:
    """Clock that only moves when a test tells it to"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_integrity_error(statement: str = "INSERT INTO sessions ...") -> IntegrityError:
    """IntegrityError as SQLAlchemy would raise it from the driver"""
    return IntegrityError(statement, {}, Exception("UNIQUE constraint failed"))
