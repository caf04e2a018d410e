"""Relational-table session storage."""

from dbsession.core.config import SessionStoreConfig, Settings
from dbsession.core.schemas.session import SessionRecord
from dbsession.core.utils.codec import AttributeCodec, EncodedAttributes
from dbsession.core.utils.session_store import SessionStore
from dbsession.core.utils.sweeper import CleanupScheduler, ExpirySweeper, SweepResult

__all__ = [
    "AttributeCodec",
    "CleanupScheduler",
    "EncodedAttributes",
    "ExpirySweeper",
    "SessionRecord",
    "SessionStore",
    "SessionStoreConfig",
    "Settings",
    "SweepResult",
]
