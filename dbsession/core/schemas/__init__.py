"""Pydantic schemas"""

from dbsession.core.schemas.session import SessionRecord

__all__ = ["SessionRecord"]
