"""Exceptions raised by the session store."""

from typing import Optional


class SessionStoreError(Exception):
    """Base class for session store failures"""
    pass


class AttributeCodecError(SessionStoreError):
    """Raised when session attributes cannot be converted to or from bytes"""
    pass


class AttributeSerializationError(AttributeCodecError):
    """Raised when an attribute value cannot be serialized"""

    def __init__(self, message: str, key_path: Optional[str] = None):
        super().__init__(message)
        self.key_path = key_path


class AttributeDeserializationError(AttributeCodecError):
    """Raised when a stored blob cannot be decoded back into attributes"""
    pass


class DuplicateSessionRecordError(SessionStoreError):
    """Raised when more than one row exists for a single session id"""

    def __init__(self, session_id: str, row_count: int):
        super().__init__(
            f"Expected at most one record for session {session_id!r}, found {row_count}"
        )
        self.session_id = session_id
        self.row_count = row_count


class SessionRowMappingError(SessionStoreError):
    """Raised when a stored row cannot be mapped to a SessionRecord"""

    def __init__(self, session_id: str, row_number: int, message: str):
        super().__init__(
            f"Could not map row #{row_number} for session {session_id!r}: {message}"
        )
        self.session_id = session_id
        self.row_number = row_number
