"""Session record schema definitions."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionRecord(BaseModel):
    """All persisted state for one client session"""

    session_id: str = Field(..., min_length=1, max_length=255, description="Opaque session identifier")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Session attribute bag")
    max_inactive_interval: int = Field(
        ..., description="Seconds of inactivity after which the session expires"
    )
    created_at: Optional[datetime] = Field(None, description="Set by the store on first insert")
    last_accessed_at: Optional[datetime] = Field(None, description="Updated on every write")
    content_digest: Optional[str] = Field(
        None, min_length=64, max_length=64, description="SHA-256 of the stored attribute blob"
    )

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("attributes", mode="before")
    @classmethod
    def copy_attributes(cls, value: Any) -> Any:
        """Detach the record from the caller's mapping instance."""
        if value is None:
            return {}
        if isinstance(value, dict):
            return dict(value)
        return value

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.last_accessed_at is None:
            return None
        return self.last_accessed_at + timedelta(seconds=self.max_inactive_interval)

    def is_expired(self, now: datetime) -> bool:
        """True once the inactivity window has strictly elapsed at ``now``."""
        expires_at = self.expires_at
        return expires_at is not None and expires_at < now
