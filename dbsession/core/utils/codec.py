"""
Attribute serialization for stored sessions.

Session attributes are written as canonical JSON (sorted keys, compact
separators, UTF-8). Values JSON cannot represent natively are wrapped in
single-key tag objects:

    bytes     -> {"$bytes": "<base64>"}
    datetime  -> {"$datetime": "<isoformat>"}

A user mapping with exactly one key starting with ``$`` is wrapped as
``{"$map": {...}}`` so it can never be mistaken for a tag on the way back.
Every blob is paired with an uppercase hex SHA-256 digest of its exact bytes.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from dbsession.core.exceptions import (
    AttributeDeserializationError,
    AttributeSerializationError,
)

logger = logging.getLogger(__name__)

DIGEST_LENGTH = 64

_TAG_BYTES = "$bytes"
_TAG_DATETIME = "$datetime"
_TAG_MAP = "$map"


@dataclass(frozen=True)
class EncodedAttributes:
    """Serialized attributes plus the digest of exactly those bytes."""

    data: bytes
    digest: str


class AttributeCodec:
    """Converts an attribute mapping to bytes and back."""

    def encode(self, attributes: Mapping[str, Any]) -> EncodedAttributes:
        """
        Serialize attributes and compute their digest.

        Args:
            attributes: Mapping of attribute names to supported values

        Returns:
            EncodedAttributes with the blob and its SHA-256 hex digest

        Raises:
            AttributeSerializationError: If any value cannot be serialized
        """
        if not isinstance(attributes, Mapping):
            raise AttributeSerializationError(
                f"Session attributes must be a mapping, got {type(attributes).__name__}"
            )
        try:
            tagged = self._to_tagged(attributes, "")
        except RecursionError as e:
            raise AttributeSerializationError("Session attributes are nested too deeply") from e

        data = json.dumps(
            tagged,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")
        return EncodedAttributes(data=data, digest=self.digest(data))

    def decode(self, data: Optional[bytes]) -> Dict[str, Any]:
        """
        Rebuild the attribute mapping from a stored blob.

        A missing or zero-length blob decodes to an empty mapping.

        Raises:
            AttributeDeserializationError: If the blob is corrupt
        """
        if data is None or len(data) == 0:
            logger.warning("Asked to decode a null/empty attributes blob; using empty attributes")
            return {}

        try:
            raw = json.loads(bytes(data).decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise AttributeDeserializationError(f"Stored attributes are not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise AttributeDeserializationError(
                f"Stored attributes must be a JSON object, got {type(raw).__name__}"
            )

        try:
            attributes = self._from_tagged(raw)
        except RecursionError as e:
            raise AttributeDeserializationError("Stored attributes are nested too deeply") from e
        if not isinstance(attributes, dict):
            raise AttributeDeserializationError("Stored attributes did not decode to a mapping")
        return attributes

    @staticmethod
    def digest(data: bytes) -> str:
        """Uppercase hex SHA-256 of the given bytes."""
        return hashlib.sha256(data).hexdigest().upper()

    def _to_tagged(self, value: Any, path: str) -> Any:
        if value is None or isinstance(value, (str, bool, int)):
            return value
        if isinstance(value, float):
            if not math.isfinite(value):
                raise AttributeSerializationError(
                    f"Non-finite float at {path or '<root>'}", key_path=path
                )
            return value
        if isinstance(value, (bytes, bytearray, memoryview)):
            return {_TAG_BYTES: base64.b64encode(bytes(value)).decode("ascii")}
        if isinstance(value, datetime):
            return {_TAG_DATETIME: value.isoformat()}
        if isinstance(value, (list, tuple)):
            return [self._to_tagged(item, f"{path}[{i}]") for i, item in enumerate(value)]
        if isinstance(value, Mapping):
            converted = {}
            for key, item in value.items():
                if not isinstance(key, str):
                    raise AttributeSerializationError(
                        f"Attribute keys must be strings, got {type(key).__name__} at {path or '<root>'}",
                        key_path=path,
                    )
                converted[key] = self._to_tagged(item, f"{path}.{key}" if path else key)
            if len(converted) == 1 and next(iter(converted)).startswith("$"):
                return {_TAG_MAP: converted}
            return converted
        raise AttributeSerializationError(
            f"Cannot serialize value of type {type(value).__name__} at {path or '<root>'}",
            key_path=path,
        )

    def _from_tagged(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self._from_tagged(item) for item in value]
        if not isinstance(value, dict):
            return value

        if len(value) == 1:
            tag, payload = next(iter(value.items()))
            if tag.startswith("$"):
                return self._decode_tag(tag, payload)
        return {key: self._from_tagged(item) for key, item in value.items()}

    def _decode_tag(self, tag: str, payload: Any) -> Any:
        if tag == _TAG_MAP:
            if not isinstance(payload, dict):
                raise AttributeDeserializationError("Malformed $map tag")
            return {key: self._from_tagged(item) for key, item in payload.items()}
        if not isinstance(payload, str):
            raise AttributeDeserializationError(f"Malformed {tag} tag")
        if tag == _TAG_BYTES:
            try:
                return base64.b64decode(payload.encode("ascii"), validate=True)
            except (binascii.Error, UnicodeEncodeError) as e:
                raise AttributeDeserializationError(f"Malformed $bytes tag: {e}") from e
        if tag == _TAG_DATETIME:
            try:
                return datetime.fromisoformat(payload)
            except ValueError as e:
                raise AttributeDeserializationError(f"Malformed $datetime tag: {e}") from e
        raise AttributeDeserializationError(f"Unknown attribute tag {tag!r}")


# Shared default instance; the codec keeps no state
codec = AttributeCodec()
