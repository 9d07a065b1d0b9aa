from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pydantic import ValidationError

from avatar_pipeline.clients.object_store import ObjectStore
from avatar_pipeline.models.domain import PersonaRecord


class MalformedRecordError(ValueError):
    """The stored blob is not a readable persona record. It must never be written back."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class PersonaRepository:
    def __init__(self, store: ObjectStore, prefix: str = "personas/", logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.prefix = prefix if prefix.endswith("/") else f"{prefix}/"
        self.log = logger or logging.getLogger(__name__)

    def key_for(self, persona_id: str) -> str:
        return f"{self.prefix}{persona_id}.json"

    def list_keys(self) -> List[Tuple[str, Optional[datetime]]]:
        """Persona keys with the store's last-modified time. Storage errors propagate."""
        items = self.store.list(self.prefix)
        return [
            (item["key"], item.get("last_modified"))
            for item in items
            if str(item.get("key", "")).endswith(".json")
        ]

    def load(self, key: str) -> Optional[PersonaRecord]:
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedRecordError(key, "bad json") from exc
        if not isinstance(data, dict):
            raise MalformedRecordError(key, "record is not an object")
        try:
            record = PersonaRecord.model_validate(data)
        except ValidationError as exc:
            raise MalformedRecordError(key, f"invalid record: {exc.error_count()} errors") from exc
        return record

    def save(self, key: str, record: PersonaRecord) -> None:
        record.updated_at = datetime.now(timezone.utc)
        body = json.dumps(record.to_payload(), ensure_ascii=False, indent=2)
        self.store.set(key, body.encode("utf-8"))
        self.log.debug("persona saved", extra={"key": key, "status": record.status.value})

    def read_blob(self, key: str | None) -> bytes | None:
        """Raw bytes of an uploaded file; base64 data URLs are decoded."""
        blob = self.read_typed_blob(key)
        return blob[0] if blob is not None else None

    def read_typed_blob(self, key: str | None) -> Tuple[bytes, str | None] | None:
        """Like ``read_blob``, plus the media type declared by a data URL."""
        if not key:
            return None
        data = self.store.get(key)
        if data is None:
            return None
        return split_data_url(data)


_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def split_data_url(data: bytes | str) -> Tuple[bytes, str | None]:
    text = data if isinstance(data, str) else None
    if text is None:
        if not data.startswith(b"data:"):
            return data, None
        text = data.decode("ascii", errors="ignore")
    if not text.startswith("data:") or "," not in text:
        return text.encode("utf-8"), None
    header, encoded = text.split(",", 1)
    media_type = header[len("data:"):].split(";", 1)[0].strip().lower() or None
    try:
        return base64.b64decode(encoded, validate=False), media_type
    except (binascii.Error, ValueError):
        return b"", media_type


def image_content_type(data: bytes, declared: str | None = None) -> str:
    """Declared image type if any, else sniffed from the file signature. Defaults to JPEG."""
    if declared and declared.startswith("image/"):
        return declared
    for signature, content_type in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return content_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"
