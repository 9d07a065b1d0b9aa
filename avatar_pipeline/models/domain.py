from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PersonaStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    PARTIAL = "partial"
    ERROR = "error"


class Script(_CamelModel):
    key: str
    text: str = ""


class RenderResult(_CamelModel):
    url: str
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[float] = None


class PendingRender(_CamelModel):
    job_id: str
    started_at: datetime = Field(default_factory=utcnow)

    @field_validator("started_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ProviderState(_CamelModel):
    """Results of the one-time setup calls. Each field is written once and never recomputed."""

    asset_handle: Optional[str] = None
    group_handle: Optional[str] = None
    renderable_id: Optional[str] = None
    voice_handle: Optional[str] = None
    voice_clone_error: Optional[str] = None


# Older uploads use these keys; they are written back under the same name.
LEGACY_KEYS = {"name": "displayName", "ownerEmail": "contactAddress", "created": "createdAt"}


class PersonaRecord(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    status: PersonaStatus = PersonaStatus.UPLOADED
    scripts: List[Script] = Field(default_factory=list)
    renders: Dict[str, RenderResult] = Field(default_factory=dict)
    pending: Dict[str, PendingRender] = Field(default_factory=dict)
    failures: Dict[str, str] = Field(default_factory=dict)
    provider_state: ProviderState = Field(default_factory=ProviderState)
    display_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("displayName", "name"))
    contact_address: Optional[str] = Field(default=None, validation_alias=AliasChoices("contactAddress", "ownerEmail"))
    bio: Optional[str] = None
    photo_key: Optional[str] = None
    voice_key: Optional[str] = None
    system_prompt: Optional[str] = None
    notified_at: Optional[datetime] = None
    created_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("createdAt", "created"))
    updated_at: Optional[datetime] = None

    _legacy_keys: Set[str] = PrivateAttr(default_factory=set)

    @model_validator(mode="wrap")
    @classmethod
    def _remember_legacy_keys(cls, data: Any, handler: Any) -> "PersonaRecord":
        record = handler(data)
        if isinstance(data, dict):
            record._legacy_keys = {legacy for legacy, current in LEGACY_KEYS.items() if legacy in data and current not in data}
        return record

    @field_validator("created_at", "updated_at", "notified_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def script_keys(self) -> List[str]:
        return [script.key for script in self.scripts]

    def is_resolved(self, key: str) -> bool:
        return key in self.renders or key in self.pending or key in self.failures

    def unresolved_keys(self) -> List[str]:
        return [key for key in self.script_keys() if not self.is_resolved(key)]

    def is_complete(self) -> bool:
        keys = self.script_keys()
        if not keys:
            return False
        return all(key in self.renders and self.renders[key].url for key in keys)

    def to_payload(self) -> dict:
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        for legacy in self._legacy_keys:
            current = LEGACY_KEYS[legacy]
            if current in payload:
                payload[legacy] = payload.pop(current)
        return payload
