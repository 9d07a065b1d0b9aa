from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ScheduleMode(str, Enum):
    QUICK = "quick"
    SWEEP = "sweep"


class PersonaOutcome(str, Enum):
    ADVANCED = "advanced"
    UNCHANGED = "unchanged"
    WAITING = "waiting"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    SKIPPED = "skipped"
    ERROR = "error"


class PersonaResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str
    persona_id: Optional[str] = None
    status: Optional[str] = None
    outcome: PersonaOutcome
    reason: Optional[str] = None
    notified: bool = False


class ProcessSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status_counts: Dict[str, int] = Field(default_factory=dict)
    videos_completed: int = 0
    videos_failed: int = 0
    videos_pending: int = 0
    skipped: int = 0
    budget_exhausted: bool = False
    not_visited: int = 0


class ProcessResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    mode: ScheduleMode
    processed: int
    elapsed: int = Field(..., description="Wall-clock milliseconds spent in the invocation")
    summary: ProcessSummary
    results: List[PersonaResult] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str = "ok"
    providers: Dict[str, bool] = Field(default_factory=dict)
