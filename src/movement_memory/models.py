"""Typed records for logged sets, movement memories and suggestions.

Pydantic models are the storage and wire contract: SetRecord is what the
persistence layer hands to recompute, MovementMemory is what gets written
back (as sorted-key JSON), NextTimeSuggestion is derived on read and never
stored.
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

EFFORT_MIN = 1.0
EFFORT_MAX = 10.0


class WorkoutContext(str, Enum):
    BUILDING = "building"
    MAINTAINING = "maintaining"
    DELOADING = "deloading"
    TESTING = "testing"
    UNSTRUCTURED = "unstructured"


class Trend(str, Enum):
    PROGRESSING = "progressing"
    STAGNANT = "stagnant"
    REGRESSING = "regressing"


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    ConfidenceLevel.LOW: 0,
    ConfidenceLevel.MEDIUM: 1,
    ConfidenceLevel.HIGH: 2,
}


class ProgressionKind(str, Enum):
    WEIGHT_INCREASE = "weight_increase"
    REP_INCREASE = "rep_increase"
    VOLUME_INCREASE = "volume_increase"
    E1RM_INCREASE = "e1rm_increase"
    EFFORT_DECREASE = "effort_decrease"
    MATCHED = "matched"
    REGRESSED = "regressed"


class AlertType(str, Enum):
    MISSED_SESSION = "missed_session"
    REGRESSION = "regression"
    PLATEAU = "plateau"


def _as_optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class SetRecord(BaseModel):
    """One logged set as read from the persistence collaborator.

    Numeric fields are lenient: anything unparseable becomes None rather
    than failing validation, so one bad row never aborts a recompute.
    """

    model_config = ConfigDict(frozen=True)

    exercise_id: str
    timestamp: datetime
    weight: float | None = None
    reps: int | None = None
    effort: float | None = None
    is_warmup: bool = False
    set_order: int = 0
    session_id: str | None = None
    context: WorkoutContext | None = None
    set_id: str | None = None

    @field_validator("weight", mode="before")
    @classmethod
    def _lenient_weight(cls, v: Any) -> float | None:
        return _as_optional_float(v)

    @field_validator("reps", mode="before")
    @classmethod
    def _lenient_reps(cls, v: Any) -> int | None:
        parsed = _as_optional_float(v)
        if parsed is None:
            return None
        return int(parsed)

    @field_validator("effort", mode="before")
    @classmethod
    def _clamp_effort(cls, v: Any) -> float | None:
        parsed = _as_optional_float(v)
        if parsed is None:
            return None
        return min(max(parsed, EFFORT_MIN), EFFORT_MAX)

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("set_order", mode="before")
    @classmethod
    def _default_set_order(cls, v: Any) -> int:
        parsed = _as_optional_float(v)
        return int(parsed) if parsed is not None else 0

    @field_validator("context", mode="before")
    @classmethod
    def _lenient_context(cls, v: Any) -> Any:
        if isinstance(v, str):
            normalized = v.strip().lower()
            if normalized in {c.value for c in WorkoutContext}:
                return normalized
            return None
        return v

    @field_validator("session_id", "set_id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @property
    def session_key(self) -> str:
        """Explicit session id, else the UTC calendar day of the set."""
        if self.session_id:
            return self.session_id
        return self.timestamp.date().isoformat()

    @property
    def is_qualifying(self) -> bool:
        """Non-warmup set with at least one of weight or reps."""
        return not self.is_warmup and (self.weight is not None or self.reps is not None)

    @property
    def volume(self) -> float:
        return (self.weight or 0.0) * (self.reps or 0)


class RepRange(BaseModel):
    min: int
    max: int


class LifetimeTotals(BaseModel):
    """Whole-history aggregates computed by the datastore.

    The set history handed to a recompute is bounded, so these cover what
    it cannot: every qualifying session ever logged for the exercise.
    """

    model_config = ConfigDict(frozen=True)

    exposure_count: int = 0
    total_volume: float = 0.0
    first_logged: datetime | None = None

    @field_validator("first_logged")
    @classmethod
    def _utc_first_logged(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None


class LastPerformance(BaseModel):
    weight: float | None = None
    reps: int | None = None
    effort: float | None = None
    set_count: int = 0
    date: datetime | None = None
    context: WorkoutContext | None = None
    total_volume: float = 0.0


class WeightRecord(BaseModel):
    value: float
    reps: int | None = None
    date: datetime


class RepsRecord(BaseModel):
    value: int
    weight: float | None = None
    date: datetime


class ValueRecord(BaseModel):
    value: float
    date: datetime


class PersonalRecords(BaseModel):
    best_weight: WeightRecord | None = None
    best_reps: RepsRecord | None = None
    best_e1rm: ValueRecord | None = None
    best_volume: ValueRecord | None = None


class ClassificationRecord(BaseModel):
    """Stored trace of one comparator outcome between two sessions."""

    kind: ProgressionKind
    message: str
    delta: float | None = None
    weight: float | None = None
    reps: int | None = None
    date: datetime


class MovementMemory(BaseModel):
    user_id: str
    exercise_id: str
    as_of: date
    last_performance: LastPerformance | None = None
    exposure_count: int = 0
    first_logged: datetime | None = None
    total_lifetime_volume: float = 0.0
    average_effort: float | None = None
    typical_rep_range: RepRange | None = None
    personal_records: PersonalRecords = Field(default_factory=PersonalRecords)
    trend: Trend | None = None
    confidence_level: ConfidenceLevel = ConfidenceLevel.LOW
    days_since_last: int | None = None
    last_classification: ClassificationRecord | None = None
    recent_classifications: list[ClassificationRecord] = Field(default_factory=list)

    def to_json(self) -> str:
        """Deterministic serialisation used for storage and idempotence checks."""
        return json.dumps(
            self.model_dump(mode="json"),
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str | bytes | dict[str, Any]) -> "MovementMemory":
        if isinstance(raw, dict):
            return cls.model_validate(raw)
        return cls.model_validate_json(raw)


class Recommendation(BaseModel):
    weight: float | None = None
    reps: int | None = None
    target_effort: float


class Alert(BaseModel):
    type: AlertType
    message: str
    suggested_action: str


class NextTimeSuggestion(BaseModel):
    exercise_id: str
    last_performance: LastPerformance
    recommendation: Recommendation
    confidence_level: ConfidenceLevel
    trend: Trend | None = None
    reasoning: str
    exposure_count: int
    best_e1rm: float | None = None
    alerts: list[Alert] = Field(default_factory=list)
    consider_variation: bool = False
