"""Record types persisted by the offline store."""

from __future__ import annotations

import datetime
import uuid
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

MAX_RETRIES = 3


def utc_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class RecordKind(str, Enum):
    SESSIONS = "sessions"
    EXERCISES = "exercises"
    SETS = "sets"
    SYNC_QUEUE = "sync_queue"


SessionStatus = Literal["active", "paused", "completed", "abandoned"]
OperationType = Literal["create", "update", "delete"]
EntityType = Literal["session", "exercise", "set"]


class Session(BaseModel):
    id: str = Field(default_factory=lambda: new_id("session"))
    athlete_id: str
    workout_plan_id: str
    assignment_id: Optional[str] = None
    workout_name: Optional[str] = None
    status: SessionStatus = "active"
    started_at: str = Field(default_factory=utc_now)
    paused_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_duration_seconds: int = 0
    current_exercise_index: int = 0
    notes: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    synced: bool = False

    def to_remote(self) -> Dict[str, Any]:
        """Body of the ``PUT /sessions/{id}`` upsert."""
        return {
            "id": self.id,
            "athlete_id": self.athlete_id,
            "workout_plan_id": self.workout_plan_id,
            "assignment_id": self.assignment_id,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "notes": self.notes,
        }


class SessionExercise(BaseModel):
    id: str = Field(default_factory=lambda: new_id("exercise"))
    session_id: str
    exercise_id: str
    exercise_name: str
    order_index: int = 0
    target_sets: int = 0
    target_reps: int = 0
    target_weight: float = 0.0
    weight_type: Literal["absolute", "percentage"] = "absolute"
    rest_time: int = 0
    notes: Optional[str] = None
    is_completed: bool = False
    sets_completed: int = 0
    created_at: str = Field(default_factory=utc_now)
    synced: bool = False

    def to_remote(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"synced", "created_at"})


class SetRecord(BaseModel):
    id: str = Field(default_factory=lambda: new_id("set"))
    session_id: str
    session_exercise_id: str
    set_number: int
    reps_completed: int
    weight_used: Optional[float] = None
    rpe: Optional[float] = None
    notes: Optional[str] = None
    completed_at: str = Field(default_factory=utc_now)
    created_at: str = Field(default_factory=utc_now)
    synced: bool = False

    def to_remote(self) -> Dict[str, Any]:
        """One entry of the ``POST /sessions/{id}/sets`` batch."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "session_exercise_id": self.session_exercise_id,
            "set_number": self.set_number,
            "weight": self.weight_used,
            "reps": self.reps_completed,
            "rpe": self.rpe,
            "notes": self.notes,
            "completed_at": self.completed_at,
        }


class QueueItem(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sync"))
    operation_type: OperationType
    entity_type: EntityType
    entity_id: str
    payload: Optional[Dict[str, Any]] = None
    created_at: str = Field(default_factory=utc_now)
    attempts: int = 0
    last_attempt: Optional[str] = None
    error: Optional[str] = None

    def is_stale(self, max_retries: int = MAX_RETRIES) -> bool:
        return self.attempts >= max_retries


RECORD_TYPES = {
    RecordKind.SESSIONS: Session,
    RecordKind.EXERCISES: SessionExercise,
    RecordKind.SETS: SetRecord,
    RecordKind.SYNC_QUEUE: QueueItem,
}


def kind_of(record: BaseModel) -> RecordKind:
    for kind, model in RECORD_TYPES.items():
        if isinstance(record, model):
            return kind
    raise ValueError(f"unsupported record type: {type(record).__name__}")
