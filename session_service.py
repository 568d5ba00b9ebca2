import datetime
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from db import (
    LocalStore,
    SessionExerciseRepository,
    SessionRepository,
    SetRecordRepository,
    SyncQueueRepository,
)
from models import Session, SessionExercise, SetRecord, utc_now

logger = logging.getLogger(__name__)


class WorkoutSessionService:
    """Workout session mutations made by the athlete, written to the offline store.

    Every change leaves the touched record unsynced so the next sync pass
    uploads it, including records that were synced before.
    """

    def __init__(
        self,
        store: LocalStore,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.sessions = SessionRepository(store)
        self.exercises = SessionExerciseRepository(store)
        self.sets = SetRecordRepository(store)
        self.queue = SyncQueueRepository(store)
        self.on_change = on_change

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    @staticmethod
    def _duration_seconds(session: Session, end: str) -> int:
        start = datetime.datetime.fromisoformat(session.started_at)
        finish = datetime.datetime.fromisoformat(end)
        return max(0, int((finish - start).total_seconds()))

    async def start_session(
        self,
        athlete_id: str,
        workout_plan_id: str,
        exercises: Iterable[Dict[str, Any]],
        assignment_id: Optional[str] = None,
        workout_name: Optional[str] = None,
    ) -> Session:
        """Create a session and its exercises from the assigned plan."""
        session = await self.sessions.save(
            Session(
                athlete_id=athlete_id,
                workout_plan_id=workout_plan_id,
                assignment_id=assignment_id,
                workout_name=workout_name,
            )
        )
        planned: List[SessionExercise] = []
        for index, item in enumerate(exercises):
            data = dict(item)
            data.setdefault("order_index", index)
            planned.append(SessionExercise(session_id=session.id, **data))
        await self.exercises.save_many(planned)
        logger.info(
            "Started session %s with %d exercises", session.id, len(planned)
        )
        self._changed()
        return session

    async def pause_session(self, session_id: str) -> Session:
        session = await self.sessions.require(session_id)
        if session.status != "active":
            raise ValueError("session not active")
        session = await self.sessions.save(
            session.model_copy(update={"status": "paused", "paused_at": utc_now()})
        )
        self._changed()
        return session

    async def resume_session(self, session_id: str) -> Session:
        session = await self.sessions.require(session_id)
        if session.status != "paused":
            raise ValueError("session not paused")
        session = await self.sessions.save(
            session.model_copy(update={"status": "active", "paused_at": None})
        )
        self._changed()
        return session

    async def complete_session(self, session_id: str) -> Session:
        session = await self.sessions.require(session_id)
        if session.status not in ("active", "paused"):
            raise ValueError("session already finished")
        completed_at = utc_now()
        session = await self.sessions.save(
            session.model_copy(
                update={
                    "status": "completed",
                    "completed_at": completed_at,
                    "paused_at": None,
                    "total_duration_seconds": self._duration_seconds(session, completed_at),
                }
            )
        )
        logger.info("Completed session %s", session.id)
        self._changed()
        return session

    async def abandon_session(self, session_id: str) -> Session:
        session = await self.sessions.require(session_id)
        if session.status not in ("active", "paused"):
            raise ValueError("session already finished")
        session = await self.sessions.save(
            session.model_copy(update={"status": "abandoned", "paused_at": None})
        )
        logger.info("Abandoned session %s", session.id)
        self._changed()
        return session

    async def update_exercise_index(self, session_id: str, index: int) -> Session:
        session = await self.sessions.require(session_id)
        exercises = await self.exercises.list_for_session(session_id)
        if not 0 <= index < max(len(exercises), 1):
            raise ValueError("invalid exercise index")
        session = await self.sessions.save(
            session.model_copy(update={"current_exercise_index": index})
        )
        self._changed()
        return session

    async def set_notes(self, session_id: str, notes: Optional[str]) -> Session:
        session = await self.sessions.require(session_id)
        session = await self.sessions.save(session.model_copy(update={"notes": notes}))
        self._changed()
        return session

    async def record_set(
        self,
        session_id: str,
        session_exercise_id: str,
        reps: int,
        weight: Optional[float] = None,
        rpe: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> SetRecord:
        """Store a finished set and bump the exercise's completed count."""
        await self.sessions.require(session_id)
        exercise = await self.exercises.get(session_exercise_id)
        if exercise is None or exercise.session_id != session_id:
            raise ValueError("exercise not found")
        record = await self.sets.add(
            SetRecord(
                session_id=session_id,
                session_exercise_id=session_exercise_id,
                set_number=exercise.sets_completed + 1,
                reps_completed=reps,
                weight_used=weight,
                rpe=rpe,
                notes=notes,
            )
        )
        await self.exercises.save(
            exercise.model_copy(update={"sets_completed": exercise.sets_completed + 1})
        )
        self._changed()
        return record

    async def delete_set(self, set_id: str) -> None:
        """Remove a set locally; a set the server already has is queued for deletion.

        An unsynced set whose batch is in flight is removed here and the
        sync pass queues its delete once the upload lands.
        """
        record = await self.sets.get(set_id)
        if record is None:
            raise ValueError("set not found")
        if not await self.sets.delete_unsynced(set_id):
            await self.sets.delete(set_id)
            await self.queue.enqueue("delete", "set", set_id)
        exercise = await self.exercises.get(record.session_exercise_id)
        if exercise is not None and exercise.sets_completed > 0:
            await self.exercises.save(
                exercise.model_copy(
                    update={"sets_completed": exercise.sets_completed - 1}
                )
            )
        self._changed()

    async def complete_exercise(self, session_exercise_id: str) -> SessionExercise:
        exercise = await self.exercises.get(session_exercise_id)
        if exercise is None:
            raise ValueError("exercise not found")
        exercise = await self.exercises.save(
            exercise.model_copy(update={"is_completed": True})
        )
        await self.queue.enqueue(
            "update", "exercise", exercise.id, exercise.to_remote()
        )
        self._changed()
        return exercise
