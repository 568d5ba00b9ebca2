"""Reconcile locally unsynced workout records with the remote service.

A sync pass runs three sequential phases, each reading its working set
fresh when it starts:

1. sessions: one ``PUT /sessions/{id}`` per unsynced session
2. sets: one ``POST /sessions/{id}/sets`` batch per session
3. queue: one call per queued create/update/delete, oldest first

Failures are per item; the pass keeps going and the record stays dirty
for the next pass. Only one pass runs at a time and overlapping triggers
are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from client import RemoteClient, RemoteError
from db import (
    LocalStore,
    SessionExerciseRepository,
    SessionRepository,
    SetRecordRepository,
    SyncQueueRepository,
)
from events import EventChannel, Unsubscribe
from models import MAX_RETRIES, SetRecord
from network_service import ConnectivityMonitor

logger = logging.getLogger(__name__)

AUTO_SYNC_INTERVAL = 30.0


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass(frozen=True)
class SyncProgress:
    current: int
    total: int


@dataclass(frozen=True)
class SyncStatusEvent:
    status: SyncStatus
    progress: Optional[SyncProgress] = None


@dataclass
class SyncStats:
    unsynced_sessions: int = 0
    unsynced_sets: int = 0
    queued_operations: int = 0
    stale_operations: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "unsynced_sessions": self.unsynced_sessions,
            "unsynced_sets": self.unsynced_sets,
            "queued_operations": self.queued_operations,
            "stale_operations": self.stale_operations,
        }


class SyncOrchestrator:
    """Run serialized sync passes on connectivity and timer triggers."""

    def __init__(
        self,
        store: LocalStore,
        client: RemoteClient,
        monitor: ConnectivityMonitor,
        interval: float = AUTO_SYNC_INTERVAL,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.client = client
        self.monitor = monitor
        self.interval = interval
        self.max_retries = max_retries
        self.sessions = SessionRepository(store)
        self.exercises = SessionExerciseRepository(store)
        self.sets = SetRecordRepository(store)
        self.queue = SyncQueueRepository(store, max_retries)
        self._status = SyncStatus.IDLE
        self._is_syncing = False
        self._listeners: EventChannel[SyncStatusEvent] = EventChannel("sync status")
        self._timer_task: Optional[asyncio.Task] = None
        self._triggered: Set[asyncio.Task] = set()
        self._unsubscribe_network: Optional[Unsubscribe] = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def add_listener(self, callback: Callable[[SyncStatusEvent], None]) -> Unsubscribe:
        return self._listeners.subscribe(callback)

    def _notify(self, status: SyncStatus, progress: Optional[SyncProgress] = None) -> None:
        self._status = status
        self._listeners.publish(SyncStatusEvent(status, progress))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to connectivity changes and start the periodic timer."""
        if self._timer_task is not None:
            return
        self._unsubscribe_network = self.monitor.add_listener(self._on_connectivity_change)
        self._timer_task = asyncio.get_running_loop().create_task(self._auto_sync_loop())
        logger.info("Auto sync started (interval=%.0fs)", self.interval)

    async def stop(self) -> None:
        """Stop triggering passes and wait for an in-flight pass to drain."""
        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        task, self._timer_task = self._timer_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._triggered:
            await asyncio.gather(*self._triggered, return_exceptions=True)

    def close(self) -> None:
        self._listeners.clear()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Network restored - starting sync")
            self._trigger()

    def _trigger(self) -> None:
        task = asyncio.get_running_loop().create_task(self.sync())
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)

    async def _auto_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self.monitor.is_online and not self._is_syncing:
                self._trigger()

    # ------------------------------------------------------------------
    # Sync pass
    # ------------------------------------------------------------------

    async def sync(self) -> bool:
        """Run one pass. Returns False if skipped or if the pass failed."""
        if self._is_syncing or not self.monitor.is_online:
            return False
        self._is_syncing = True
        self._notify(SyncStatus.SYNCING)
        try:
            logger.info("Starting sync pass")
            await self._sync_sessions()
            await self._sync_sets()
            await self._process_queue()
            logger.info("Sync pass completed")
            self._notify(SyncStatus.IDLE)
            return True
        except Exception:
            logger.exception("Sync pass failed")
            self._notify(SyncStatus.ERROR)
            return False
        finally:
            self._is_syncing = False

    async def force_sync(self) -> bool:
        return await self.sync()

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(func, *args)

    async def _sync_sessions(self) -> None:
        sessions = await self.sessions.list_unsynced()
        if not sessions:
            logger.debug("No sessions to sync")
            return
        logger.info("Syncing %d sessions", len(sessions))
        total = len(sessions)
        for current, session in enumerate(sessions, start=1):
            try:
                await self._call(self.client.upsert_session, session.id, session.to_remote())
            except RemoteError as e:
                logger.warning("Failed to sync session %s: %s", session.id, e)
            else:
                if not await self.sessions.mark_synced(session):
                    logger.info(
                        "Session %s changed during upload, left for next pass",
                        session.id,
                    )
            self._notify(SyncStatus.SYNCING, SyncProgress(current, total))

    async def _sync_sets(self) -> None:
        records = await self.sets.list_unsynced()
        if not records:
            logger.debug("No sets to sync")
            return
        logger.info("Syncing %d sets", len(records))
        by_session: Dict[str, List[SetRecord]] = {}
        for record in records:
            by_session.setdefault(record.session_id, []).append(record)

        total = len(records)
        processed = 0
        for session_id, batch in by_session.items():
            try:
                await self._call(
                    self.client.create_sets,
                    session_id,
                    [r.to_remote() for r in batch],
                )
                uploaded = True
            except RemoteError as e:
                logger.warning("Failed to sync sets for session %s: %s", session_id, e)
                uploaded = False
            for record in batch:
                if uploaded and not await self.sets.mark_one_synced(record.id):
                    logger.info("Set %s deleted during upload, queueing delete", record.id)
                    await self.queue.enqueue("delete", "set", record.id)
                processed += 1
                self._notify(SyncStatus.SYNCING, SyncProgress(processed, total))

    async def _process_queue(self) -> None:
        items = await self.queue.list_pending()
        if not items:
            logger.debug("Sync queue empty")
            return
        logger.info("Processing %d queued operations", len(items))
        total = len(items)
        for current, item in enumerate(items, start=1):
            if item.is_stale(self.max_retries):
                logger.warning(
                    "Max retries exceeded for %s on %s %s",
                    item.operation_type,
                    item.entity_type,
                    item.entity_id,
                )
                continue
            try:
                await self._call(
                    self.client.dispatch,
                    item.operation_type,
                    item.entity_type,
                    item.entity_id,
                    item.payload,
                )
            except (RemoteError, ValueError) as e:
                failed = await self.queue.record_failure(item, str(e))
                logger.error(
                    "Failed to process sync queue item %s (attempt %d): %s",
                    item.id,
                    failed.attempts,
                    e,
                )
            else:
                await self.queue.remove(item.id)
                if item.entity_type == "exercise" and item.operation_type != "delete":
                    await self._mark_exercise_synced(item.entity_id, item.payload)
            self._notify(SyncStatus.SYNCING, SyncProgress(current, total))

    async def _mark_exercise_synced(
        self, exercise_id: str, uploaded: Optional[Dict[str, Any]]
    ) -> None:
        pending = [
            i
            for i in await self.queue.list_pending()
            if i.entity_type == "exercise" and i.entity_id == exercise_id
        ]
        if pending or await self.exercises.mark_synced(exercise_id, uploaded):
            return
        current = await self.exercises.get(exercise_id)
        if current is not None:
            logger.info("Exercise %s changed during upload, queueing update", exercise_id)
            await self.queue.enqueue("update", "exercise", exercise_id, current.to_remote())

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def get_sync_stats(self) -> SyncStats:
        sessions = await self.sessions.list_unsynced()
        sets = await self.sets.list_unsynced()
        queue = await self.queue.list_pending()
        return SyncStats(
            unsynced_sessions=len(sessions),
            unsynced_sets=len(sets),
            queued_operations=len(queue),
            stale_operations=len([i for i in queue if i.is_stale(self.max_retries)]),
        )

    async def has_pending_sync(self) -> bool:
        stats = await self.get_sync_stats()
        return bool(stats.unsynced_sessions or stats.unsynced_sets or stats.queued_operations)
