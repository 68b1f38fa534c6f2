"""
SYNC COORDINATOR

Connectivity-aware driver that reconciles the local store with the remote
backend.

Implements:
1. State machine: idle -> syncing -> {success, error} -> idle
2. Push: drain the sync queue FIFO in batches, one backend call per item
3. Pull: once a run delivered changes, fetch remote tables and merge them
4. Conflict handling under a pluggable strategy (see conflict_resolver)
5. Timers: periodic auto-sync while online, debounced sync after coming
   online, one-shot retry after a failed run
6. Persisted configuration (app_config collection)

A run is never queued or coalesced: sync() while a run is in flight returns
a rejection immediately. Going offline stops the periodic timer but never
cancels an in-flight run.

Usage:
    coordinator = SyncCoordinator(store, queue, backend, config)
    await coordinator.start(online=True)
    report = await coordinator.sync()
    await coordinator.stop()
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
import asyncio
import logging

from pydantic import ValidationError as PydanticValidationError

from .clock import parse_timestamp
from .conflict_resolver import (
    ConflictResolver, ConflictStore, Resolved, PendingManualResolution,
    is_remote_newer
)
from .errors import CommissionError, ConflictError, SyncTransportError, ValidationError
from .id_mapping import IdMapper
from .local_store import LocalStore, APP_CONFIG, SYNCED_TABLES
from .models import SyncQueueItem
from .remote_backend import RemoteBackend
from .settings import SyncConfig
from .state_machine import build_sync_state_machine
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

SYNC_CONFIG_KEY = "sync_config"


class SyncStatus:
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class SyncReport:
    """Outcome of one sync() / force_full_sync() call"""
    status: str
    reason: Optional[str] = None
    pushed: int = 0
    rejected: int = 0
    deferred: int = 0
    conflicts: int = 0
    pulled: int = 0
    merged: int = 0
    purged: int = 0
    pull_errors: List[str] = field(default_factory=list)
    merge_errors: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status != "rejected"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncCoordinator:

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        backend: RemoteBackend,
        config: Optional[SyncConfig] = None,
        conflicts: Optional[ConflictStore] = None,
        id_mapper: Optional[IdMapper] = None
    ):
        self.store = store
        self.queue = queue
        self.backend = backend
        self.config = config or SyncConfig()
        self.conflicts = conflicts or ConflictStore(store)
        self.id_mapper = id_mapper or IdMapper(store)
        self.resolver = ConflictResolver(self.config.conflict_strategy)
        self.machine = build_sync_state_machine()

        self.state = SyncStatus.IDLE
        self.is_online = False
        self.last_sync_at: Optional[datetime] = None
        self.last_pull_at: Optional[datetime] = None
        self.last_outcome: Optional[str] = None
        self.last_error: Optional[str] = None
        self.consecutive_failures = 0
        self.persistent_error: Optional[str] = None

        self._auto_sync_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._auto_run_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, online: bool = False) -> None:
        """Load persisted configuration and apply the initial connectivity"""
        await self.load_config()
        if online:
            self.handle_online()
        logger.info(f"[SYNC] Coordinator started (online={online}, auto_sync={self.config.auto_sync})")

    async def stop(self) -> None:
        """Cancel every timer; a run already in flight is awaited, never cancelled"""
        timer = self._auto_sync_task
        self.stop_auto_sync()
        if timer is not None:
            await asyncio.gather(timer, return_exceptions=True)
        while True:
            tasks = [
                t for t in (self._debounce_task, self._retry_task, self._auto_run_task)
                if t is not None and not t.done()
            ]
            self._debounce_task = self._retry_task = self._auto_run_task = None
            if not tasks:
                break
            for task in tasks:
                if task is not self._run_task:
                    task.cancel()
            # A finishing run may schedule a retry; the next pass cancels it
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[SYNC] Coordinator stopped")

    async def wait_for_background(self) -> None:
        """Await pending debounce, retry and timer runs, including retries they schedule"""
        while True:
            pending = [
                t for t in (self._debounce_task, self._retry_task, self._auto_run_task)
                if t is not None and not t.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # CONNECTIVITY
    # =========================================================================

    def set_online(self, online: bool) -> None:
        if online:
            self.handle_online()
        else:
            self.handle_offline()

    def handle_online(self) -> None:
        """Connectivity regained: debounced sync, then periodic timer"""
        logger.info("[SYNC] Device online")
        self.is_online = True
        if self.config.auto_sync:
            if self._debounce_task is None or self._debounce_task.done():
                self._debounce_task = asyncio.create_task(
                    self._delayed_sync(self.config.debounce_seconds, "debounce")
                )
        self.start_auto_sync()

    def handle_offline(self) -> None:
        logger.info("[SYNC] Device offline")
        self.is_online = False
        self.stop_auto_sync()

    # =========================================================================
    # TIMERS
    # =========================================================================

    def start_auto_sync(self) -> None:
        self.stop_auto_sync()
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())

    def stop_auto_sync(self) -> None:
        if self._auto_sync_task is not None:
            self._auto_sync_task.cancel()
            self._auto_sync_task = None

    async def _auto_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sync_interval_seconds)
            if not (self.is_online and self.config.auto_sync) or self.state == SyncStatus.SYNCING:
                continue
            try:
                pending = await self.queue.count_pending()
            except CommissionError as e:
                logger.error(f"[SYNC] Auto-sync could not read the queue: {e.message}")
                continue
            if pending > 0:
                # Detached so stopping the timer never cancels the run
                self._auto_run_task = asyncio.create_task(self._delayed_sync(0, "auto"))

    async def _delayed_sync(self, delay: float, kind: str) -> None:
        await asyncio.sleep(delay)
        if kind == "retry":
            # Let the run below schedule the next retry
            self._retry_task = None
        report = await self.sync()
        logger.info(f"[SYNC] {kind} run finished: {report.status}")

    def _schedule_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        logger.info(
            f"[SYNC] Retrying in {self.config.retry_delay_seconds}s "
            f"({self.consecutive_failures}/{self.config.max_retries})"
        )
        self._retry_task = asyncio.create_task(
            self._delayed_sync(self.config.retry_delay_seconds, "retry")
        )

    # =========================================================================
    # SYNC RUNS
    # =========================================================================

    def _rejection(self) -> Optional[SyncReport]:
        if self.state == SyncStatus.SYNCING:
            logger.info("[SYNC] Sync already in progress, request rejected")
            return SyncReport(status="rejected", reason="in_progress")
        if not self.is_online:
            logger.info("[SYNC] Device offline, sync request rejected")
            return SyncReport(status="rejected", reason="offline")
        return None

    async def sync(self) -> SyncReport:
        """
        One push/pull cycle.

        Returns a rejected report without side effects while another run is
        in flight or while offline.
        """
        rejected = self._rejection()
        if rejected:
            return rejected

        # No await between the check above and this transition
        self.state = self.machine.transition(self.state, SyncStatus.SYNCING)
        self._run_task = asyncio.current_task()
        report = SyncReport(status=SyncStatus.SUCCESS)
        try:
            await self._push(report, limit=self.config.batch_size, stop_on_failure=True)
            if report.pushed:
                await self._pull(report, since=self.last_pull_at)
            report.purged = await self.queue.purge_processed_older_than(
                timedelta(days=self.config.retention_days)
            )
        except CommissionError as e:
            self._finish_error(report, e.message)
        except Exception as e:
            logger.exception(f"[SYNC] Unexpected failure: {e}")
            self._finish_error(report, str(e))
        else:
            self._finish_success(report)
        finally:
            self._release_run()
        return report

    async def force_full_sync(self) -> SyncReport:
        """
        Push everything pending, then pull every table from scratch
        regardless of push results.
        """
        rejected = self._rejection()
        if rejected:
            return rejected

        self.state = self.machine.transition(self.state, SyncStatus.SYNCING)
        self._run_task = asyncio.current_task()
        report = SyncReport(status=SyncStatus.SUCCESS)
        push_error = None
        try:
            try:
                await self._push(report, limit=0, stop_on_failure=False)
            except CommissionError as e:
                push_error = e.message
            await self._pull(report, since=None)
            report.purged = await self.queue.purge_processed_older_than(
                timedelta(days=self.config.retention_days)
            )
        except CommissionError as e:
            self._finish_error(report, e.message)
        except Exception as e:
            logger.exception(f"[SYNC] Unexpected failure: {e}")
            self._finish_error(report, str(e))
        else:
            if push_error or report.pull_errors:
                self._finish_error(report, push_error or f"Pull failed for {', '.join(report.pull_errors)}")
            else:
                self._finish_success(report)
        finally:
            self._release_run()
        return report

    def _release_run(self) -> None:
        self._run_task = None
        if self.state == SyncStatus.SYNCING:
            # Cancelled mid-run: no outcome is recorded and nothing is counted
            logger.warning("[SYNC] Run interrupted before completion")
            self.state = SyncStatus.IDLE

    def _finish_success(self, report: SyncReport) -> None:
        self.state = self.machine.transition(self.state, SyncStatus.SUCCESS)
        self.last_outcome = SyncStatus.SUCCESS
        self.last_sync_at = self.store.clock.now()
        self.last_error = None
        self.consecutive_failures = 0
        self.persistent_error = None
        self.state = self.machine.transition(self.state, SyncStatus.IDLE)
        logger.info(
            f"[SYNC] Completed: {report.pushed} pushed, {report.rejected} rejected, "
            f"{report.conflicts} conflicts, {report.merged} merged"
        )

    def _finish_error(self, report: SyncReport, message: str) -> None:
        self.state = self.machine.transition(self.state, SyncStatus.ERROR)
        report.status = SyncStatus.ERROR
        report.error = message
        self.last_outcome = SyncStatus.ERROR
        self.last_error = message
        self.consecutive_failures += 1
        self.state = self.machine.transition(self.state, SyncStatus.IDLE)

        if self.consecutive_failures < self.config.max_retries:
            logger.error(f"[SYNC] Run failed: {message}")
            self._schedule_retry()
        else:
            self.persistent_error = message
            logger.error(
                f"[SYNC] Run failed {self.consecutive_failures} times in a row, giving up until next trigger: {message}"
            )

    # =========================================================================
    # PUSH
    # =========================================================================

    async def _outgoing(self, item: SyncQueueItem) -> SyncQueueItem:
        """Queue item addressed with the remote id when the backend assigned one"""
        remote_id = await self.id_mapper.remote_id(item.table, item.record_id)
        if remote_id == item.record_id:
            return item
        payload = dict(item.payload)
        if "id" in payload:
            payload["id"] = remote_id
        return item.model_copy(update={"record_id": remote_id, "payload": payload})

    async def _push(self, report: SyncReport, limit: int, stop_on_failure: bool) -> List[SyncQueueItem]:
        """
        Deliver pending items oldest first.

        A rejected ack counts an attempt and moves on. A transport failure
        counts an attempt and aborts the run when stop_on_failure is set.
        """
        items = await self.queue.drain_pending(limit)
        if not items:
            logger.debug("[SYNC] No pending changes")
            return items

        logger.info(f"[SYNC] Pushing {len(items)} pending changes")
        first_failure: Optional[str] = None

        for item in items:
            if await self.conflicts.has_pending_for_item(item.id):
                report.deferred += 1
                continue
            try:
                delivered = await self._push_item(item, report)
            except Exception as e:
                message = e.message if isinstance(e, CommissionError) else str(e)
                await self.queue.increment_attempts(item.id, message)
                logger.error(f"[SYNC] {item.action} {item.table}:{item.record_id} failed: {message}")
                if stop_on_failure:
                    raise SyncTransportError(message, getattr(e, "status_code", None))
                first_failure = first_failure or message
                continue
            if delivered:
                report.pushed += 1

        if first_failure:
            raise SyncTransportError(first_failure)
        return items

    async def _push_item(self, item: SyncQueueItem, report: SyncReport) -> bool:
        outgoing = await self._outgoing(item)

        if item.action == "UPDATE" and not await self.conflicts.resolved_locally(item.id):
            remote = await self.backend.fetch(item.table, outgoing.record_id)
            if remote is not None and is_remote_newer(item.payload, remote):
                report.conflicts += 1
                logger.warning(f"[CONFLICT] Remote copy of {item.table}:{item.record_id} is newer than the queued change")
                outcome = self.resolver.resolve(item.payload, remote)
                if isinstance(outcome, PendingManualResolution):
                    await self.conflicts.save(
                        item.table, item.record_id, item.payload, remote,
                        self.resolver.strategy, sync_item_id=item.id
                    )
                    report.deferred += 1
                    return False
                if outcome.winner == "remote":
                    await self._apply_remote(item.table, remote)
                    await self.queue.mark_processed(item.id)
                    return False

        ack = await self.backend.push(outgoing)
        if not ack.accepted:
            attempts = await self.queue.increment_attempts(item.id, ack.error)
            report.rejected += 1
            if attempts == self.config.max_retries:
                logger.warning(
                    f"[SYNC] {item.action} {item.table}:{item.record_id} rejected {attempts} times, "
                    f"listed in status until it is fixed or resolved: {ack.error}"
                )
            return False

        await self.queue.mark_processed(item.id)
        if ack.remote_id:
            await self.id_mapper.record(item.table, item.record_id, ack.remote_id)
        logger.debug(f"[SYNC] {item.action} {item.table}:{item.record_id} delivered")
        return True

    # =========================================================================
    # PULL & MERGE
    # =========================================================================

    async def _pull(self, report: SyncReport, since: Optional[datetime]) -> None:
        started_at = self.store.clock.now()
        for table in SYNCED_TABLES:
            try:
                rows = await self.backend.pull(table, since=since)
            except CommissionError as e:
                logger.error(f"[SYNC] Pull of {table} failed: {e.message}")
                report.pull_errors.append(table)
                continue

            report.pulled += len(rows)
            for remote in rows:
                try:
                    await self._merge(table, remote, report)
                except CommissionError as e:
                    # The row stays unmerged; the rest of the pull goes on
                    logger.error(f"[SYNC] Could not merge {table}:{remote.get('id')}: {e.message}")
                    report.merge_errors.append(f"{table}:{remote.get('id')}")

        if not report.pull_errors and not report.merge_errors:
            self.last_pull_at = started_at

    @staticmethod
    def _normalize_remote(record: Dict[str, Any]) -> Dict[str, Any]:
        normalized = dict(record)
        for key in ("created_at", "updated_at"):
            if normalized.get(key):
                normalized[key] = parse_timestamp(normalized[key])
        return normalized

    async def _apply_remote(self, table: str, remote: Dict[str, Any]) -> None:
        """Make the remote version the local one, keeping its timestamps"""
        record = self._normalize_remote(await self.id_mapper.to_local(table, remote))
        if await self.store.get(table, record["id"]) is None:
            await self.store.add(table, record, keep_timestamps=True)
        else:
            await self.store.update(table, record, touch=False)

    async def _merge(self, table: str, remote: Dict[str, Any], report: SyncReport) -> None:
        record = self._normalize_remote(await self.id_mapper.to_local(table, remote))
        record_id = record.get("id")
        if not record_id:
            logger.warning(f"[SYNC] Ignoring pulled {table} row without id")
            return

        local = await self.store.get(table, record_id)
        if local is None:
            if await self.queue.has_pending_delete(table, record_id):
                logger.info(f"[SYNC] Skipping {table}:{record_id}, deleted locally")
                return
            await self.store.add(table, record, keep_timestamps=True)
            report.merged += 1
            return

        if not is_remote_newer(local, record):
            return

        report.conflicts += 1
        outcome = self.resolver.resolve(local, record)
        if isinstance(outcome, PendingManualResolution):
            await self.conflicts.save(table, record_id, local, record, self.resolver.strategy)
            return
        if isinstance(outcome, Resolved) and outcome.winner == "remote":
            await self.store.update(table, record, touch=False)
            report.merged += 1

    # =========================================================================
    # MANUAL CONFLICTS
    # =========================================================================

    async def list_conflicts(self) -> List[Dict[str, Any]]:
        return [c.model_dump() for c in await self.conflicts.list_pending()]

    async def resolve_conflict(self, conflict_id: str, choice: str) -> Dict[str, Any]:
        """
        Apply an explicit decision on a pending conflict.

        choice="remote": the remote version replaces the local record and the
        queued local change (if any) is dropped.
        choice="local": the local version is kept and (re)queued for push.
        """
        if choice not in ("local", "remote"):
            raise ValidationError(f"Invalid conflict choice '{choice}'. Expected 'local' or 'remote'")

        conflict = await self.conflicts.require(conflict_id)
        if conflict.status != "pending":
            raise ConflictError(
                conflict.table, conflict.record_id,
                f"Conflict {conflict_id} is already resolved with the {conflict.resolution} version"
            )

        if choice == "remote":
            await self._apply_remote(conflict.table, conflict.remote_data)
            if conflict.sync_item_id:
                await self.queue.mark_processed(conflict.sync_item_id)
        elif not conflict.sync_item_id:
            local = await self.store.get(conflict.table, conflict.record_id)
            if local is not None:
                await self.store.update(conflict.table, local)
                local = await self.store.get(conflict.table, conflict.record_id)
                await self.queue.enqueue("UPDATE", conflict.table, conflict.record_id, local)

        await self.conflicts.mark_resolved(conflict_id, choice)
        logger.info(f"[CONFLICT] Conflict {conflict_id} resolved with {choice} version")
        return {
            "conflict_id": conflict_id,
            "table": conflict.table,
            "record_id": conflict.record_id,
            "resolution": choice,
            "record": await self.store.get(conflict.table, conflict.record_id),
        }

    # =========================================================================
    # STATUS & CONFIG
    # =========================================================================

    async def get_status(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "state": self.state,
            "is_syncing": self.state == SyncStatus.SYNCING,
            "last_outcome": self.last_outcome,
            "last_sync_at": self.last_sync_at,
            "last_error": self.last_error,
            "retry_count": self.consecutive_failures,
            "persistent_error": self.persistent_error,
            "pending_count": await self.queue.count_pending(),
            "exhausted_items": [
                {
                    "id": item.id,
                    "table": item.table,
                    "record_id": item.record_id,
                    "attempts": item.attempts,
                    "last_error": item.last_error,
                }
                for item in await self.queue.list_exhausted(self.config.max_retries)
            ],
            "config": self.config.model_dump(),
        }

    async def load_config(self) -> SyncConfig:
        """Overlay the persisted configuration on the current one"""
        saved = await self.store.get(APP_CONFIG, SYNC_CONFIG_KEY)
        if saved:
            values = self.config.model_dump()
            values.update({k: v for k, v in (saved.get("value") or {}).items() if k in values})
            self._set_config(values)
        return self.config

    def _set_config(self, values: Dict[str, Any]) -> None:
        try:
            config = SyncConfig(**values)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid sync configuration: {e.errors()[0].get('msg')}")
        self.config = config
        self.resolver.set_strategy(config.conflict_strategy)

    async def update_config(self, **changes) -> SyncConfig:
        """
        Change sync settings, persist them and restart/stop the periodic timer.
        """
        values = self.config.model_dump()
        unknown = set(changes) - set(values)
        if unknown:
            raise ValidationError(f"Unknown sync settings: {', '.join(sorted(unknown))}")
        values.update(changes)
        self._set_config(values)

        doc = {"id": SYNC_CONFIG_KEY, "value": self.config.model_dump()}
        if await self.store.get(APP_CONFIG, SYNC_CONFIG_KEY) is None:
            await self.store.add(APP_CONFIG, doc)
        else:
            await self.store.update(APP_CONFIG, doc)

        if self.config.auto_sync and self.is_online:
            self.start_auto_sync()
        else:
            self.stop_auto_sync()

        logger.info(f"[SYNC] Configuration updated: {changes}")
        return self.config
