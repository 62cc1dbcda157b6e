"""Sync engine: full and delta synchronization between local records and one CRM.

Orchestrates one run for one object type against one CRMClient:

1. to_crm: local records are processed in batches. A record with no
   SyncState is created in the CRM. A record unchanged since
   ``last_synced_at`` costs zero provider calls. A changed record is checked
   against the CRM copy; if both sides changed, the conflict policy decides.
2. from_crm: provider pages are walked (filtered by ``since`` for delta
   runs). Each record resolves to its SyncState by CRM id; changed records
   are returned in ``pulled_records`` under the policy from the other side.
3. Every record's outcome is recorded exactly once per run (worst outcome
   wins across phases), so records_success / records_processed stays
   meaningful under partial failure.

Key behaviours:
- Every provider call goes through retry_with_backoff(options.retry).
- One record's failure never aborts its siblings; an AuthenticationError
  aborts the run, which still returns a SyncResult (aborted=True).
- Cancellation is cooperative: the event is checked between batches and pages.
- newest_wins ties go to the local side.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

import structlog

from src.crm_sync.crm.client import CRMClient
from src.crm_sync.crm.errors import AuthenticationError, CRMError, CRMRequestError
from src.crm_sync.crm.schemas import (
    ConflictResolution,
    CRMObjectType,
    CRMRecord,
    QueryOptions,
    SyncConflict,
    SyncDirection,
    SyncError,
    SyncOptions,
    SyncOutcome,
    SyncResult,
    SyncState,
)
from src.crm_sync.crm.utils import chunk, retry_with_backoff
from src.crm_sync.observability.metrics import (
    crm_sync_duration_seconds,
    crm_sync_records_total,
    crm_sync_runs_total,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_OUTCOME_RANK = {"success": 0, "skipped": 1, "failed": 2}


class ConflictWinner(str, Enum):
    LOCAL = "local"
    CRM = "crm"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def resolve_conflict(
    policy: ConflictResolution,
    local_updated_at: datetime | None,
    crm_updated_at: datetime | None,
) -> ConflictWinner | None:
    """Pick the winning side of a conflict, or None when a human must decide.

    Deterministic: under newest_wins equal timestamps (or both unknown)
    resolve to the local side.
    """
    if policy == ConflictResolution.ADSAPP_WINS:
        return ConflictWinner.LOCAL
    if policy == ConflictResolution.CRM_WINS:
        return ConflictWinner.CRM
    if policy == ConflictResolution.MANUAL:
        return None
    local_ts, crm_ts = _aware(local_updated_at), _aware(crm_updated_at)
    if crm_ts is None:
        return ConflictWinner.LOCAL
    if local_ts is None:
        return ConflictWinner.CRM
    return ConflictWinner.CRM if crm_ts > local_ts else ConflictWinner.LOCAL


class _RunAborted(Exception):
    """Internal signal: authentication failed, stop the run."""


class _Run:
    """Mutable bookkeeping for one sync run."""

    def __init__(self, local_records: Sequence[CRMRecord], sync_states: Sequence[SyncState]) -> None:
        self.local_by_id: dict[str, CRMRecord] = {r.id: r for r in local_records if r.id}
        self.states_by_local: dict[str, SyncState] = {s.local_id: s for s in sync_states}
        self.states_by_crm: dict[str, SyncState] = {s.crm_record_id: s for s in sync_states}
        self.outcomes: dict[str, str] = {}
        self.unmapped = 0
        self.errors: list[SyncError] = []
        self.conflicts: list[SyncConflict] = []
        self.conflicted: set[str] = set()
        self.pulled: list[CRMRecord] = []
        self.cancelled = False
        self.aborted = False

    def record(self, key: str, outcome: str) -> None:
        current = self.outcomes.get(key)
        if current is None or _OUTCOME_RANK[outcome] > _OUTCOME_RANK[current]:
            self.outcomes[key] = outcome

    def save_state(self, state: SyncState) -> None:
        previous = self.states_by_local.get(state.local_id)
        if previous is not None and previous.crm_record_id != state.crm_record_id:
            self.states_by_crm.pop(previous.crm_record_id, None)
        self.states_by_local[state.local_id] = state
        self.states_by_crm[state.crm_record_id] = state


class SyncEngine:
    """Runs sync passes for one CRM client.

    Args:
        client: Provider client (any CRMClient).
        batch_size: Records per batch/page; defaults to the client's
            provider-specific default.
        clock: Returns "now" as an aware datetime (injectable for tests).
        sleep: Awaitable sleep used between retries (injectable for tests).
    """

    def __init__(
        self,
        client: CRMClient,
        *,
        batch_size: int | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._batch_size = batch_size
        self._clock = clock or _utcnow
        self._sleep = sleep

    @property
    def provider(self) -> str:
        return self._client.provider.value

    async def delta_sync(
        self,
        since: datetime,
        local_records: Sequence[CRMRecord],
        sync_states: Sequence[SyncState],
        options: SyncOptions | None = None,
        *,
        related_states: Sequence[SyncState] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncOutcome:
        """Full sync restricted to records modified after ``since``."""
        options = (options or SyncOptions()).model_copy(update={"since": since})
        return await self.full_sync(
            local_records,
            sync_states,
            options,
            related_states=related_states,
            cancel_event=cancel_event,
        )

    async def full_sync(
        self,
        local_records: Sequence[CRMRecord],
        sync_states: Sequence[SyncState],
        options: SyncOptions | None = None,
        *,
        related_states: Sequence[SyncState] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncOutcome:
        """Run one sync pass.

        Args:
            local_records: Canonical local records of ``options.object_type``;
                each must carry its local ``id``.
            sync_states: Existing SyncState rows for this object type.
            options: Direction, conflict policy, batching, retry.
            related_states: For deals, the contact SyncStates used to
                translate ``contact_id`` between local and CRM ids.
            cancel_event: Set to stop the run between batches.

        Returns:
            SyncOutcome with the result, every SyncState to persist, and the
            records pulled from the CRM (``id`` set to the local id).
        """
        options = options or SyncOptions()
        started_at = self._clock()
        started = time.perf_counter()
        run = _Run(local_records, sync_states)
        contact_map = self._contact_id_maps(related_states)

        log = logger.bind(
            provider=self.provider,
            object_type=options.object_type.value,
            direction=options.direction.value,
            conflict_resolution=options.conflict_resolution.value,
        )
        log.info("sync.run_started", local_records=len(local_records), sync_states=len(sync_states), since=options.since)

        try:
            if options.direction.includes_to_crm:
                await self._push_phase(run, local_records, options, contact_map, cancel_event)
            if options.direction.includes_from_crm and not run.cancelled:
                await self._pull_phase(run, options, contact_map, cancel_event)
        except _RunAborted:
            run.aborted = True

        duration = time.perf_counter() - started
        result = self._build_result(run, started_at, duration)
        status = "aborted" if run.aborted else "cancelled" if run.cancelled else "completed"
        crm_sync_runs_total.labels(provider=self.provider, status=status).inc()
        crm_sync_duration_seconds.labels(provider=self.provider).observe(duration)
        log.info(
            "sync.run_finished",
            status=status,
            processed=result.records_processed,
            succeeded=result.records_success,
            failed=result.records_failed,
            skipped=result.records_skipped,
            unmapped=result.records_unmapped,
            conflicts=len(result.conflicts),
            duration_ms=result.duration_ms,
        )
        return SyncOutcome(
            result=result,
            sync_states=list(run.states_by_local.values()),
            pulled_records=run.pulled,
        )

    # ── to_crm ─────────────────────────────────────────────────────────────

    async def _push_phase(
        self,
        run: _Run,
        local_records: Sequence[CRMRecord],
        options: SyncOptions,
        contact_map: tuple[dict[str, str], dict[str, str]] | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        since = _aware(options.since)
        candidates = [
            r for r in local_records if since is None or r.updated_at is None or _aware(r.updated_at) > since
        ]
        for batch in chunk(candidates, self._effective_batch_size(options)):
            if cancel_event is not None and cancel_event.is_set():
                run.cancelled = True
                logger.info("sync.run_cancelled", provider=self.provider, phase="to_crm")
                return
            for record in batch:
                await self._push_record(run, record, options, contact_map)

    async def _push_record(
        self,
        run: _Run,
        record: CRMRecord,
        options: SyncOptions,
        contact_map: tuple[dict[str, str], dict[str, str]] | None,
    ) -> None:
        object_type = options.object_type
        direction = SyncDirection.TO_CRM
        if not record.id:
            self._fail(run, "missing-local-id", None, None, object_type, direction, ValueError("local record has no id"))
            return

        state = run.states_by_local.get(record.id)
        crm_id = state.crm_record_id if state else None
        try:
            outgoing = self._to_crm_ids(record, contact_map)
            if state is None:
                remote = await self._call(
                    "create", options, lambda: self._client.create_record(object_type, outgoing)
                )
                self._after_push(run, record, remote, object_type)
                logger.info("sync.record_created", provider=self.provider, local_id=record.id, crm_id=remote.crm_id)
                self._succeed(run, record.id, object_type, direction, "created")
                return

            local_updated = _aware(record.updated_at)
            last_synced = _aware(state.last_synced_at)
            local_changed = options.force or (local_updated is not None and local_updated > last_synced)
            if not local_changed:
                self._succeed(run, record.id, object_type, direction, "unchanged")
                return

            current = await self._call(
                "get", options, lambda: self._client.get_record(object_type, state.crm_record_id)
            )
            crm_updated = _aware(current.updated_at) or _aware(state.crm_updated_at)
            crm_changed = crm_updated is not None and crm_updated > last_synced
            if crm_changed:
                winner = resolve_conflict(options.conflict_resolution, local_updated, crm_updated)
                logger.info(
                    "sync.conflict_detected",
                    provider=self.provider,
                    local_id=record.id,
                    crm_id=state.crm_record_id,
                    winner=winner.value if winner else None,
                )
                if winner is None:
                    self._report_conflict(run, state, object_type, direction, local_updated, crm_updated)
                    return
                if winner == ConflictWinner.CRM:
                    if not options.direction.includes_from_crm:
                        self._succeed(run, record.id, object_type, direction, "crm_won")
                    # In bidirectional runs the pull phase applies the CRM copy.
                    return

            remote = await self._call(
                "update",
                options,
                lambda: self._client.update_record(object_type, state.crm_record_id, outgoing),
            )
            self._after_push(run, record, remote, object_type)
            logger.info("sync.record_pushed", provider=self.provider, local_id=record.id, crm_id=state.crm_record_id)
            self._succeed(run, record.id, object_type, direction, "updated")
        except AuthenticationError as exc:
            self._fail(run, record.id, record.id, crm_id, object_type, direction, exc)
            raise _RunAborted from exc
        except Exception as exc:
            self._fail(run, record.id, record.id, crm_id, object_type, direction, exc)

    def _after_push(self, run: _Run, record: CRMRecord, remote: CRMRecord, object_type: CRMObjectType) -> None:
        if not remote.crm_id:
            raise CRMError(f"{self.provider} returned a record without an id", provider=self.provider)
        now = self._clock()
        remote_updated = _aware(remote.updated_at)
        run.save_state(
            SyncState(
                local_id=record.id,
                crm_record_id=remote.crm_id,
                object_type=object_type,
                last_synced_at=max(now, remote_updated) if remote_updated else now,
                local_updated_at=record.updated_at,
                crm_updated_at=remote_updated,
                sync_direction=SyncDirection.TO_CRM,
            )
        )

    # ── from_crm ───────────────────────────────────────────────────────────

    async def _pull_phase(
        self,
        run: _Run,
        options: SyncOptions,
        contact_map: tuple[dict[str, str], dict[str, str]] | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        object_type = options.object_type
        cursor: str | None = None
        while True:
            if cancel_event is not None and cancel_event.is_set():
                run.cancelled = True
                logger.info("sync.run_cancelled", provider=self.provider, phase="from_crm")
                return
            query = QueryOptions(
                limit=self._effective_batch_size(options),
                cursor=cursor,
                modified_since=options.since,
            )
            try:
                page = await self._call(
                    "list", options, lambda: self._client.list_records(object_type, query)
                )
            except AuthenticationError as exc:
                self._fail(run, "list", None, None, object_type, SyncDirection.FROM_CRM, exc)
                raise _RunAborted from exc
            except Exception as exc:
                # A page that cannot be read ends the phase; remaining pages are unreachable.
                self._fail(run, f"list:{cursor or 0}", None, None, object_type, SyncDirection.FROM_CRM, exc)
                return

            for remote in page.records:
                self._pull_record(run, remote, options, contact_map)

            if not page.next_cursor or page.next_cursor == cursor:
                return
            cursor = page.next_cursor

    def _pull_record(
        self,
        run: _Run,
        remote: CRMRecord,
        options: SyncOptions,
        contact_map: tuple[dict[str, str], dict[str, str]] | None,
    ) -> None:
        object_type = options.object_type
        direction = SyncDirection.FROM_CRM
        crm_id = remote.crm_id
        if not crm_id:
            self._fail(run, "missing-crm-id", None, None, object_type, direction, ValueError("CRM record has no id"))
            return
        if crm_id in run.conflicted:
            return

        try:
            state = run.states_by_crm.get(crm_id)
            remote_updated = _aware(remote.updated_at)
            if state is None:
                if not options.adopt_unmapped:
                    run.unmapped += 1
                    crm_sync_records_total.labels(
                        provider=self.provider, object_type=object_type.value, direction=direction.value, outcome="unmapped"
                    ).inc()
                    logger.debug("sync.record_unmapped", provider=self.provider, crm_id=crm_id)
                    return
                local_id = str(uuid.uuid4())
                self._apply_pull(run, remote, local_id, object_type, contact_map)
                logger.info("sync.record_adopted", provider=self.provider, crm_id=crm_id, local_id=local_id)
                self._succeed(run, local_id, object_type, direction, "adopted")
                return

            last_synced = _aware(state.last_synced_at)
            remote_changed = options.force or remote_updated is None or remote_updated > last_synced
            if not remote_changed:
                self._succeed(run, state.local_id, object_type, direction, "unchanged")
                return

            local = run.local_by_id.get(state.local_id)
            local_updated = _aware(local.updated_at) if local else None
            local_changed = local_updated is not None and local_updated > last_synced
            if local_changed:
                winner = resolve_conflict(options.conflict_resolution, local_updated, remote_updated)
                logger.info(
                    "sync.conflict_detected",
                    provider=self.provider,
                    local_id=state.local_id,
                    crm_id=crm_id,
                    winner=winner.value if winner else None,
                )
                if winner is None:
                    self._report_conflict(run, state, object_type, direction, local_updated, remote_updated)
                    return
                if winner == ConflictWinner.LOCAL:
                    self._succeed(run, state.local_id, object_type, direction, "local_won")
                    return

            self._apply_pull(run, remote, state.local_id, object_type, contact_map)
            logger.info("sync.record_pulled", provider=self.provider, local_id=state.local_id, crm_id=crm_id)
            self._succeed(run, state.local_id, object_type, direction, "pulled")
        except Exception as exc:
            key = state.local_id if state else crm_id
            self._fail(run, key, state.local_id if state else None, crm_id, object_type, direction, exc)

    def _apply_pull(
        self,
        run: _Run,
        remote: CRMRecord,
        local_id: str,
        object_type: CRMObjectType,
        contact_map: tuple[dict[str, str], dict[str, str]] | None,
    ) -> None:
        incoming = self._to_local_ids(remote.model_copy(update={"id": local_id}), contact_map)
        run.pulled.append(incoming)
        now = self._clock()
        remote_updated = _aware(remote.updated_at)
        run.save_state(
            SyncState(
                local_id=local_id,
                crm_record_id=remote.crm_id,
                object_type=object_type,
                last_synced_at=max(now, remote_updated) if remote_updated else now,
                local_updated_at=now,
                crm_updated_at=remote_updated,
                sync_direction=SyncDirection.FROM_CRM,
            )
        )

    # ── Shared helpers ─────────────────────────────────────────────────────

    async def _call(self, name: str, options: SyncOptions, operation: Callable[[], Awaitable[T]]) -> T:
        return await retry_with_backoff(
            operation,
            options.retry,
            sleep=self._sleep,
            operation_name=f"{self.provider}.{name}",
        )

    def _effective_batch_size(self, options: SyncOptions) -> int:
        return options.batch_size or self._batch_size or self._client.default_batch_size

    @staticmethod
    def _contact_id_maps(
        related_states: Sequence[SyncState] | None,
    ) -> tuple[dict[str, str], dict[str, str]] | None:
        if related_states is None:
            return None
        local_to_crm = {s.local_id: s.crm_record_id for s in related_states}
        crm_to_local = {s.crm_record_id: s.local_id for s in related_states}
        return local_to_crm, crm_to_local

    @staticmethod
    def _to_crm_ids(record: CRMRecord, contact_map: tuple[dict[str, str], dict[str, str]] | None) -> CRMRecord:
        contact_id = getattr(record, "contact_id", None)
        if contact_map is None or contact_id is None:
            return record
        return record.model_copy(update={"contact_id": contact_map[0].get(contact_id)})

    @staticmethod
    def _to_local_ids(record: CRMRecord, contact_map: tuple[dict[str, str], dict[str, str]] | None) -> CRMRecord:
        contact_id = getattr(record, "contact_id", None)
        if contact_map is None or contact_id is None:
            return record
        return record.model_copy(update={"contact_id": contact_map[1].get(contact_id)})

    def _succeed(
        self, run: _Run, key: str, object_type: CRMObjectType, direction: SyncDirection, outcome: str
    ) -> None:
        run.record(key, "success")
        crm_sync_records_total.labels(
            provider=self.provider, object_type=object_type.value, direction=direction.value, outcome=outcome
        ).inc()

    def _report_conflict(
        self,
        run: _Run,
        state: SyncState,
        object_type: CRMObjectType,
        direction: SyncDirection,
        local_updated: datetime | None,
        crm_updated: datetime | None,
    ) -> None:
        run.record(state.local_id, "skipped")
        run.conflicted.add(state.crm_record_id)
        run.conflicts.append(
            SyncConflict(
                local_id=state.local_id,
                crm_record_id=state.crm_record_id,
                object_type=object_type,
                direction=direction,
                local_updated_at=local_updated,
                crm_updated_at=crm_updated,
            )
        )
        crm_sync_records_total.labels(
            provider=self.provider, object_type=object_type.value, direction=direction.value, outcome="conflict"
        ).inc()

    def _fail(
        self,
        run: _Run,
        key: str,
        local_id: str | None,
        crm_id: str | None,
        object_type: CRMObjectType,
        direction: SyncDirection,
        exc: BaseException,
    ) -> None:
        run.record(key, "failed")
        status_code = exc.status_code if isinstance(exc, CRMRequestError) else None
        run.errors.append(
            SyncError(
                local_id=local_id,
                crm_record_id=crm_id,
                object_type=object_type,
                direction=direction,
                message=str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
                status_code=status_code,
                occurred_at=self._clock(),
            )
        )
        crm_sync_records_total.labels(
            provider=self.provider, object_type=object_type.value, direction=direction.value, outcome="failed"
        ).inc()
        logger.warning(
            "sync.record_failed",
            provider=self.provider,
            local_id=local_id,
            crm_id=crm_id,
            direction=direction.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    def _build_result(self, run: _Run, started_at: datetime, duration: float) -> SyncResult:
        counts: dict[str, int] = {"success": 0, "failed": 0, "skipped": 0}
        for outcome in run.outcomes.values():
            counts[outcome] += 1
        return SyncResult(
            success=counts["failed"] == 0 and not run.aborted,
            records_processed=len(run.outcomes),
            records_success=counts["success"],
            records_failed=counts["failed"],
            records_skipped=counts["skipped"],
            records_unmapped=run.unmapped,
            errors=tuple(run.errors),
            conflicts=tuple(run.conflicts),
            duration_ms=int(duration * 1000),
            cancelled=run.cancelled,
            aborted=run.aborted,
            started_at=started_at,
            completed_at=self._clock(),
        )


def summarize(result: SyncResult) -> dict[str, Any]:
    """Flat dict of the headline counters, for logs and CLI output."""
    return {
        "success": result.success,
        "processed": result.records_processed,
        "succeeded": result.records_success,
        "failed": result.records_failed,
        "skipped": result.records_skipped,
        "unmapped": result.records_unmapped,
        "conflicts": len(result.conflicts),
        "cancelled": result.cancelled,
        "aborted": result.aborted,
    }
