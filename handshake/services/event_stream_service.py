"""Stage 5: bounded, resumable server-sent event stream and its acknowledgment."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from handshake.config import get_settings
from handshake.core.replay_buffer import ReplayBuffer
from handshake.db.session import session_scope
from handshake.errors import AckMissing, AckOutOfRange, StreamStalled
from handshake.models.applicant import ApplicantStage
from handshake.models.stream_cursor import StreamCursor
from handshake.repositories import StreamCursorRepository
from handshake.services.orchestrator import StageOrchestrator, get_orchestrator

logger = structlog.get_logger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"


def parse_last_event_id(value: str | None) -> int:
    """Interpret a `Last-Event-ID` header; anything unusable means "from the start"."""
    if value is None:
        return 0
    try:
        parsed = int(value.strip())
    except ValueError:
        return 0
    return max(parsed, 0)


def resume_point(last_acked: int, last_event_id: int, emitted: int) -> int:
    """First id to send on a (re)connect."""
    return max(last_acked, min(last_event_id, emitted)) + 1


@dataclass(frozen=True)
class StreamPlan:
    """Everything a connection needs to emit its share of the feed."""

    applicant_id: UUID
    generation: int
    resume_from: int
    emitted: int


@dataclass(frozen=True)
class AckOutcome:
    last_event_id: int
    stage: ApplicantStage
    links: list[dict[str, str]]


class EventStreamService:
    """Emit the fixed event budget at a steady rate across reconnects.

    Progress is written before each batch is sent, so the stored high-water
    mark never trails what a client may have received; `Last-Event-ID` then
    selects the exact ids still owed.
    """

    def __init__(
        self,
        orchestrator: StageOrchestrator,
        replay_buffer: ReplayBuffer,
        event_budget: int = 1000,
        events_per_second: float = 200.0,
        batch_size: int = 50,
        reconnect_budget_ms: int = 500,
        stall_grace_seconds: float = 30.0,
        ack_grace_seconds: float = 30.0,
        keepalive_seconds: float = 5.0,
        cursors: StreamCursorRepository | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._orchestrator = orchestrator
        self._buffer = replay_buffer
        self._budget = event_budget
        self._batch_size = batch_size
        self._batch_interval = batch_size / events_per_second
        self._reconnect_budget = timedelta(milliseconds=reconnect_budget_ms)
        self._stall_grace = timedelta(seconds=stall_grace_seconds)
        self._ack_grace = timedelta(seconds=ack_grace_seconds)
        self._keepalive_seconds = keepalive_seconds
        self._cursors = cursors or StreamCursorRepository()
        self._session_factory = session_factory
        self._sleep = sleep
        self._monotonic = monotonic
        self._closers: set[asyncio.Task[None]] = set()

    @property
    def event_budget(self) -> int:
        return self._budget

    async def open_stream(
        self,
        db_session: AsyncSession,
        registration_key: str | None,
        last_event_id: str | None,
    ) -> StreamPlan:
        """Validate a (re)connect and start a new connection generation."""
        applicant = await self._orchestrator.authenticate(db_session, registration_key)
        applicant = await self._orchestrator.require_stage(
            db_session, applicant, ApplicantStage.STREAMING
        )
        now = self._orchestrator.now()

        try:
            cursor = await self._cursors.get_or_create(db_session, applicant.id)
            if self._ack_overdue(cursor, now):
                await self._fail(db_session, applicant.id, "ack_missing")
                raise AckMissing("Event stream was not acknowledged in time.")
            if self._reconnect_too_late(cursor, now, self._reconnect_budget):
                await self._fail(db_session, applicant.id, "stream_stalled")
                raise StreamStalled(
                    "Reconnected after the reconnection budget with events still owed."
                )
            generation = await self._cursors.open_connection(db_session, applicant.id, now)
        except (AckMissing, StreamStalled):
            await db_session.commit()
            raise
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()

        plan = StreamPlan(
            applicant_id=applicant.id,
            generation=generation,
            resume_from=resume_point(
                cursor.last_acked_seq, parse_last_event_id(last_event_id), cursor.emitted_seq
            ),
            emitted=cursor.emitted_seq,
        )
        logger.info(
            "event_stream_opened",
            applicant_id=str(applicant.id),
            generation=generation,
            resume_from=plan.resume_from,
        )
        return plan

    async def stream(self, plan: StreamPlan) -> AsyncIterator[str]:
        """Yield SSE frames from the resume point through the final ack request."""
        seq = plan.resume_from
        deadline = self._monotonic()
        try:
            yield f"retry: {int(self._reconnect_budget.total_seconds() * 1000) // 5}\n\n"
            while seq <= self._budget:
                end = min(seq + self._batch_size - 1, self._budget)
                if not await self._record_progress(plan, end + 1):
                    logger.info(
                        "event_stream_superseded",
                        applicant_id=str(plan.applicant_id),
                        generation=plan.generation,
                    )
                    return
                for event_id in range(seq, end + 1):
                    yield self._buffer.frame(plan.applicant_id, event_id)
                seq = end + 1
                deadline += self._batch_interval
                await self._sleep(max(0.0, deadline - self._monotonic()))

            yield self._ack_required_frame()
            async for frame in self._await_ack(plan):
                yield frame
        finally:
            self._schedule_close(plan)

    async def acknowledge(
        self,
        db_session: AsyncSession,
        registration_key: str | None,
        last_event_id: int,
    ) -> AckOutcome:
        """Record an acknowledgment; acknowledging the final id completes the stage."""
        applicant = await self._orchestrator.authenticate(db_session, registration_key)
        applicant = await self._orchestrator.require_stage(
            db_session, applicant, ApplicantStage.STREAMING
        )
        now = self._orchestrator.now()

        try:
            cursor = await self._cursors.get(db_session, applicant.id)
            if cursor is None or last_event_id > cursor.emitted_seq:
                raise AckOutOfRange(
                    "Cannot acknowledge events that were never emitted.",
                    extra={"emitted": cursor.emitted_seq if cursor is not None else 0},
                )
            if self._ack_overdue(cursor, now):
                await self._fail(db_session, applicant.id, "ack_missing")
                raise AckMissing("Event stream was not acknowledged in time.")
            if not await self._cursors.acknowledge(db_session, applicant.id, last_event_id, now):
                raise AckOutOfRange(
                    "Event id was already acknowledged.",
                    extra={"lastAcked": cursor.last_acked_seq},
                )
            stage = ApplicantStage.STREAMING
            if last_event_id == self._budget:
                await self._orchestrator.advance_on_success(
                    db_session, applicant.id, ApplicantStage.STREAMING
                )
                stage = ApplicantStage.TOKEN_PENDING
        except AckMissing:
            await db_session.commit()
            raise
        except Exception:
            await db_session.rollback()
            raise
        await db_session.commit()
        logger.info(
            "event_stream_acknowledged",
            applicant_id=str(applicant.id),
            last_event_id=last_event_id,
        )
        return AckOutcome(
            last_event_id=last_event_id,
            stage=stage,
            links=self._orchestrator.next_links(stage),
        )

    async def fail_stalled(self, db_session: AsyncSession, now: datetime) -> list[UUID]:
        """Fail streaming applicants that stopped reconnecting or never acknowledged."""
        failed: list[UUID] = []
        for cursor in await self._cursors.list_streaming(db_session):
            reason: str | None = None
            if self._ack_overdue(cursor, now):
                reason = "ack_missing"
            elif self._reconnect_too_late(
                cursor, now, self._reconnect_budget + self._stall_grace
            ):
                reason = "stream_stalled"
            if reason is not None and await self._fail(db_session, cursor.applicant_id, reason):
                failed.append(cursor.applicant_id)
        return failed

    async def aclose(self) -> None:
        """Wait for pending connection bookkeeping."""
        if self._closers:
            await asyncio.gather(*self._closers, return_exceptions=True)

    def _ack_overdue(self, cursor: StreamCursor, now: datetime) -> bool:
        return (
            cursor.budget_emitted_at is not None
            and cursor.last_acked_seq < self._budget
            and now - cursor.budget_emitted_at > self._ack_grace
        )

    def _reconnect_too_late(
        self, cursor: StreamCursor, now: datetime, allowance: timedelta
    ) -> bool:
        return (
            cursor.generation > 0
            and cursor.emitted_seq < self._budget
            and cursor.last_seen_at is not None
            and now - cursor.last_seen_at > allowance
        )

    async def _fail(self, db_session: AsyncSession, applicant_id: UUID, reason: str) -> bool:
        failed = await self._orchestrator.fail(
            db_session, applicant_id, ApplicantStage.STREAMING, reason
        )
        if failed:
            self._buffer.discard(applicant_id)
        return failed

    async def _record_progress(self, plan: StreamPlan, next_seq: int) -> bool:
        """Persist the high-water mark; False once a newer connection took over."""
        async with session_scope(self._session_factory) as db_session:
            cursor = await self._cursors.get(db_session, plan.applicant_id)
            if cursor is None or cursor.generation != plan.generation:
                return False
            await self._cursors.record_progress(
                db_session,
                plan.applicant_id,
                next_seq=next_seq,
                now=self._orchestrator.now(),
                budget_reached=next_seq > self._budget,
            )
            await db_session.commit()
        return True

    async def _await_ack(self, plan: StreamPlan) -> AsyncIterator[str]:
        """Hold the connection with keep-alives until acknowledged or the grace ends."""
        remaining = self._ack_grace.total_seconds()
        while remaining > 0:
            pause = min(self._keepalive_seconds, remaining)
            await self._sleep(pause)
            remaining -= pause
            async with session_scope(self._session_factory) as db_session:
                cursor = await self._cursors.get(db_session, plan.applicant_id)
            if (
                cursor is None
                or cursor.generation != plan.generation
                or cursor.last_acked_seq >= self._budget
            ):
                return
            yield KEEPALIVE_FRAME

    def _ack_required_frame(self) -> str:
        data = json.dumps(
            {"lastEventId": self._budget, "ack": {"href": "/ack", "method": "POST"}},
            separators=(",", ":"),
        )
        return f"event: ack-required\ndata: {data}\n\n"

    def _schedule_close(self, plan: StreamPlan) -> None:
        # The generator may be closing under cancellation; run the write as its own task.
        task = asyncio.get_running_loop().create_task(self._close(plan))
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    async def _close(self, plan: StreamPlan) -> None:
        try:
            async with session_scope(self._session_factory) as db_session:
                closed = await self._cursors.close_connection(
                    db_session, plan.applicant_id, plan.generation, self._orchestrator.now()
                )
                await db_session.commit()
        except Exception as exc:
            logger.error(
                "event_stream_close_failed",
                applicant_id=str(plan.applicant_id),
                generation=plan.generation,
                error=str(exc),
            )
            return
        logger.info(
            "event_stream_closed",
            applicant_id=str(plan.applicant_id),
            generation=plan.generation,
            superseded=not closed,
        )


@lru_cache
def get_event_stream_service() -> EventStreamService:
    """Create and cache the event stream service from settings."""
    settings = get_settings().stream
    return EventStreamService(
        orchestrator=get_orchestrator(),
        replay_buffer=ReplayBuffer(
            maxsize=settings.replay_buffer_size,
            ttl_seconds=settings.replay_buffer_ttl_seconds,
        ),
        event_budget=settings.event_budget,
        events_per_second=settings.events_per_second,
        batch_size=settings.batch_size,
        reconnect_budget_ms=settings.reconnect_budget_ms,
        stall_grace_seconds=settings.stall_grace_seconds,
        ack_grace_seconds=settings.ack_grace_seconds,
        keepalive_seconds=settings.keepalive_seconds,
    )
