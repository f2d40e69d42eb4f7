"""SQLAlchemy repository over the event log.

Implements IEventLog from core/interfaces.py. This is the ingestion boundary:
check types are normalized to CheckType here and naive timestamps are read
as UTC, so the core never sees the legacy encodings.
"""

from datetime import datetime, timezone

from sqlalchemy import or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ibp_billing.adapters.orm import STATUS_DOWN, MemberEventRecord
from ibp_billing.core.models import CheckType, DowntimeEvent
from ibp_billing.errors import EventLogUnavailableError
from ibp_billing.observability import get_logger

logger = get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_downtime_event(record: MemberEventRecord) -> DowntimeEvent:
    """Normalize one member_events row.

    Raises:
        ValueError: If the row's check_type is not a known check type.
    """
    domain = record.domain_name.strip().lower() if record.domain_name else None
    return DowntimeEvent(
        check_type=CheckType.parse(record.check_type),
        start=_as_utc(record.start_time),
        end=_as_utc(record.end_time) if record.end_time is not None else None,
        domain=domain or None,
    )


class MemberEventRepository:
    """Read-only access to member_events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize with an async session factory."""
        self._session_factory = session_factory

    async def list_member_events(
        self,
        member_name: str,
        start: datetime,
        end: datetime,
    ) -> list[DowntimeEvent]:
        """List down events for a member overlapping [start, end).

        Args:
            member_name: Member's event-log name.
            start: Window start (inclusive).
            end: Window end (exclusive).

        Returns:
            Normalized events ordered by start time. Rows with an unknown
            check type are logged and skipped.

        Raises:
            EventLogUnavailableError: If the query fails.
        """
        query = (
            select(MemberEventRecord)
            .where(
                MemberEventRecord.member_name == member_name,
                MemberEventRecord.status == STATUS_DOWN,
                MemberEventRecord.start_time < end,
                or_(MemberEventRecord.end_time.is_(None), MemberEventRecord.end_time > start),
            )
            .order_by(MemberEventRecord.start_time)
        )

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                records = list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.error("event_log_query_failed", member_name=member_name, error=str(exc))
            raise EventLogUnavailableError(f"event log query failed for {member_name}") from exc

        events: list[DowntimeEvent] = []
        for record in records:
            try:
                events.append(to_downtime_event(record))
            except ValueError:
                logger.warning(
                    "event_log_unknown_check_type",
                    member_name=member_name,
                    event_id=record.id,
                    check_type=record.check_type,
                )
        return events

    async def ping(self) -> None:
        """Run a trivial query to prove the event log is reachable."""
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise EventLogUnavailableError("event log unreachable") from exc
