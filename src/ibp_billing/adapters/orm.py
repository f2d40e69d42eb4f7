"""SQLAlchemy ORM mapping of the event log's member_events table.

The table is written by the monitoring pipeline; this service only reads it.

Columns of interest:
  member_name  : member's event-log name (MemberConfig.name)
  check_type   : "site" | "domain" | "endpoint", or legacy "1" | "2" | "3"
  domain_name  : checked domain for domain/endpoint checks
  start_time   : outage start (UTC)
  end_time     : outage end, NULL while ongoing
  status       : 0 for down events
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Value of member_events.status for a down (failed check) event
STATUS_DOWN = 0


class Base(DeclarativeBase):
    """Declarative base for event-log tables."""


class MemberEventRecord(Base):
    """One check failure recorded against a member.

    Table: member_events
    """

    __tablename__ = "member_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    member_name: Mapped[str] = mapped_column(String(255), nullable=False)
    check_type: Mapped[str] = mapped_column(String(32), nullable=False)
    check_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    domain_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[int] = mapped_column(Integer, nullable=False, default=STATUS_DOWN)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_ipv6: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_member_events_member_window", "member_name", "start_time", "end_time"),
    )
