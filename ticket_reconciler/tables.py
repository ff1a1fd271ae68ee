"""
SQLAlchemy ORM tables for the canonical store.

Timestamps are stored as naive UTC; the store converts them back to aware
datetimes before they leave the persistence layer.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class CanonicalRequestRow(Base):
    """One reconciled request per (external_id, source)."""

    __tablename__ = "canonical_requests"
    __table_args__ = (
        UniqueConstraint("external_id", "source", name="uq_canonical_request_source"),
        Index("idx_canonical_requests_source_status", "source", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="Untitled")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[str] = mapped_column(String(32), nullable=False, default="Medium")
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    requester_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    requester_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    assignee: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    group_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    support_level: Mapped[str] = mapped_column(String(2), nullable=False)
    team: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    linkage_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class MovementRow(Base):
    """Append-only log of upward level transitions."""

    __tablename__ = "movements"
    __table_args__ = (
        Index("idx_movements_request_levels", "request_id", "from_level", "to_level"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_requests.id"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    from_level: Mapped[str] = mapped_column(String(2), nullable=False)
    to_level: Mapped[str] = mapped_column(String(2), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    changed_by: Mapped[str] = mapped_column(String(128), nullable=False, default="System Sync")
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class EscalationRow(Base):
    """Validated escalation ledger, unique on its natural key."""

    __tablename__ = "escalations"
    __table_args__ = (
        UniqueConstraint(
            "request_id", "from_level", "to_level", "occurred_at",
            name="uq_escalation_natural_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("canonical_requests.id"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    from_level: Mapped[str] = mapped_column(String(2), nullable=False)
    to_level: Mapped[str] = mapped_column(String(2), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    escalated_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    team: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class OrphanIncidentRow(Base):
    """Engineering-tier incident awaiting a tracker link."""

    __tablename__ = "orphan_incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    linkage_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    description: Mapped[str] = mapped_column(String(2000), nullable=False, default="")
    desk_status: Mapped[str] = mapped_column(String(64), nullable=False)
    tracker_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    priority: Mapped[str] = mapped_column(String(32), nullable=False, default="Medium")
    team: Mapped[str] = mapped_column(String(255), nullable=False, default="Unknown")
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reassigned_to_level: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    reassigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class SprintBoardTicketRow(Base):
    """Tracker item on a team's active sprint, replaced wholesale per refresh."""

    __tablename__ = "sprint_board_tickets"
    __table_args__ = (
        Index("idx_sprint_board_team", "team"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team: Mapped[str] = mapped_column(String(255), nullable=False)
    tracker_key: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    board_type: Mapped[str] = mapped_column(String(32), nullable=False, default="unassigned")
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
