"""
Canonical store for the Ticket Reconciler.

Wraps a SQLAlchemy engine and hands out pydantic projections only, so no
component above this module ever touches an ORM row. Every public method is
its own transaction. A request upsert also writes the movement its level
change produces, and the sprint board refresh replaces a team's board as a
single unit.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel
from sqlalchemy import and_, create_engine, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .models import (
    CanonicalRequest,
    Escalation,
    EscalationCandidate,
    Movement,
    OrphanIncident,
    Source,
    SprintBoardTicket,
    SupportLevel,
    ensure_utc,
)
from .tables import (
    Base,
    CanonicalRequestRow,
    EscalationRow,
    MovementRow,
    OrphanIncidentRow,
    SprintBoardTicketRow,
)


logger = logging.getLogger(__name__)


MergeFn = Callable[[Optional[CanonicalRequest], CanonicalRequest], CanonicalRequest]
TransitionFn = Callable[[Optional[CanonicalRequest], CanonicalRequest], Optional[Movement]]

# Movements on the same key closer together than this are one movement
MOVEMENT_DEDUP_WINDOW = timedelta(seconds=2)


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to the naive UTC form the tables store."""
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_db_time(value)
    return value


def _row_values(model: BaseModel, exclude: set[str]) -> dict[str, Any]:
    return {
        name: _column_value(getattr(model, name))
        for name in type(model).model_fields
        if name not in exclude
    }


def _request(row: CanonicalRequestRow) -> CanonicalRequest:
    return CanonicalRequest.model_validate(row, from_attributes=True)


def _movement(row: MovementRow) -> Movement:
    return Movement.model_validate(row, from_attributes=True)


def _escalation(row: EscalationRow) -> Escalation:
    return Escalation.model_validate(row, from_attributes=True)


def _orphan(row: OrphanIncidentRow) -> OrphanIncident:
    return OrphanIncident.model_validate(row, from_attributes=True)


class Store:
    """
    Persistence gateway for canonical requests, movements, escalations,
    orphan incidents and sprint boards.
    """

    def __init__(self, url: str, echo: bool = False):
        """
        Create the engine and session factory.

        Args:
            url: SQLAlchemy database URL.
            echo: Log every SQL statement.
        """
        engine_kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            # Scheduler threads share the connection pool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self._engine = create_engine(url, **engine_kwargs)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "Store":
        return cls(config.url, echo=config.echo)

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self._engine)
        logger.debug("Database schema ensured")

    def dispose(self) -> None:
        self._engine.dispose()

    # -------------------------------------------------------------------------
    # Canonical requests
    # -------------------------------------------------------------------------

    def get_request(self, external_id: str, source: Source) -> Optional[CanonicalRequest]:
        with self._sessions() as session:
            row = session.scalars(
                select(CanonicalRequestRow).where(
                    CanonicalRequestRow.external_id == external_id,
                    CanonicalRequestRow.source == source.value,
                )
            ).first()
            return _request(row) if row else None

    def get_request_by_id(self, request_id: int) -> Optional[CanonicalRequest]:
        with self._sessions() as session:
            row = session.get(CanonicalRequestRow, request_id)
            return _request(row) if row else None

    def list_requests(
        self,
        source: Optional[Source] = None,
        status: Optional[int] = None,
    ) -> list[CanonicalRequest]:
        query = select(CanonicalRequestRow).order_by(CanonicalRequestRow.id)
        if source is not None:
            query = query.where(CanonicalRequestRow.source == source.value)
        if status is not None:
            query = query.where(CanonicalRequestRow.status == int(status))
        with self._sessions() as session:
            return [_request(row) for row in session.scalars(query)]

    def upsert_request(
        self,
        incoming: CanonicalRequest,
        merge: MergeFn,
        transition: Optional[TransitionFn] = None,
    ) -> tuple[Optional[CanonicalRequest], CanonicalRequest]:
        """
        Insert or update one canonical request in a single transaction.

        The existing row (if any) is loaded, handed to ``merge`` together with
        the incoming state, and the merged result is written back. The movement
        returned by ``transition`` is written in the same transaction, so a
        raised level is never committed without its movement.

        Args:
            incoming: State derived from the latest source record.
            merge: Combines (prior, incoming) into the state to persist.
            transition: Builds the movement for (prior, saved), or None.

        Returns:
            Tuple of (prior state or None, saved state).
        """
        with self._sessions.begin() as session:
            row = session.scalars(
                select(CanonicalRequestRow).where(
                    CanonicalRequestRow.external_id == incoming.external_id,
                    CanonicalRequestRow.source == incoming.source.value,
                )
            ).first()
            prior = _request(row) if row else None
            merged = merge(prior, incoming)
            values = _row_values(merged, exclude={"id"})

            if row is None:
                row = CanonicalRequestRow(**values)
                session.add(row)
            else:
                for name, value in values.items():
                    setattr(row, name, value)

            session.flush()
            saved = _request(row)

            movement = transition(prior, saved) if transition else None
            if movement is not None:
                self._write_movement(session, movement, MOVEMENT_DEDUP_WINDOW)
            return prior, saved

    def latest_updated_at(self, source: Source) -> Optional[datetime]:
        """Most recent updated_at stored for a source, used as the sync window."""
        with self._sessions() as session:
            value = session.scalar(
                select(func.max(CanonicalRequestRow.updated_at)).where(
                    CanonicalRequestRow.source == source.value
                )
            )
            return ensure_utc(value)

    # -------------------------------------------------------------------------
    # Movements
    # -------------------------------------------------------------------------

    def find_movement(
        self,
        request_id: int,
        from_level: SupportLevel,
        to_level: SupportLevel,
        occurred_at: datetime,
        tolerance: timedelta = MOVEMENT_DEDUP_WINDOW,
    ) -> Optional[Movement]:
        """Find a movement on the same key within ``tolerance`` of ``occurred_at``."""
        with self._sessions() as session:
            row = self._matching_movement(
                session, request_id, from_level, to_level, occurred_at, tolerance
            )
            return _movement(row) if row else None

    def add_movement(
        self,
        movement: Movement,
        tolerance: Optional[timedelta] = None,
    ) -> Optional[Movement]:
        """
        Append a movement.

        Args:
            movement: Movement to store.
            tolerance: When set, skip the insert if the same key is already
                recorded within this window.

        Returns:
            The stored movement, or None if a duplicate was skipped.
        """
        with self._sessions.begin() as session:
            return self._write_movement(session, movement, tolerance)

    @staticmethod
    def _matching_movement(
        session: Session,
        request_id: int,
        from_level: SupportLevel,
        to_level: SupportLevel,
        occurred_at: datetime,
        tolerance: timedelta,
    ) -> Optional[MovementRow]:
        moment = to_db_time(occurred_at)
        return session.scalars(
            select(MovementRow).where(
                MovementRow.request_id == request_id,
                MovementRow.from_level == from_level.value,
                MovementRow.to_level == to_level.value,
                MovementRow.occurred_at >= moment - tolerance,
                MovementRow.occurred_at <= moment + tolerance,
            )
        ).first()

    def _write_movement(
        self,
        session: Session,
        movement: Movement,
        tolerance: Optional[timedelta],
    ) -> Optional[Movement]:
        if tolerance is not None and self._matching_movement(
            session,
            movement.request_id,
            movement.from_level,
            movement.to_level,
            movement.occurred_at,
            tolerance,
        ) is not None:
            logger.debug(
                f"Movement {movement.from_level.value}->{movement.to_level.value} for "
                f"{movement.external_id} already recorded"
            )
            return None
        row = MovementRow(**_row_values(movement, exclude={"id"}))
        session.add(row)
        session.flush()
        logger.info(
            f"Movement recorded for {movement.source.value} {movement.external_id}: "
            f"{movement.from_level.value} -> {movement.to_level.value}"
        )
        return _movement(row)

    def list_movements(self, request_id: Optional[int] = None) -> list[Movement]:
        query = select(MovementRow).order_by(MovementRow.occurred_at, MovementRow.id)
        if request_id is not None:
            query = query.where(MovementRow.request_id == request_id)
        with self._sessions() as session:
            return [_movement(row) for row in session.scalars(query)]

    def count_movements(self) -> int:
        with self._sessions() as session:
            return session.scalar(select(func.count(MovementRow.id))) or 0

    def escalation_candidates(self) -> list[EscalationCandidate]:
        """Level-changing movements joined with their request's current state."""
        query = (
            select(MovementRow, CanonicalRequestRow)
            .join(CanonicalRequestRow, MovementRow.request_id == CanonicalRequestRow.id)
            .where(MovementRow.from_level != MovementRow.to_level)
            .order_by(MovementRow.occurred_at, MovementRow.id)
        )
        with self._sessions() as session:
            return [
                EscalationCandidate(
                    movement=_movement(movement),
                    request_status=request.status,
                    request_team=request.team,
                    request_title=request.title,
                )
                for movement, request in session.execute(query)
            ]

    # -------------------------------------------------------------------------
    # Escalations
    # -------------------------------------------------------------------------

    def escalation_exists(
        self,
        request_id: int,
        from_level: SupportLevel,
        to_level: SupportLevel,
        occurred_at: datetime,
    ) -> bool:
        with self._sessions() as session:
            found = session.scalar(
                select(EscalationRow.id).where(
                    EscalationRow.request_id == request_id,
                    EscalationRow.from_level == from_level.value,
                    EscalationRow.to_level == to_level.value,
                    EscalationRow.occurred_at == to_db_time(occurred_at),
                )
            )
            return found is not None

    def add_escalation(self, escalation: Escalation) -> bool:
        """
        Insert an escalation unless its natural key is already present.

        Returns:
            True if a row was written, False if it already existed.
        """
        if self.escalation_exists(
            escalation.request_id,
            escalation.from_level,
            escalation.to_level,
            escalation.occurred_at,
        ):
            return False
        try:
            with self._sessions.begin() as session:
                session.add(EscalationRow(**_row_values(escalation, exclude={"id"})))
        except IntegrityError:
            # Another writer inserted the same key between check and insert
            logger.debug(f"Escalation for request {escalation.request_id} already recorded")
            return False
        return True

    def list_escalations(
        self,
        to_level: Optional[SupportLevel] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        team: Optional[str] = None,
    ) -> list[Escalation]:
        conditions = []
        if to_level is not None:
            conditions.append(EscalationRow.to_level == to_level.value)
        if since is not None:
            conditions.append(EscalationRow.occurred_at >= to_db_time(since))
        if until is not None:
            conditions.append(EscalationRow.occurred_at <= to_db_time(until))
        if team is not None:
            conditions.append(EscalationRow.team == team)

        query = select(EscalationRow).order_by(EscalationRow.occurred_at.desc(), EscalationRow.id)
        if conditions:
            query = query.where(and_(*conditions))
        with self._sessions() as session:
            return [_escalation(row) for row in session.scalars(query)]

    # -------------------------------------------------------------------------
    # Orphan incidents
    # -------------------------------------------------------------------------

    def get_orphan(self, external_id: str) -> Optional[OrphanIncident]:
        with self._sessions() as session:
            row = session.scalars(
                select(OrphanIncidentRow).where(OrphanIncidentRow.external_id == external_id)
            ).first()
            return _orphan(row) if row else None

    def get_orphan_by_id(self, orphan_id: int) -> Optional[OrphanIncident]:
        with self._sessions() as session:
            row = session.get(OrphanIncidentRow, orphan_id)
            return _orphan(row) if row else None

    def list_orphans(self) -> list[OrphanIncident]:
        query = select(OrphanIncidentRow).order_by(OrphanIncidentRow.id)
        with self._sessions() as session:
            return [_orphan(row) for row in session.scalars(query)]

    def save_orphan(self, orphan: OrphanIncident) -> OrphanIncident:
        """Insert or update an orphan incident keyed by its external id."""
        with self._sessions.begin() as session:
            row = session.scalars(
                select(OrphanIncidentRow).where(
                    OrphanIncidentRow.external_id == orphan.external_id
                )
            ).first()
            if row is None:
                row = OrphanIncidentRow(**_row_values(orphan, exclude={"id"}))
                session.add(row)
            else:
                for name, value in _row_values(orphan, exclude={"id", "created_at"}).items():
                    setattr(row, name, value)
            session.flush()
            return _orphan(row)

    def update_orphan(self, orphan_id: int, **fields: Any) -> Optional[OrphanIncident]:
        """Set selected columns on one orphan incident; None if it does not exist."""
        with self._sessions.begin() as session:
            row = session.get(OrphanIncidentRow, orphan_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, name, _column_value(value))
            session.flush()
            return _orphan(row)

    # -------------------------------------------------------------------------
    # Sprint boards
    # -------------------------------------------------------------------------

    def replace_sprint_board(self, team: str, tickets: list[SprintBoardTicket]) -> int:
        """Replace a team's sprint board in one transaction."""
        with self._sessions.begin() as session:
            session.execute(delete(SprintBoardTicketRow).where(SprintBoardTicketRow.team == team))
            for ticket in tickets:
                session.add(SprintBoardTicketRow(**_row_values(ticket, exclude=set())))
        return len(tickets)

    def list_sprint_board(self, team: str) -> list[SprintBoardTicket]:
        query = (
            select(SprintBoardTicketRow)
            .where(SprintBoardTicketRow.team == team)
            .order_by(SprintBoardTicketRow.id)
        )
        with self._sessions() as session:
            return [
                SprintBoardTicket.model_validate(row, from_attributes=True)
                for row in session.scalars(query)
            ]


def utc_start_of_year(now: Optional[datetime] = None) -> datetime:
    """Start of the current calendar year in UTC, the default sync window."""
    now = ensure_utc(now) or datetime.now(timezone.utc)
    return datetime(now.year, 1, 1, tzinfo=timezone.utc)
