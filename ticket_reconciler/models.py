"""
Data models for the Ticket Reconciler.

Uses Pydantic for validation and for the typed projections that cross
component boundaries (nothing above the store sees an ORM row).
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enumerations and lookup tables
# =============================================================================

class Source(str, Enum):
    """The three ticketing systems feeding the canonical store."""

    HELPDESK = "helpdesk"
    SERVICE_DESK = "service_desk"
    TRACKER = "tracker"


class SupportLevel(str, Enum):
    """Ordinal escalation tier. L1 first-line, L2/L3 mid-tier, L4 engineering."""

    L1 = "L1"
    L2 = "L2"
    L3 = "L3"
    L4 = "L4"

    @property
    def rank(self) -> int:
        return LEVEL_RANKS[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["SupportLevel"]:
        """Parse a level name case-insensitively, returning None if unknown."""
        if isinstance(value, cls):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


LEVEL_RANKS: dict[SupportLevel, int] = {
    SupportLevel.L1: 1,
    SupportLevel.L2: 2,
    SupportLevel.L3: 3,
    SupportLevel.L4: 4,
}


def level_rank(level: Optional[Any]) -> int:
    """Rank of a level; unknown or missing levels rank 0."""
    parsed = SupportLevel.parse(level)
    return LEVEL_RANKS[parsed] if parsed else 0


def higher_level(current: SupportLevel, incoming: SupportLevel) -> SupportLevel:
    """Return whichever level ranks higher (ties keep the current one)."""
    return incoming if level_rank(incoming) > level_rank(current) else current


class TicketStatus(IntEnum):
    """Lifecycle status codes, normalized across all sources."""

    OPEN = 2
    PENDING = 3
    RESOLVED = 4
    CLOSED = 5
    AWAITING_CUSTOMER = 6
    AWAITING_APPROVAL = 9
    AWAITING_THIRD_PARTY = 10
    AWAITING_ESCALATION = 18
    FROZEN = 19


STATUS_LABELS: dict[int, str] = {
    TicketStatus.OPEN: "Open",
    TicketStatus.PENDING: "Pending",
    TicketStatus.RESOLVED: "Resolved",
    TicketStatus.CLOSED: "Closed",
    TicketStatus.AWAITING_CUSTOMER: "Awaiting Customer",
    TicketStatus.AWAITING_APPROVAL: "Awaiting Approval",
    TicketStatus.AWAITING_THIRD_PARTY: "Awaiting 3rd Party",
    TicketStatus.AWAITING_ESCALATION: "Awaiting L4 Support",
    TicketStatus.FROZEN: "Change Freeze",
}

TERMINAL_STATUSES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


def status_label(code: Optional[int]) -> str:
    """Human label for a normalized status code (unknown codes read as Open)."""
    if code is None:
        return STATUS_LABELS[TicketStatus.OPEN]
    return STATUS_LABELS.get(code, STATUS_LABELS[TicketStatus.OPEN])


PRIORITY_LABELS: dict[int, str] = {
    1: "Low",
    2: "Medium",
    3: "High",
    4: "Urgent",
}


def priority_label(code: Optional[int]) -> str:
    """Map a Freshworks-style numeric priority to its label."""
    if code is None:
        return "Medium"
    return PRIORITY_LABELS.get(code, "Medium")


class JobState(str, Enum):
    """State of a sync job as reported to status pollers."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    IDLE = "idle"


# =============================================================================
# Adapter output
# =============================================================================

class NormalizedRecord(BaseModel):
    """
    A ticket as returned by a source adapter, before categorization.

    Attributes:
        external_id: Identifier in the source system
        status_code: Normalized lifecycle code (see TicketStatus)
        status_text: Raw status label when the source exposes one
        group_name: Queue or group the ticket currently sits in
        raw_custom_fields: Source custom fields, used for linkage lookup
    """

    external_id: str = Field(..., min_length=1, description="Source ticket id")
    title: str = Field(default="Untitled", description="Ticket subject")
    description: str = Field(default="", description="Plain-text body")
    status_code: int = Field(default=TicketStatus.OPEN, description="Normalized status")
    status_text: Optional[str] = Field(default=None, description="Raw status label")
    priority: str = Field(default="Medium", description="Priority label")
    category: Optional[str] = Field(default=None, description="Ticket category")
    requester_name: Optional[str] = Field(default=None)
    requester_email: Optional[str] = Field(default=None)
    assignee: Optional[str] = Field(default=None)
    group_name: Optional[str] = Field(default=None)
    due_date: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = Field(default=None)
    raw_custom_fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id", mode="before")
    @classmethod
    def coerce_external_id(cls, v: Any) -> str:
        """Source ids are numeric in some systems; store them as text."""
        return str(v).strip() if v is not None else ""

    @field_validator("title", "description", mode="before")
    @classmethod
    def strip_nul(cls, v: Any) -> str:
        """Drop NUL bytes that some sources embed in text fields."""
        if v is None:
            return ""
        return str(v).replace("\x00", "")

    @field_validator("due_date", "created_at", "updated_at", "resolved_at")
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def status_for_categorization(self) -> str:
        """Status as seen by the categorization rules (label if known, else code)."""
        return self.status_text or str(self.status_code)


# =============================================================================
# Canonical store projections
# =============================================================================

class Categorization(BaseModel):
    """Support level and owning team for one ticket."""

    level: SupportLevel
    team: str

    model_config = {"frozen": True}


class CanonicalRequest(BaseModel):
    """One reconciled request, unique per (external_id, source)."""

    id: Optional[int] = None
    external_id: str
    source: Source
    title: str = "Untitled"
    description: str = ""
    status: int = TicketStatus.OPEN
    priority: str = "Medium"
    category: Optional[str] = None
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    assignee: Optional[str] = None
    group_name: Optional[str] = None
    support_level: SupportLevel = SupportLevel.L2
    team: Optional[str] = None
    linkage_ref: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None

    @field_validator("due_date", "created_at", "updated_at", "resolved_at")
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def status_label(self) -> str:
        return status_label(self.status)


class Movement(BaseModel):
    """An upward level transition observed for one canonical request."""

    id: Optional[int] = None
    request_id: int
    external_id: str
    source: Source
    from_level: SupportLevel
    to_level: SupportLevel
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    changed_by: str = "System Sync"
    occurred_at: datetime

    model_config = {"frozen": True}

    @field_validator("occurred_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class EscalationCandidate(BaseModel):
    """A level-changing movement joined with its request's current state."""

    movement: Movement
    request_status: int
    request_team: Optional[str] = None
    request_title: Optional[str] = None

    model_config = {"frozen": True}


class Escalation(BaseModel):
    """A validated escalation in the governance ledger."""

    id: Optional[int] = None
    request_id: int
    external_id: str
    from_level: SupportLevel
    to_level: SupportLevel
    occurred_at: datetime
    escalated_by: Optional[str] = None
    team: Optional[str] = None
    title: Optional[str] = None
    status: Optional[int] = None

    model_config = {"frozen": True}

    @field_validator("occurred_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class EscalationSummary(BaseModel):
    """Counts over a slice of the escalation ledger."""

    total: int = 0
    by_level: dict[str, int] = Field(default_factory=dict)
    by_team: dict[str, int] = Field(default_factory=dict)


UNKNOWN_TEAM = "Unknown"
UNRESOLVED_TEAMS = frozenset({"Unknown", "Unassigned", ""})

ORPHAN_CLOSED_STATUS = "Resolved/Closed"
ORPHAN_CLOSED_STATUSES = frozenset({ORPHAN_CLOSED_STATUS, "Resolved", "Closed", "Declined", "Rejected"})


def is_resolved_team(team: Optional[str]) -> bool:
    """A team counts as resolved once it names something other than a placeholder."""
    return bool(team) and team.strip() not in UNRESOLVED_TEAMS


class OrphanIncident(BaseModel):
    """An engineering-tier incident not yet tied to a tracker item."""

    id: Optional[int] = None
    external_id: str
    linkage_ref: Optional[str] = None
    title: str = ""
    description: str = ""
    desk_status: str = STATUS_LABELS[TicketStatus.AWAITING_ESCALATION]
    tracker_status: Optional[str] = None
    priority: str = "Medium"
    team: str = UNKNOWN_TEAM
    assigned_to: Optional[str] = None
    source: Source = Source.SERVICE_DESK
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    reassigned_to_level: Optional[SupportLevel] = None
    reassigned_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", "reassigned_at")
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_open(self) -> bool:
        return self.desk_status not in ORPHAN_CLOSED_STATUSES


class SprintBoardTicket(BaseModel):
    """A tracker item on a team's active sprint board."""

    team: str
    tracker_key: str
    title: str = ""
    status: str = ""
    assigned_to: Optional[str] = None
    board_type: str = "unassigned"
    updated_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Tracker lookups and linkage
# =============================================================================

class TrackerIssue(BaseModel):
    """Minimal view of an engineering-tracker item returned by a lookup."""

    key: str
    status: str = "Unknown"
    assignee: str = "Unassigned"
    summary: str = ""

    model_config = {"frozen": True}

    @property
    def project_prefix(self) -> str:
        return self.key.split("-", 1)[0].upper() if "-" in self.key else ""


class LinkageResult(BaseModel):
    """A verified cross-system reference found by the linkage resolver."""

    strategy: str
    key: Optional[str] = None
    issue: Optional[TrackerIssue] = None
    project_name: Optional[str] = None
    team: Optional[str] = None

    model_config = {"frozen": True}


# =============================================================================
# Job status
# =============================================================================

class JobStatus(BaseModel):
    """Progress report for one sync job."""

    job_id: str = ""
    kind: str = ""
    state: JobState = JobState.IDLE
    message: str = ""
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SyncResult(BaseModel):
    """Outcome counts of a single source sync."""

    source: str
    fetched: int = 0
    reconciled: int = 0
    failed: int = 0
    movements: int = 0


class OrphanSyncResult(BaseModel):
    """Outcome counts of an orphan reconciliation sweep."""

    active: int = 0
    processed: int = 0
    linked: int = 0
    preserved: int = 0
    closed: int = 0
    failed: int = 0
