"""
L4 orphan reconciler for the Ticket Reconciler.

Keeps the orphan-incident table in step with the service desk's
"awaiting engineering" queue: new items are linked to a tracker issue and an
owning team, known items get their tracker status refreshed, and items that
left the queue are marked closed. Nothing is ever deleted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .config import CategorizationSettings
from .linkage import LinkageContext, LinkageResolver
from .models import (
    ORPHAN_CLOSED_STATUS,
    STATUS_LABELS,
    UNKNOWN_TEAM,
    NormalizedRecord,
    OrphanIncident,
    OrphanSyncResult,
    Source,
    SupportLevel,
    TicketStatus,
    is_resolved_team,
    utc_now,
)
from .store import Store


logger = logging.getLogger(__name__)


AWAITING_LINK = "Awaiting Link"
UNASSIGNED = "Unassigned"
MAX_DESCRIPTION_LENGTH = 2000

# Teams that still warrant a title-based guess at the owning project
GENERIC_TEAMS = frozenset({UNKNOWN_TEAM, UNASSIGNED, "Developers"})

REASSIGNABLE_LEVELS = frozenset({SupportLevel.L1, SupportLevel.L2, SupportLevel.L3})


def truncate_description(text: str) -> str:
    text = text.replace("\x00", "")
    if len(text) > MAX_DESCRIPTION_LENGTH:
        return text[:MAX_DESCRIPTION_LENGTH - 3] + "..."
    return text


def find_project_in_title(title: str, settings: CategorizationSettings) -> Optional[str]:
    """Team of the first configured project whose name appears in the title."""
    title_lower = (title or "").lower()
    for name, team in settings.project_names.items():
        if name.strip() and name.lower() in title_lower:
            return team
    return None


@dataclass
class ActiveItem:
    """One ticket currently sitting in the awaiting-engineering queue."""

    external_id: str
    title: str = ""
    description: str = ""
    priority: str = "Medium"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    custom_fields: dict[str, Any] = field(default_factory=dict)
    linkage_ref: Optional[str] = None

    @classmethod
    def from_record(cls, record: NormalizedRecord) -> "ActiveItem":
        return cls(
            external_id=record.external_id,
            title=record.title,
            description=record.description,
            priority=record.priority,
            created_at=record.created_at,
            updated_at=record.updated_at,
            custom_fields=record.raw_custom_fields,
        )


class OrphanReconciler:
    """
    Sweeps the awaiting-engineering queue into the orphan-incident table.

    A stored team that is already resolved always beats a freshly computed
    "Unknown", so manual corrections survive failed re-resolution.
    """

    def __init__(
        self,
        store: Store,
        settings: CategorizationSettings,
        service_desk: Optional[Any] = None,
        resolver: Optional[LinkageResolver] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            store: Canonical store.
            settings: Project-to-team tables and aliases.
            service_desk: Client providing ``fetch_awaiting_escalation`` and
                ``fetch_conversations``; without one only stored rows are swept.
            resolver: Linkage resolver; a tracker-less one is used if omitted.
        """
        self._store = store
        self._settings = settings
        self._service_desk = service_desk
        self._resolver = resolver or LinkageResolver(settings)

    def active_set(self) -> dict[str, ActiveItem]:
        """
        Collect every ticket awaiting engineering.

        Service desk API results take precedence over canonical rows with the
        same id, since they are fresher.
        """
        items: dict[str, ActiveItem] = {}
        for request in self._store.list_requests(
            source=Source.SERVICE_DESK, status=TicketStatus.AWAITING_ESCALATION
        ):
            items[request.external_id] = ActiveItem(
                external_id=request.external_id,
                title=request.title,
                description=request.description,
                priority=request.priority,
                created_at=request.created_at,
                updated_at=request.updated_at,
                linkage_ref=request.linkage_ref,
            )
        if self._service_desk is not None:
            for record in self._service_desk.fetch_awaiting_escalation():
                items[record.external_id] = ActiveItem.from_record(record)
        return items

    def _context(self, item: ActiveItem) -> LinkageContext:
        loader = None
        if self._service_desk is not None:
            loader = lambda: self._service_desk.fetch_conversations(item.external_id)
        return LinkageContext(
            external_id=item.external_id,
            title=item.title,
            description=item.description,
            custom_fields=item.custom_fields,
            load_conversations=loader,
        )

    def reconcile_item(self, item: ActiveItem, result: OrphanSyncResult) -> OrphanIncident:
        """Resolve linkage and team for one active item and store it."""
        stored = self._store.get_orphan(item.external_id)
        stored_team = self._settings.canonical_team(stored.team) if stored else None

        team = stored_team or UNKNOWN_TEAM
        linkage_ref = (stored.linkage_ref if stored else None) or item.linkage_ref
        tracker_status = AWAITING_LINK
        assigned_to = UNASSIGNED

        if is_resolved_team(team):
            result.preserved += 1
            # A failed lookup leaves the last known tracker state in place
            tracker_status = stored.tracker_status or AWAITING_LINK
            assigned_to = stored.assigned_to or UNASSIGNED
            if linkage_ref:
                issue = self._resolver.verify(linkage_ref)
                if issue is not None:
                    tracker_status = issue.status
                    assigned_to = issue.assignee
        else:
            linkage = self._resolver.resolve(self._context(item))
            if linkage is not None:
                if linkage.issue is not None:
                    linkage_ref = linkage.key
                    tracker_status = linkage.issue.status
                    assigned_to = linkage.issue.assignee
                    result.linked += 1
                team = self._settings.canonical_team(linkage.team) or UNKNOWN_TEAM

        if team in GENERIC_TEAMS:
            team = self._settings.canonical_team(
                find_project_in_title(item.title, self._settings)
            ) or team

        if stored_team and is_resolved_team(stored_team) and team == UNKNOWN_TEAM:
            team = stored_team

        orphan = OrphanIncident(
            external_id=item.external_id,
            linkage_ref=linkage_ref,
            title=item.title.replace("\x00", ""),
            description=truncate_description(item.description),
            desk_status=STATUS_LABELS[TicketStatus.AWAITING_ESCALATION],
            tracker_status=tracker_status,
            priority=item.priority,
            team=team.strip(),
            assigned_to=assigned_to,
            source=Source.SERVICE_DESK,
            created_at=stored.created_at if stored else item.created_at,
            updated_at=item.updated_at,
            reassigned_to_level=stored.reassigned_to_level if stored else None,
            reassigned_at=stored.reassigned_at if stored else None,
        )
        saved = self._store.save_orphan(orphan)
        logger.info(
            f"L4 {item.external_id} -> tracker:{linkage_ref or 'none'} "
            f"team:{saved.team} status:{tracker_status}"
        )
        return saved

    def close_absent(self, active_ids: set[str]) -> int:
        """Mark open orphans that left the queue as closed."""
        closed = 0
        for orphan in self._store.list_orphans():
            if orphan.external_id in active_ids or not orphan.is_open:
                continue
            self._store.update_orphan(
                orphan.id, desk_status=ORPHAN_CLOSED_STATUS, updated_at=utc_now()
            )
            closed += 1
            logger.info(f"L4 {orphan.external_id} left the queue, marked {ORPHAN_CLOSED_STATUS}")
        return closed

    def run(self, on_progress: Optional[Callable[[int, int], None]] = None) -> OrphanSyncResult:
        """
        Run one sweep.

        Args:
            on_progress: Called with (done, total) after each item. May raise
                to stop the sweep.

        Returns:
            Counts of what the sweep did.

        Raises:
            SourceError: If the service desk queue cannot be fetched.
        """
        self._resolver.clear_cache()
        items = self.active_set()
        result = OrphanSyncResult(active=len(items))
        logger.info(f"Starting L4 orphan sync for {len(items)} active items")

        for i, item in enumerate(items.values(), 1):
            try:
                self.reconcile_item(item, result)
                result.processed += 1
            except Exception as e:
                logger.error(f"Failed to reconcile L4 item {item.external_id}: {e}")
                result.failed += 1
            if on_progress:
                on_progress(i, len(items))

        result.closed = self.close_absent(set(items))
        logger.info(
            f"L4 orphan sync complete: {result.processed} processed, {result.linked} linked, "
            f"{result.closed} closed, {result.failed} failed"
        )
        return result


def list_active_orphans(store: Store, team: Optional[str] = None) -> list[OrphanIncident]:
    """Open orphans still waiting on engineering, optionally for one team."""
    return [
        orphan for orphan in store.list_orphans()
        if orphan.is_open
        and orphan.reassigned_to_level is None
        and (team is None or orphan.team == team)
    ]


def update_orphan_team(
    store: Store,
    orphan_id: int,
    team: str,
    settings: Optional[CategorizationSettings] = None,
) -> Optional[OrphanIncident]:
    """
    Manually set the owning team of an orphan incident.

    Raises:
        ValueError: If the team name is blank.
    """
    settings = settings or CategorizationSettings()
    team = settings.canonical_team(team) or ""
    if not team:
        raise ValueError("Team name must not be empty")
    updated = store.update_orphan(orphan_id, team=team, updated_at=utc_now())
    if updated is not None:
        logger.info(f"L4 {updated.external_id} team set to {team}")
    return updated


def reassign_orphan(store: Store, orphan_id: int, level: Any) -> Optional[OrphanIncident]:
    """
    Hand an orphan incident back to a lower support level.

    The item drops out of the active engineering list; the canonical
    request's support level is left untouched.

    Raises:
        ValueError: If ``level`` is not one of L1, L2 or L3.
    """
    parsed = SupportLevel.parse(level)
    if parsed not in REASSIGNABLE_LEVELS:
        raise ValueError(f"Cannot reassign to '{level}': choose L1, L2 or L3")
    now = utc_now()
    updated = store.update_orphan(
        orphan_id, reassigned_to_level=parsed, reassigned_at=now, updated_at=now
    )
    if updated is not None:
        logger.info(f"L4 {updated.external_id} reassigned to {parsed.value}")
    return updated
