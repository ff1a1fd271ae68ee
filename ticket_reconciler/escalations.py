"""
Escalation deriver for the Ticket Reconciler.

Replays the movement log into the governance-facing escalation ledger.
The replay is a pure projection and safe to run any number of times.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional, Union

from .categorization import is_awaiting_escalation
from .config import CategorizationSettings
from .models import (
    Escalation,
    EscalationCandidate,
    EscalationSummary,
    SupportLevel,
    status_label,
)
from .store import Store


logger = logging.getLogger(__name__)


LEGAL_ESCALATIONS = frozenset({
    (SupportLevel.L1, SupportLevel.L2),
    (SupportLevel.L1, SupportLevel.L3),
    (SupportLevel.L1, SupportLevel.L4),
    (SupportLevel.L2, SupportLevel.L3),
    (SupportLevel.L2, SupportLevel.L4),
    (SupportLevel.L3, SupportLevel.L4),
})


def is_legal(from_level: SupportLevel, to_level: SupportLevel) -> bool:
    return (from_level, to_level) in LEGAL_ESCALATIONS


class EscalationDeriver:
    """
    Validates level-changing movements and writes them to the ledger.

    An L4 target only stands when the status recorded on the movement itself
    corroborates an engineering hand-off; otherwise it is read as L2. Later
    status changes on the request never alter how a movement is read.
    """

    def __init__(self, store: Store, settings: Optional[CategorizationSettings] = None):
        self._store = store
        self._settings = settings or CategorizationSettings()

    def is_corroborated(self, status: Union[int, str, None]) -> bool:
        """
        Whether a status backs up an L4 escalation.

        Accepts a status code or the text a movement recorded, which is either
        a code ("18") or a source label ("Awaiting L4").
        """
        if status is None or str(status).strip() == "":
            return False
        keywords = self._settings.awaiting_escalation_keywords
        try:
            code = int(str(status).strip())
        except ValueError:
            return is_awaiting_escalation(str(status), keywords)
        if code in self._settings.corroborating_statuses:
            return True
        return is_awaiting_escalation(status_label(code), keywords)

    def validated_to_level(self, candidate: EscalationCandidate) -> SupportLevel:
        movement = candidate.movement
        if movement.to_level is SupportLevel.L4 and not self.is_corroborated(movement.to_status):
            return SupportLevel.L2
        return movement.to_level

    def to_escalation(self, candidate: EscalationCandidate) -> Optional[Escalation]:
        """Validate one candidate; None if it does not belong in the ledger."""
        movement = candidate.movement
        to_level = self.validated_to_level(candidate)
        if not is_legal(movement.from_level, to_level):
            logger.debug(
                f"Discarding {movement.from_level.value}->{to_level.value} for "
                f"{movement.external_id} (not a legal escalation)"
            )
            return None
        return Escalation(
            request_id=movement.request_id,
            external_id=movement.external_id,
            from_level=movement.from_level,
            to_level=to_level,
            occurred_at=movement.occurred_at,
            escalated_by=movement.changed_by,
            team=candidate.request_team,
            title=candidate.request_title,
            status=candidate.request_status,
        )

    def derive(self) -> int:
        """
        Replay all movements into the escalation ledger.

        Returns:
            Number of new escalation rows written.
        """
        candidates = self._store.escalation_candidates()
        created = 0
        for candidate in candidates:
            escalation = self.to_escalation(candidate)
            if escalation is not None and self._store.add_escalation(escalation):
                created += 1
        logger.info(f"Escalation derivation complete: {created} new from {len(candidates)} movements")
        return created


def list_escalations(
    store: Store,
    to_level: Optional[SupportLevel] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    team: Optional[str] = None,
) -> list[Escalation]:
    """Escalations newest first, optionally filtered by target level, date range or team."""
    return store.list_escalations(to_level=to_level, since=since, until=until, team=team)


def summarize(escalations: list[Escalation]) -> EscalationSummary:
    """Count escalations by target level and by team."""
    by_level = Counter(e.to_level.value for e in escalations)
    by_team = Counter(e.team or "Unassigned" for e in escalations)
    return EscalationSummary(
        total=len(escalations),
        by_level=dict(sorted(by_level.items())),
        by_team=dict(by_team.most_common()),
    )
