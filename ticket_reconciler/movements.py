"""
Movement tracker for the Ticket Reconciler.

Appends a Movement whenever a canonical request's support level goes up.
Status-only changes are not recorded.
"""

import logging
from datetime import datetime
from typing import Optional

from .models import CanonicalRequest, Movement, SupportLevel, level_rank
from .store import MOVEMENT_DEDUP_WINDOW, Store


logger = logging.getLogger(__name__)


SYSTEM_ACTOR = "System Sync"


class MovementTracker:
    """Records upward level transitions, collapsing near-simultaneous duplicates."""

    DEDUP_WINDOW = MOVEMENT_DEDUP_WINDOW

    def __init__(self, store: Store):
        self._store = store

    def transition(
        self,
        request: CanonicalRequest,
        prior_level: Optional[SupportLevel],
        prior_status: Optional[int],
        actor: str = SYSTEM_ACTOR,
        occurred_at: Optional[datetime] = None,
        status_text: Optional[str] = None,
    ) -> Optional[Movement]:
        """
        Build the Movement for ``request`` if it sits at a higher level than before.

        Nothing is written; the caller stores the result.

        Args:
            request: The request as saved after reconciliation.
            prior_level: Level before this reconciliation; None for a new request.
            prior_status: Status code before this reconciliation.
            actor: Who or what caused the change.
            occurred_at: When it happened; defaults to the request's updated_at.
            status_text: Status label the source reported, kept as the
                movement's to_status in place of the bare code.

        Returns:
            The Movement, or None when the level did not go up.
        """
        if prior_level is None or request.id is None:
            return None
        if level_rank(request.support_level) <= level_rank(prior_level):
            return None

        return Movement(
            request_id=request.id,
            external_id=request.external_id,
            source=request.source,
            from_level=prior_level,
            to_level=request.support_level,
            from_status=str(prior_status) if prior_status is not None else None,
            to_status=status_text or str(request.status),
            changed_by=actor,
            occurred_at=occurred_at or request.updated_at,
        )

    def record_if_transitioned(
        self,
        request: CanonicalRequest,
        prior_level: Optional[SupportLevel],
        prior_status: Optional[int],
        actor: str = SYSTEM_ACTOR,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[Movement]:
        """
        Append a Movement if ``request`` sits at a higher level than before.

        Returns:
            The new Movement, or None when nothing was recorded.
        """
        movement = self.transition(request, prior_level, prior_status, actor, occurred_at)
        if movement is None:
            return None
        return self._store.add_movement(movement, tolerance=self.DEDUP_WINDOW)
