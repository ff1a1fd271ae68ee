"""
Reconciliation engine for the Ticket Reconciler.

Turns normalized source records into canonical requests with a ratcheted
upsert: every field is overwritten from the latest record except the
support level, which can only go up.
"""

import logging
from typing import Callable, Iterable, Optional

from .categorization import Categorizer
from .models import (
    TERMINAL_STATUSES,
    CanonicalRequest,
    Movement,
    NormalizedRecord,
    Source,
    higher_level,
)
from .movements import SYSTEM_ACTOR, MovementTracker
from .store import Store


logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """A single record could not be reconciled."""
    pass


def ratchet_merge(
    prior: Optional[CanonicalRequest],
    incoming: CanonicalRequest,
) -> CanonicalRequest:
    """
    Combine the stored and incoming state of one request.

    The incoming state wins for every field except ``support_level``, which
    keeps the higher of the two ranks. ``resolved_at`` is stamped the first
    time the request reaches a terminal status and cleared if it reopens.

    Args:
        prior: Stored state, or None for a new request.
        incoming: State built from the latest source record.

    Returns:
        The state to persist.
    """
    resolved_at = incoming.resolved_at
    if incoming.status in TERMINAL_STATUSES:
        if prior is not None and prior.resolved_at is not None:
            resolved_at = prior.resolved_at
        resolved_at = resolved_at or incoming.updated_at
    else:
        resolved_at = None

    if prior is None:
        return incoming.model_copy(update={"resolved_at": resolved_at})

    return incoming.model_copy(update={
        "id": prior.id,
        "support_level": higher_level(prior.support_level, incoming.support_level),
        "resolved_at": resolved_at,
    })


class ReconciliationEngine:
    """
    Categorizes and upserts records. A level increase and its movement are
    written in the same transaction.
    """

    def __init__(
        self,
        store: Store,
        categorizer: Categorizer,
        movements: Optional[MovementTracker] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Canonical store.
            categorizer: Rule cascade assigning level and team.
            movements: Movement tracker; one on the same store is created if omitted.
        """
        self._store = store
        self._categorizer = categorizer
        self._movements = movements or MovementTracker(store)

    def build_request(
        self,
        source: Source,
        record: NormalizedRecord,
        linkage_ref: Optional[str] = None,
    ) -> CanonicalRequest:
        """Map a normalized record to the canonical shape, with its categorization."""
        categorization = self._categorizer.categorize(
            source,
            group_name=record.group_name,
            status=record.status_for_categorization(),
            linkage_ref=linkage_ref,
        )
        return CanonicalRequest(
            external_id=record.external_id,
            source=source,
            title=record.title,
            description=record.description,
            status=record.status_code,
            priority=record.priority,
            category=record.category,
            requester_name=record.requester_name,
            requester_email=record.requester_email,
            assignee=record.assignee,
            group_name=record.group_name,
            support_level=categorization.level,
            team=categorization.team,
            linkage_ref=linkage_ref,
            due_date=record.due_date,
            created_at=record.created_at,
            updated_at=record.updated_at,
            resolved_at=record.resolved_at,
        )

    def reconcile(
        self,
        external_id: str,
        source: Source,
        record: NormalizedRecord,
        linkage_ref: Optional[str] = None,
    ) -> CanonicalRequest:
        """
        Upsert one record into the canonical store.

        Args:
            external_id: Identifier in the source system.
            source: System the record came from.
            record: Normalized source record.
            linkage_ref: Verified tracker key, if one was resolved.

        Returns:
            The canonical request as stored.

        Raises:
            ReconciliationError: If categorization or persistence fails.
        """
        if record.external_id != external_id:
            raise ReconciliationError(
                f"Record id {record.external_id} does not match {external_id}"
            )

        def transition(prior: Optional[CanonicalRequest], saved: CanonicalRequest) -> Optional[Movement]:
            return self._movements.transition(
                saved,
                prior.support_level if prior else None,
                prior.status if prior else None,
                actor=SYSTEM_ACTOR,
                status_text=record.status_text,
            )

        try:
            incoming = self.build_request(source, record, linkage_ref)
            prior, saved = self._store.upsert_request(incoming, ratchet_merge, transition)
        except ReconciliationError:
            raise
        except Exception as e:
            logger.error(f"Reconciliation error for {source.value} {external_id}: {e}")
            raise ReconciliationError(f"Failed to reconcile {source.value} {external_id}: {e}") from e

        if prior is None:
            logger.debug(f"Inserted {source.value} {external_id} at {saved.support_level.value}")
        elif incoming.support_level != saved.support_level:
            logger.debug(
                f"Kept {source.value} {external_id} at {saved.support_level.value} "
                f"(incoming {incoming.support_level.value})"
            )
        return saved

    def reconcile_batch(
        self,
        source: Source,
        records: Iterable[NormalizedRecord],
        linkage: Optional[Callable[[NormalizedRecord], Optional[str]]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> tuple[list[CanonicalRequest], int]:
        """
        Reconcile records in order, skipping the ones that fail.

        Args:
            source: System the records came from.
            records: Normalized records in adapter order.
            linkage: Resolves a record's tracker key; called per record.
            on_progress: Called with (done, total) after each record. May
                raise to stop the batch (used for cancellation).

        Returns:
            Tuple of (reconciled requests, number of failed records).
        """
        records = list(records)
        total = len(records)
        reconciled: list[CanonicalRequest] = []
        failed = 0

        logger.info(f"Starting reconciliation of {total} {source.value} records")

        for i, record in enumerate(records, 1):
            try:
                linkage_ref = linkage(record) if linkage else None
                reconciled.append(self.reconcile(record.external_id, source, record, linkage_ref))
            except ReconciliationError as e:
                logger.error(f"Skipping {source.value} record {record.external_id}: {e}")
                failed += 1
            except Exception as e:
                # One bad record must not break the batch
                logger.error(f"Unexpected error on {source.value} record {record.external_id}: {e}")
                failed += 1
            if on_progress:
                on_progress(i, total)

        logger.info(
            f"Reconciliation complete: {len(reconciled)} {source.value} records stored, {failed} failed"
        )
        return reconciled, failed
