"""Tests for the reconciliation engine."""

import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from conftest import make_record
from ticket_reconciler.categorization import Categorizer
from ticket_reconciler.models import CanonicalRequest, Source, SupportLevel
from ticket_reconciler.reconciliation import (
    ReconciliationEngine,
    ReconciliationError,
    ratchet_merge,
)


T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(store, settings):
    return ReconciliationEngine(store, Categorizer(settings))


class TestRatchetMerge:
    """Tests for the ratcheted merge."""

    def _request(self, level, status=2, **fields):
        return CanonicalRequest(
            external_id="1", source=Source.SERVICE_DESK, support_level=level, status=status, updated_at=T0, **fields
        )

    def test_new_request_taken_as_is(self):
        """Test a new request keeps its computed level."""
        merged = ratchet_merge(None, self._request(SupportLevel.L2))
        assert merged.support_level is SupportLevel.L2

    def test_level_never_decreases(self):
        """Test a lower incoming level keeps the stored one."""
        prior = self._request(SupportLevel.L4, id=7)
        merged = ratchet_merge(prior, self._request(SupportLevel.L1, title="new title"))
        assert merged.support_level is SupportLevel.L4
        assert merged.title == "new title"
        assert merged.id == 7

    def test_level_increases(self):
        """Test a higher incoming level wins."""
        merged = ratchet_merge(self._request(SupportLevel.L1, id=7), self._request(SupportLevel.L3))
        assert merged.support_level is SupportLevel.L3

    def test_resolved_at_stamped_once(self):
        """Test resolved_at is set on first resolution and kept afterwards."""
        first = ratchet_merge(None, self._request(SupportLevel.L2, status=4))
        assert first.resolved_at == T0
        later = self._request(SupportLevel.L2, status=5).model_copy(update={"updated_at": T0 + timedelta(days=1)})
        assert ratchet_merge(first, later).resolved_at == T0

    def test_reopen_clears_resolved_at(self):
        """Test reopening clears resolved_at."""
        prior = self._request(SupportLevel.L2, status=4, resolved_at=T0)
        assert ratchet_merge(prior, self._request(SupportLevel.L2, status=2)).resolved_at is None


class TestReconciliationEngine:
    """Tests for ReconciliationEngine."""

    def test_insert_categorizes(self, engine):
        """Test a new record is stored with level and team."""
        saved = engine.reconcile("1", Source.HELPDESK, make_record("1"))
        assert saved.support_level is SupportLevel.L1
        assert saved.team == "Contact Center"
        assert saved.source is Source.HELPDESK

    def test_id_mismatch(self, engine):
        """Test a record under the wrong id is rejected."""
        with pytest.raises(ReconciliationError):
            engine.reconcile("2", Source.HELPDESK, make_record("1"))

    def test_store_failure_wrapped(self, settings):
        """Test persistence failures surface as ReconciliationError."""
        store = Mock()
        store.upsert_request.side_effect = RuntimeError("disk full")
        engine = ReconciliationEngine(store, Categorizer(settings))
        with pytest.raises(ReconciliationError, match="disk full"):
            engine.reconcile("1", Source.HELPDESK, make_record("1"))

    def test_linkage_ref_stored(self, engine):
        """Test the resolved tracker key is persisted."""
        saved = engine.reconcile("1", Source.SERVICE_DESK, make_record("1"), linkage_ref="SKP-12")
        assert saved.linkage_ref == "SKP-12"

    def test_escalation_path_fd_100(self, engine, store):
        """Test a ticket climbing L1 -> L3 -> L4 records two movements and never drops."""
        steps = [
            make_record("FD-100", group_name="Contact Center Queue", updated_at=T0),
            make_record("FD-100", group_name="Engineering Escalations", updated_at=T0 + timedelta(hours=1)),
            make_record(
                "FD-100",
                group_name="Engineering Escalations",
                status_code=18,
                status_text="AwaitingEngineering",
                updated_at=T0 + timedelta(hours=2),
            ),
            make_record("FD-100", group_name="Contact Center Queue", updated_at=T0 + timedelta(hours=3)),
        ]
        levels = [engine.reconcile("FD-100", Source.SERVICE_DESK, record).support_level for record in steps]

        assert levels == [SupportLevel.L1, SupportLevel.L3, SupportLevel.L4, SupportLevel.L4]
        movements = store.list_movements()
        assert [(m.from_level, m.to_level) for m in movements] == [
            (SupportLevel.L1, SupportLevel.L3),
            (SupportLevel.L3, SupportLevel.L4),
        ]
        assert movements[1].occurred_at == T0 + timedelta(hours=2)

    def test_replay_is_idempotent(self, engine, store):
        """Test reprocessing the same records adds no movements."""
        records = [
            make_record("5", group_name="Contact Center Queue", updated_at=T0),
            make_record("5", status_code=18, updated_at=T0 + timedelta(hours=1)),
        ]
        for record in records:
            engine.reconcile("5", Source.SERVICE_DESK, record)
        engine.reconcile("5", Source.SERVICE_DESK, records[1])
        assert store.count_movements() == 1
        assert len(store.list_requests()) == 1


class TestReconcileBatch:
    """Tests for batch reconciliation."""

    def test_partial_failure(self, engine):
        """Test one failing record does not stop the batch."""
        records = [make_record("1"), make_record("2"), make_record("3")]

        def linkage(record):
            if record.external_id == "2":
                raise RuntimeError("lookup exploded")
            return None

        reconciled, failed = engine.reconcile_batch(Source.SERVICE_DESK, records, linkage=linkage)
        assert [r.external_id for r in reconciled] == ["1", "3"]
        assert failed == 1

    def test_progress_reported(self, engine):
        """Test progress is reported after every record."""
        progress = Mock()
        engine.reconcile_batch(Source.HELPDESK, [make_record("1"), make_record("2")], on_progress=progress)
        assert [c.args for c in progress.call_args_list] == [(1, 2), (2, 2)]

    def test_progress_can_stop_batch(self, engine, store):
        """Test an exception from the progress callback ends the batch."""

        class Stop(Exception):
            pass

        def on_progress(done, total):
            raise Stop()

        with pytest.raises(Stop):
            engine.reconcile_batch(Source.HELPDESK, [make_record("1"), make_record("2")], on_progress=on_progress)
        assert len(store.list_requests()) == 1


LEVEL_INPUTS = {
    SupportLevel.L1: {"group_name": "Contact Center Queue"},
    SupportLevel.L2: {"group_name": "Service Owners"},
    SupportLevel.L3: {"group_name": "Engineering Escalations"},
    SupportLevel.L4: {"status_code": 18},
}


class TestRatchetMonotonicity:
    """Tests for the level ratchet over every input order."""

    @pytest.mark.parametrize(
        "order",
        list(itertools.permutations(LEVEL_INPUTS)),
        ids=lambda order: "-".join(level.value for level in order),
    )
    def test_level_tracks_highest_in_any_order(self, engine, store, order):
        """Test the stored level tracks the highest level seen, whatever the order."""
        highest = 0
        expected_movements = 0
        for hour, level in enumerate(order):
            record = make_record("42", updated_at=T0 + timedelta(hours=hour), **LEVEL_INPUTS[level])
            saved = engine.reconcile("42", Source.SERVICE_DESK, record)

            if hour > 0 and level.rank > highest:
                expected_movements += 1
            highest = max(highest, level.rank)
            assert saved.support_level.rank == highest

        assert store.get_request("42", Source.SERVICE_DESK).support_level is SupportLevel.L4
        assert store.count_movements() == expected_movements


class TestMovementAtomicity:
    """Tests for writing a level change and its movement together."""

    def test_failed_movement_write_keeps_prior_level(self, engine, store):
        """Test a failed movement insert rolls back the raised level so a retry records it."""
        engine.reconcile("6", Source.SERVICE_DESK, make_record("6", group_name="Contact Center Queue", updated_at=T0))
        raised = make_record("6", status_code=18, updated_at=T0 + timedelta(hours=1))

        write_movement = store._write_movement
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("disk full")
            return write_movement(*args, **kwargs)

        with patch.object(store, "_write_movement", side_effect=flaky):
            with pytest.raises(ReconciliationError, match="disk full"):
                engine.reconcile("6", Source.SERVICE_DESK, raised)
            assert store.get_request("6", Source.SERVICE_DESK).support_level is SupportLevel.L1
            assert store.count_movements() == 0

            saved = engine.reconcile("6", Source.SERVICE_DESK, raised)

        assert saved.support_level is SupportLevel.L4
        assert [(m.from_level, m.to_level) for m in store.list_movements()] == [
            (SupportLevel.L1, SupportLevel.L4),
        ]
