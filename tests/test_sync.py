"""Tests for sync orchestration."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeTracker, make_record
from ticket_reconciler.adapters import SourceAPIError
from ticket_reconciler.config import (
    AppConfig,
    DatabaseConfig,
    HelpdeskConfig,
    ServiceDeskConfig,
    TrackerConfig,
)
from ticket_reconciler.models import JobState, Source, SupportLevel, TrackerIssue
from ticket_reconciler.sync import (
    KIND_ALL,
    KIND_ESCALATIONS,
    KIND_ORPHANS,
    KIND_SPRINT_BOARD,
    SyncService,
)


T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def app_config(helpdesk=True, service_desk=True, tracker=True, tracker_token="token"):
    return AppConfig(
        helpdesk=HelpdeskConfig(enabled=helpdesk, domain="acme.freshdesk.com", api_key="k"),
        service_desk=ServiceDeskConfig(enabled=service_desk, domain="acme.freshservice.com", api_key="k"),
        tracker=TrackerConfig(enabled=tracker, base_url="https://acme.atlassian.net", api_token=tracker_token, email="e"),
        database=DatabaseConfig(url="sqlite://", echo=False),
    )


class FakeClient:
    """Context-managed source client returning canned records."""

    def __init__(self, records=None, error=None, awaiting=None):
        self.records = records or []
        self.error = error
        self.awaiting = awaiting or []
        self.since = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def fetch_updated_since(self, since):
        self.since.append(since)
        if self.error:
            raise self.error
        return list(self.records)

    def fetch_awaiting_escalation(self):
        return list(self.awaiting)

    def fetch_conversations(self, ticket_id):
        return []


class FakeTrackerClient(FakeTracker):
    """Tracker fake that is also a context manager and a source."""

    def __init__(self, issues=None, records=None):
        super().__init__(issues)
        self.records = records or []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None

    def fetch_updated_since(self, since):
        return list(self.records)


class FakeClients:
    """Stand-in for SourceClients."""

    def __init__(self, helpdesk=None, service_desk=None, tracker=None):
        self._clients = {
            Source.HELPDESK: helpdesk or FakeClient(),
            Source.SERVICE_DESK: service_desk or FakeClient(),
            Source.TRACKER: tracker or FakeTrackerClient(),
        }

    def helpdesk(self):
        return self._clients[Source.HELPDESK]

    def service_desk(self):
        return self._clients[Source.SERVICE_DESK]

    def tracker(self):
        return self._clients[Source.TRACKER]

    def for_source(self, source):
        return self._clients[source]


def service(store, settings, config=None, **clients):
    return SyncService(config or app_config(), store, settings, clients=FakeClients(**clients))


class TestSyncSource:
    """Tests for single-source syncs."""

    def test_helpdesk_sync(self, store, settings):
        """Test records are reconciled and the job completes."""
        helpdesk = FakeClient([make_record("1"), make_record("2")])
        svc = service(store, settings, helpdesk=helpdesk)
        status = svc.registry.get_status(svc.run("helpdesk"))

        assert status.state is JobState.COMPLETED
        assert status.message == "2 of 2 helpdesk tickets reconciled, 0 failed, 0 movements"
        assert all(r.support_level is SupportLevel.L1 for r in store.list_requests(Source.HELPDESK))

    def test_first_sync_starts_at_year_start(self, store, settings):
        """Test an empty store fetches from January 1st."""
        helpdesk = FakeClient()
        service(store, settings, helpdesk=helpdesk).sync_source(Source.HELPDESK)
        assert helpdesk.since[0].month == 1
        assert helpdesk.since[0].day == 1

    def test_incremental_window(self, store, settings):
        """Test later syncs start at the newest stored updated_at."""
        helpdesk = FakeClient([make_record("1", updated_at=T0)])
        svc = service(store, settings, helpdesk=helpdesk)
        svc.sync_source(Source.HELPDESK)
        svc.sync_source(Source.HELPDESK)
        assert helpdesk.since[1] == T0

    def test_service_desk_inline_linkage(self, store, settings):
        """Test service desk tickets get a verified tracker key."""
        desk = FakeClient([make_record("50", description="tracked in SKP-12")])
        tracker = FakeTrackerClient({"SKP-12": TrackerIssue(key="SKP-12")})
        service(store, settings, service_desk=desk, tracker=tracker).sync_source(Source.SERVICE_DESK)
        assert store.get_request("50", Source.SERVICE_DESK).linkage_ref == "SKP-12"

    def test_service_desk_without_tracker(self, store, settings):
        """Test linkage is skipped when the tracker is off."""
        desk = FakeClient([make_record("50", description="tracked in SKP-12")])
        config = app_config(tracker=False)
        service(store, settings, config, service_desk=desk).sync_source(Source.SERVICE_DESK)
        assert store.get_request("50", Source.SERVICE_DESK).linkage_ref is None

    def test_movements_counted(self, store, settings):
        """Test the sync reports new movements."""
        desk = FakeClient([
            make_record("60", group_name="Contact Center Queue", updated_at=T0),
            make_record("60", status_code=18, updated_at=T0 + timedelta(hours=1)),
        ])
        result = service(store, settings, service_desk=desk).sync_source(Source.SERVICE_DESK)
        assert (result.fetched, result.reconciled, result.movements) == (2, 2, 1)

    def test_tracker_sync(self, store, settings):
        """Test tracker issues land at L4."""
        tracker = FakeTrackerClient(records=[make_record("SKP-1", group_name="SKP")])
        service(store, settings, tracker=tracker).sync_source(Source.TRACKER)
        assert store.get_request("SKP-1", Source.TRACKER).support_level is SupportLevel.L4


class TestJobFailures:
    """Tests for failures contained in a job."""

    def test_missing_credentials_fail_only_that_job(self, store, settings):
        """Test a missing tracker token fails the tracker job with a readable message."""
        svc = service(store, settings, app_config(tracker_token=""), helpdesk=FakeClient([make_record("1")]))
        tracker_status = svc.registry.get_status(svc.run("tracker"))
        helpdesk_status = svc.registry.get_status(svc.run("helpdesk"))

        assert tracker_status.state is JobState.FAILED
        assert tracker_status.message == "Configuration error: TRACKER_API_TOKEN is required"
        assert helpdesk_status.state is JobState.COMPLETED

    def test_disabled_source(self, store, settings):
        """Test a disabled source reports that it is disabled."""
        svc = service(store, settings, app_config(helpdesk=False))
        status = svc.registry.get_status(svc.run("helpdesk"))
        assert status.message == "Configuration error: helpdesk sync is disabled"

    def test_source_error(self, store, settings):
        """Test API failures are reported, not raised."""
        helpdesk = FakeClient(error=SourceAPIError("HTTP error: 503", status_code=503))
        svc = service(store, settings, helpdesk=helpdesk)
        status = svc.registry.get_status(svc.run("helpdesk"))
        assert status.state is JobState.FAILED
        assert status.message == "Source error during helpdesk sync: HTTP error: 503"

    def test_unexpected_error(self, store, settings):
        """Test unexpected exceptions are contained."""
        helpdesk = FakeClient(error=KeyError("boom"))
        svc = service(store, settings, helpdesk=helpdesk)
        status = svc.registry.get_status(svc.run("helpdesk"))
        assert status.state is JobState.FAILED
        assert status.message.startswith("Unexpected error:")

    def test_unknown_kind(self, store, settings):
        """Test an unknown kind fails the job."""
        svc = service(store, settings)
        status = svc.registry.get_status(svc.run("fax"))
        assert status.message == "Unknown sync kind 'fax'"

    def test_cancelled_between_records(self, store, settings):
        """Test a cancelled job stops and says so."""
        cancel = threading.Event()
        cancel.set()
        helpdesk = FakeClient([make_record("1"), make_record("2")])
        svc = service(store, settings, helpdesk=helpdesk)
        status = svc.registry.get_status(svc.run("helpdesk", cancel))
        assert status.state is JobState.FAILED
        assert status.message.startswith("Cancelled:")
        assert store.list_requests() == []


class TestOtherKinds:
    """Tests for orphan, escalation, sprint board and full syncs."""

    def test_orphans(self, store, settings):
        """Test the orphan sweep runs through a job."""
        desk = FakeClient(awaiting=[make_record("70", status_code=18, title="Core Switch down")])
        svc = service(store, settings, service_desk=desk)
        status = svc.registry.get_status(svc.run(KIND_ORPHANS))
        assert status.state is JobState.COMPLETED
        assert store.get_orphan("70").team == "Core Switching"

    def test_orphans_without_tracker(self, store, settings):
        """Test the sweep still runs when the tracker is off."""
        desk = FakeClient(awaiting=[make_record("71", status_code=18)])
        svc = service(store, settings, app_config(tracker=False), service_desk=desk)
        assert svc.registry.get_status(svc.run(KIND_ORPHANS)).state is JobState.COMPLETED

    def test_escalations(self, store, settings):
        """Test escalation derivation reports its count."""
        desk = FakeClient([
            make_record("80", group_name="Contact Center Queue", updated_at=T0),
            make_record("80", status_code=18, updated_at=T0 + timedelta(hours=1)),
        ])
        svc = service(store, settings, service_desk=desk)
        svc.run("service_desk")
        status = svc.registry.get_status(svc.run(KIND_ESCALATIONS))
        assert status.message == "1 new escalations"

    def test_sprint_board(self, store, settings):
        """Test configured boards are refreshed."""
        tracker = FakeTrackerClient({
            "SKP-1": TrackerIssue(key="SKP-1", summary="Retry", status="To Do"),
            "CASP-2": TrackerIssue(key="CASP-2"),
        })
        svc = service(store, settings, tracker=tracker)
        status = svc.registry.get_status(svc.run(KIND_SPRINT_BOARD))
        assert status.message == "1 sprint board tickets stored"
        [ticket] = store.list_sprint_board("Collections")
        assert (ticket.tracker_key, ticket.board_type) == ("SKP-1", "scrum")

    def test_all_skips_disabled_and_survives_failures(self, store, settings):
        """Test the full pipeline keeps going past a failing step."""
        helpdesk = FakeClient(error=SourceAPIError("down"))
        svc = service(store, settings, app_config(tracker=False), helpdesk=helpdesk)
        status = svc.registry.get_status(svc.run(KIND_ALL))

        assert status.state is JobState.COMPLETED
        assert "helpdesk: failed (down)" in status.message
        assert "tracker: disabled" in status.message
        assert "escalations: 0 new escalations" in status.message

    def test_all_cancelled(self, store, settings):
        """Test cancellation stops the full pipeline."""
        cancel = threading.Event()
        cancel.set()
        svc = service(store, settings)
        status = svc.registry.get_status(svc.run(KIND_ALL, cancel))
        assert status.message.startswith("Cancelled:")
