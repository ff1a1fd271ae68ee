"""Shared fixtures for the test suite."""

from datetime import datetime, timezone
from typing import Optional

import pytest

from ticket_reconciler.config import CategorizationSettings
from ticket_reconciler.models import NormalizedRecord, SupportLevel, TrackerIssue
from ticket_reconciler.store import Store


@pytest.fixture
def store():
    """Fresh in-memory SQLite store."""
    store = Store("sqlite://")
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def settings():
    """Categorization tables resembling a production setup."""
    return CategorizationSettings(
        group_levels={
            "Contact Center Queue": SupportLevel.L1,
            "Service Owners": SupportLevel.L2,
            "Engineering Escalations": SupportLevel.L4,
        },
        project_teams={
            "SKP": "Collections",
            "CASP": "Core Switching",
            "IR": "Data & Identity",
        },
        project_names={
            "Collections Portal": "Collections",
            "Core Switch": "Core Switching",
        },
        linkage_field="cf_jira_key",
        team_aliases={"Data&Identity": "Data & Identity"},
        sprint_boards={"Collections": "SKP"},
    )


def make_record(
    external_id: str = "100",
    group_name: Optional[str] = None,
    status_code: int = 2,
    status_text: Optional[str] = None,
    updated_at: Optional[datetime] = None,
    **fields,
) -> NormalizedRecord:
    """Build a NormalizedRecord with sensible defaults."""
    moment = updated_at or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
    return NormalizedRecord(
        external_id=external_id,
        title=fields.pop("title", f"Ticket {external_id}"),
        group_name=group_name,
        status_code=status_code,
        status_text=status_text,
        created_at=fields.pop("created_at", moment),
        updated_at=moment,
        **fields,
    )


class FakeTracker:
    """In-memory stand-in for the tracker client."""

    def __init__(self, issues: Optional[dict[str, TrackerIssue]] = None, search_results=None):
        self.issues = issues or {}
        self.search_results = search_results or {}
        self.lookups: list[str] = []
        self.searches: list[str] = []

    def lookup_issue(self, key: str) -> Optional[TrackerIssue]:
        self.lookups.append(key)
        return self.issues.get(key)

    def search_text(self, text: str) -> list[TrackerIssue]:
        self.searches.append(text)
        return self.search_results.get(text, [])

    def active_sprint(self, project_key: str) -> list[TrackerIssue]:
        return [issue for issue in self.issues.values() if issue.project_prefix == project_key]
