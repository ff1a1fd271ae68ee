"""Tests for the command-line interface."""

import os
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from ticket_reconciler.main import _parse_date, main
from ticket_reconciler.models import CanonicalRequest, Escalation, OrphanIncident, Source, SupportLevel
from ticket_reconciler.store import Store


@pytest.fixture
def env(tmp_path):
    """Environment pointing at a throwaway database with every source off."""
    values = {
        "DATABASE_URL": f"sqlite:///{tmp_path / 'reconciler.db'}",
        "CATEGORIZATION_CONFIG": str(tmp_path / "categorization.yaml"),
        "OUTPUT_DIR": str(tmp_path / "output"),
        "LOG_LEVEL": "WARNING",
    }
    with patch.dict(os.environ, values, clear=True):
        yield values


@pytest.fixture
def runner():
    return CliRunner()


def seed_orphan(env, **fields) -> int:
    store = Store(env["DATABASE_URL"])
    store.create_all()
    orphan = store.save_orphan(OrphanIncident(**fields))
    store.dispose()
    return orphan.id


def seed_escalation(env, occurred_at: datetime) -> None:
    store = Store(env["DATABASE_URL"])
    store.create_all()
    _, request = store.upsert_request(
        CanonicalRequest(
            external_id="FD-100",
            source=Source.SERVICE_DESK,
            support_level=SupportLevel.L4,
            status=18,
            updated_at=occurred_at,
        ),
        lambda prior, incoming: incoming,
    )
    store.add_escalation(Escalation(
        request_id=request.id,
        external_id="FD-100",
        from_level=SupportLevel.L3,
        to_level=SupportLevel.L4,
        occurred_at=occurred_at,
    ))
    store.dispose()


class TestValidateOnly:
    """Tests for --validate-only."""

    def test_valid(self, runner, env):
        """Test a config with every source disabled validates."""
        result = runner.invoke(main, ["--validate-only"])
        assert result.exit_code == 0

    def test_missing_credentials(self, runner, env):
        """Test an enabled source without credentials fails validation."""
        with patch.dict(os.environ, {"HELPDESK_ENABLED": "true"}):
            result = runner.invoke(main, ["--validate-only"])
        assert result.exit_code == 1


class TestSyncCommands:
    """Tests for sync commands."""

    def test_disabled_source_fails(self, runner, env):
        """Test syncing a disabled source exits non-zero with the reason."""
        result = runner.invoke(main, ["sync", "--kind", "helpdesk"])
        assert result.exit_code == 1
        assert "[failed] Configuration error: helpdesk sync is disabled" in result.output

    def test_derive_escalations(self, runner, env):
        """Test derivation on an empty store."""
        result = runner.invoke(main, ["derive-escalations"])
        assert result.exit_code == 0
        assert "[completed] 0 new escalations" in result.output

    def test_unknown_kind_rejected(self, runner, env):
        """Test click rejects unknown sync kinds."""
        result = runner.invoke(main, ["sync", "--kind", "fax"])
        assert result.exit_code == 2


class TestOrphanCommands:
    """Tests for the orphans command group."""

    def test_list(self, runner, env):
        """Test listing open items."""
        seed_orphan(env, external_id="900", team="Collections", title="Refund stuck")
        result = runner.invoke(main, ["orphans", "list"])
        assert result.exit_code == 0
        assert "Refund stuck" in result.output
        assert "1 open L4 items" in result.output

    def test_set_team(self, runner, env):
        """Test setting a team by hand."""
        orphan_id = seed_orphan(env, external_id="901")
        result = runner.invoke(main, ["orphans", "set-team", str(orphan_id), "Core Switching"])
        assert result.exit_code == 0
        assert "901 now owned by Core Switching" in result.output

    def test_set_team_missing(self, runner, env):
        """Test an unknown id exits non-zero."""
        result = runner.invoke(main, ["orphans", "set-team", "404", "Core Switching"])
        assert result.exit_code == 1

    def test_reassign(self, runner, env):
        """Test reassignment to a lower level."""
        orphan_id = seed_orphan(env, external_id="902")
        result = runner.invoke(main, ["orphans", "reassign", str(orphan_id), "L2"])
        assert result.exit_code == 0
        store = Store(env["DATABASE_URL"])
        assert store.get_orphan("902").reassigned_to_level is SupportLevel.L2
        store.dispose()

    def test_reassign_to_l4_rejected(self, runner, env):
        """Test L4 is not a reassignment target."""
        result = runner.invoke(main, ["orphans", "reassign", "1", "L4"])
        assert result.exit_code == 2


class TestExport:
    """Tests for export-escalations."""

    def test_export(self, runner, env, tmp_path):
        """Test exporting an empty ledger writes a workbook."""
        target = tmp_path / "ledger.xlsx"
        result = runner.invoke(main, ["export-escalations", "-o", str(target), "--since", "2025-01-01"])
        assert result.exit_code == 0
        assert target.exists()
        assert "0 escalations written to" in result.output

    def test_bad_date(self, runner, env):
        """Test malformed dates are rejected."""
        result = runner.invoke(main, ["export-escalations", "--since", "yesterday"])
        assert result.exit_code == 2

    def test_until_covers_whole_day(self, runner, env, tmp_path):
        """Test a date-only --until includes escalations later that day."""
        seed_escalation(env, datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))
        target = tmp_path / "ledger.xlsx"
        result = runner.invoke(main, ["export-escalations", "-o", str(target), "--until", "2025-03-01"])
        assert result.exit_code == 0
        assert "1 escalations written to" in result.output

    def test_until_excludes_next_day(self, runner, env, tmp_path):
        """Test a date-only --until stops at the end of that day."""
        seed_escalation(env, datetime(2025, 3, 2, 0, 0, tzinfo=timezone.utc))
        target = tmp_path / "ledger.xlsx"
        result = runner.invoke(main, ["export-escalations", "-o", str(target), "--until", "2025-03-01"])
        assert result.exit_code == 0
        assert "0 escalations written to" in result.output


class TestParseDate:
    """Tests for date option parsing."""

    def test_date_bounds(self):
        """Test a bare date starts or ends the day."""
        assert _parse_date("2025-03-01") == datetime(2025, 3, 1)
        assert _parse_date("2025-03-01", end_of_day=True) == datetime(2025, 3, 1, 23, 59, 59, 999999)

    def test_datetime_kept(self):
        """Test an explicit time is used as given."""
        assert _parse_date("2025-03-01T10:30:00", end_of_day=True) == datetime(2025, 3, 1, 10, 30)

    def test_none(self):
        assert _parse_date(None) is None
