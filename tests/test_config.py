"""Tests for configuration module."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from ticket_reconciler.config import (
    AppConfig,
    CategorizationSettings,
    ConfigurationError,
    DatabaseConfig,
    HelpdeskConfig,
    HTTPConfig,
    OutputConfig,
    SchedulerConfig,
    ServiceDeskConfig,
    TrackerConfig,
    load_categorization,
    parse_categorization,
)
from ticket_reconciler.models import Source, SupportLevel


class TestSourceConfigs:
    """Tests for the per-source configuration sections."""

    def test_helpdesk_defaults(self):
        """Test helpdesk is disabled without environment."""
        with patch.dict(os.environ, {}, clear=True):
            config = HelpdeskConfig()
            assert config.enabled is False
            assert config.domain == ""

    def test_helpdesk_env_override(self):
        """Test environment variable override."""
        env = {"HELPDESK_ENABLED": "true", "HELPDESK_DOMAIN": "acme.freshdesk.com"}
        with patch.dict(os.environ, env, clear=True):
            config = HelpdeskConfig()
            assert config.enabled is True
            assert config.base_url == "https://acme.freshdesk.com/api/v2"

    def test_service_desk_base_url(self):
        """Test service desk API root."""
        config = ServiceDeskConfig(enabled=True, domain="acme.freshservice.com", api_key="k")
        assert config.base_url == "https://acme.freshservice.com/api/v2"

    def test_tracker_api_url_strips_slash(self):
        """Test tracker API root tolerates a trailing slash."""
        config = TrackerConfig(enabled=True, base_url="https://acme.atlassian.net/", api_token="t")
        assert config.api_url == "https://acme.atlassian.net/rest/api/3"


class TestAmbientConfigs:
    """Tests for HTTP, database, scheduler and output settings."""

    def test_http_defaults(self):
        """Test default HTTP behaviour."""
        with patch.dict(os.environ, {}, clear=True):
            config = HTTPConfig()
            assert config.request_timeout == 30
            assert config.max_retries == 3
            assert config.page_size == 100

    def test_database_default_url(self):
        """Test default SQLite database."""
        with patch.dict(os.environ, {}, clear=True):
            assert DatabaseConfig().url.startswith("sqlite:///")

    def test_scheduler_interval_env(self):
        """Test sync interval override."""
        with patch.dict(os.environ, {"SYNC_INTERVAL_SECONDS": "900"}, clear=True):
            config = SchedulerConfig()
            assert config.interval_seconds == 900
            assert config.sync_on_startup is True

    def test_report_path(self):
        """Test report path property."""
        config = OutputConfig(output_dir=Path("out"), report_filename="ledger.xlsx")
        assert config.report_path == Path("out") / "ledger.xlsx"


class TestAppConfig:
    """Tests for AppConfig."""

    def test_disabled_sources_are_not_validated(self):
        """Test validation skips sources that are switched off."""
        config = AppConfig(
            helpdesk=HelpdeskConfig(enabled=False, domain="", api_key=""),
            service_desk=ServiceDeskConfig(enabled=False, domain="", api_key=""),
            tracker=TrackerConfig(enabled=False, base_url="", api_token="", email=""),
            database=DatabaseConfig(url="sqlite://", echo=False),
            scheduler=SchedulerConfig(interval_seconds=60, sync_on_startup=False),
        )
        assert config.validate() == []

    def test_validate_missing_credentials(self):
        """Test validation catches missing credentials for enabled sources."""
        config = AppConfig(
            helpdesk=HelpdeskConfig(enabled=True, domain="", api_key=""),
            service_desk=ServiceDeskConfig(enabled=False, domain="", api_key=""),
            tracker=TrackerConfig(enabled=True, base_url="https://x", api_token="", email=""),
            database=DatabaseConfig(url="sqlite://", echo=False),
            scheduler=SchedulerConfig(interval_seconds=60, sync_on_startup=False),
        )
        errors = config.validate()
        assert "HELPDESK_DOMAIN is required" in errors
        assert "HELPDESK_API_KEY is required" in errors
        assert "TRACKER_API_TOKEN is required" in errors
        assert not any("SERVICE_DESK" in e for e in errors)

    def test_source_errors_per_source(self):
        """Test one source can be checked on its own."""
        config = AppConfig(
            service_desk=ServiceDeskConfig(enabled=True, domain="d", api_key="k"),
        )
        assert config.source_errors(Source.SERVICE_DESK) == []
        assert config.source_enabled(Source.SERVICE_DESK) is True

    def test_tracker_requires_email(self):
        """Test the tracker account email is required alongside the token."""
        config = AppConfig(
            tracker=TrackerConfig(enabled=True, base_url="https://x", api_token="t", email=""),
        )
        assert config.source_errors(Source.TRACKER) == ["TRACKER_EMAIL is required"]

        complete = AppConfig(
            tracker=TrackerConfig(enabled=True, base_url="https://x", api_token="t", email="bot@acme.test"),
        )
        assert complete.source_errors(Source.TRACKER) == []

    def test_non_positive_interval(self):
        """Test a zero interval is rejected."""
        config = AppConfig(
            helpdesk=HelpdeskConfig(enabled=False, domain="", api_key=""),
            service_desk=ServiceDeskConfig(enabled=False, domain="", api_key=""),
            tracker=TrackerConfig(enabled=False, base_url="", api_token="", email=""),
            scheduler=SchedulerConfig(interval_seconds=0, sync_on_startup=False),
        )
        assert "SYNC_INTERVAL_SECONDS must be positive" in config.validate()


class TestCategorizationSettings:
    """Tests for the categorization tables."""

    def test_defaults(self):
        """Test defaults carry the escalation keywords and denylist."""
        settings = CategorizationSettings()
        assert "Awaiting L4" in settings.awaiting_escalation_keywords
        assert "UTF-*" in settings.linkage_denylist
        assert settings.corroborating_statuses == [18, 4, 5]

    def test_team_for_prefix_case_insensitive(self, settings):
        """Test prefix lookup ignores case."""
        assert settings.team_for_prefix("skp") == "Collections"
        assert settings.team_for_prefix("NOPE") is None
        assert settings.team_for_prefix(None) is None

    def test_project_prefixes_uppercased(self):
        """Test prefix set is uppercase."""
        settings = CategorizationSettings(project_teams={"skp": "Collections"})
        assert settings.project_prefixes == {"SKP"}

    def test_canonical_team_alias(self, settings):
        """Test legacy team names map to canonical names."""
        assert settings.canonical_team(" data&identity ") == "Data & Identity"
        assert settings.canonical_team("Collections") == "Collections"
        assert settings.canonical_team(None) is None


class TestParseCategorization:
    """Tests for parsing the YAML categorization file."""

    def test_parse_full_document(self):
        """Test every section is read."""
        content = """
group_levels:
  Contact Center Queue: l1
  Engineering Queue: L4
project_teams:
  SKP: Collections
linkage_field: cf_jira_key
corroborating_statuses: [18, 5]
"""
        settings = parse_categorization(content)
        assert settings.group_levels == {
            "Contact Center Queue": SupportLevel.L1,
            "Engineering Queue": SupportLevel.L4,
        }
        assert settings.project_teams == {"SKP": "Collections"}
        assert settings.linkage_field == "cf_jira_key"
        assert settings.corroborating_statuses == [18, 5]

    def test_nested_under_categorization_key(self):
        """Test a document nested under 'categorization' is accepted."""
        settings = parse_categorization("categorization:\n  project_teams:\n    IR: Identity\n")
        assert settings.project_teams == {"IR": "Identity"}

    def test_bad_entries_skipped(self):
        """Test malformed entries are skipped rather than failing the file."""
        content = """
group_levels:
  Good Queue: L2
  Bad Queue: L9
project_teams:
  SKP: ""
corroborating_statuses: [18, nope]
"""
        settings = parse_categorization(content)
        assert settings.group_levels == {"Good Queue": SupportLevel.L2}
        assert settings.project_teams == {}
        assert settings.corroborating_statuses == [18]

    def test_empty_document_uses_defaults(self):
        """Test an empty file yields the defaults."""
        assert parse_categorization("") == CategorizationSettings()


class TestLoadCategorization:
    """Tests for loading the categorization file from disk."""

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing file is not an error."""
        assert load_categorization(tmp_path / "absent.yaml") == CategorizationSettings()

    def test_none_path_uses_defaults(self):
        """Test no path yields the defaults."""
        assert load_categorization(None) == CategorizationSettings()

    def test_invalid_yaml_raises(self, tmp_path):
        """Test invalid YAML is a configuration error."""
        path = tmp_path / "categorization.yaml"
        path.write_text("group_levels: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_categorization(path)

    def test_reads_file(self, tmp_path):
        """Test a valid file is loaded."""
        path = tmp_path / "categorization.yaml"
        path.write_text("project_teams:\n  CASP: Core Switching\n", encoding="utf-8")
        assert load_categorization(path).team_for_prefix("casp") == "Core Switching"
