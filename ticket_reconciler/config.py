"""
Configuration module for the Ticket Reconciler.

Handles all configuration through environment variables with secure defaults.
Never stores credentials directly in code. The categorization tables (group
mappings, escalation keywords, project-to-team mapping) are read from a YAML
file so operations can change them without a release.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import Source, SupportLevel, TicketStatus


# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Required configuration is missing or invalid."""
    pass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class HelpdeskConfig:
    """Configuration for the first-line helpdesk (Freshdesk API v2)."""

    enabled: bool = field(default_factory=lambda: _env_flag("HELPDESK_ENABLED"))
    domain: str = field(default_factory=lambda: os.getenv("HELPDESK_DOMAIN", ""))
    api_key: str = field(default_factory=lambda: os.getenv("HELPDESK_API_KEY", ""))

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}/api/v2"


@dataclass(frozen=True)
class ServiceDeskConfig:
    """Configuration for the mid-tier service desk (Freshservice API v2)."""

    enabled: bool = field(default_factory=lambda: _env_flag("SERVICE_DESK_ENABLED"))
    domain: str = field(default_factory=lambda: os.getenv("SERVICE_DESK_DOMAIN", ""))
    api_key: str = field(default_factory=lambda: os.getenv("SERVICE_DESK_API_KEY", ""))

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}/api/v2"


@dataclass(frozen=True)
class TrackerConfig:
    """Configuration for the engineering issue tracker (Jira REST API v3)."""

    enabled: bool = field(default_factory=lambda: _env_flag("TRACKER_ENABLED"))
    base_url: str = field(default_factory=lambda: os.getenv("TRACKER_BASE_URL", ""))
    api_token: str = field(default_factory=lambda: os.getenv("TRACKER_API_TOKEN", ""))
    email: str = field(default_factory=lambda: os.getenv("TRACKER_EMAIL", ""))

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/rest/api/3"


@dataclass(frozen=True)
class HTTPConfig:
    """Shared HTTP behaviour for all source adapters."""

    # Request timeout in seconds
    request_timeout: int = field(
        default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT", "30"))
    )
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("HTTP_MAX_RETRIES", "3"))
    )
    # Used when a 429 response carries no Retry-After header
    default_retry_after: float = field(
        default_factory=lambda: float(os.getenv("DEFAULT_RETRY_AFTER", "60"))
    )
    page_size: int = field(
        default_factory=lambda: int(os.getenv("PAGE_SIZE", "100"))
    )
    max_pages: int = field(
        default_factory=lambda: int(os.getenv("MAX_PAGES", "100"))
    )


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the canonical store."""

    url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./ticket_reconciler.db")
    )
    echo: bool = field(default_factory=lambda: _env_flag("DATABASE_ECHO"))


@dataclass(frozen=True)
class SchedulerConfig:
    """Configuration for the recurring background sync."""

    interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("SYNC_INTERVAL_SECONDS", "3600"))
    )
    sync_on_startup: bool = field(
        default_factory=lambda: _env_flag("SYNC_ON_STARTUP", "true")
    )


@dataclass(frozen=True)
class OutputConfig:
    """Configuration for exported reports."""

    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("OUTPUT_DIR", "./output"))
    )
    report_filename: str = field(
        default_factory=lambda: os.getenv("REPORT_FILENAME", "escalation_ledger.xlsx")
    )

    @property
    def report_path(self) -> Path:
        """Get full path to the report file."""
        return self.output_dir / self.report_filename


# =============================================================================
# Categorization tables
# =============================================================================

DEFAULT_AWAITING_ESCALATION_KEYWORDS = [
    str(int(TicketStatus.AWAITING_ESCALATION)),
    "Awaiting L4",
    "Awaiting Escalation",
    "AwaitingEngineering",
    "Awaiting Engineering",
]

# Exact keys, or "PREFIX-*" to reject every key with that prefix
DEFAULT_LINKAGE_DENYLIST = [
    "UTF-*", "TLS-*", "ISO-*", "CVE-*", "SHA-*",
    "SSL-3", "MD5-1", "RCE-1", "API-9",
]


class CategorizationSettings(BaseModel):
    """
    Externally supplied tables consumed by categorization and linkage.

    Attributes:
        group_levels: Exact service-desk group name -> support level
        awaiting_escalation_keywords: Status codes/labels that mean "handed to engineering"
        corroborating_statuses: Request statuses that corroborate an L4 escalation
        project_teams: Tracker project prefix -> owning team
        project_names: Tracker project display name -> owning team
        linkage_field: Custom field holding an explicit tracker key
        linkage_denylist: Keys or prefixes that look like tracker keys but are not
        team_aliases: Legacy team names -> canonical team names
        sprint_boards: Team -> tracker project key of its sprint board
    """

    group_levels: dict[str, SupportLevel] = Field(default_factory=dict)
    awaiting_escalation_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_AWAITING_ESCALATION_KEYWORDS)
    )
    corroborating_statuses: list[int] = Field(
        default_factory=lambda: [
            int(TicketStatus.AWAITING_ESCALATION),
            int(TicketStatus.RESOLVED),
            int(TicketStatus.CLOSED),
        ]
    )
    project_teams: dict[str, str] = Field(default_factory=dict)
    project_names: dict[str, str] = Field(default_factory=dict)
    linkage_field: Optional[str] = None
    linkage_denylist: list[str] = Field(
        default_factory=lambda: list(DEFAULT_LINKAGE_DENYLIST)
    )
    team_aliases: dict[str, str] = Field(default_factory=dict)
    sprint_boards: dict[str, str] = Field(default_factory=dict)

    @property
    def project_prefixes(self) -> set[str]:
        return {prefix.upper() for prefix in self.project_teams}

    def team_for_prefix(self, prefix: Optional[str]) -> Optional[str]:
        """Owning team for a tracker project prefix (case-insensitive)."""
        if not prefix:
            return None
        wanted = prefix.upper()
        for key, team in self.project_teams.items():
            if key.upper() == wanted:
                return team
        return None

    def canonical_team(self, team: Optional[str]) -> Optional[str]:
        """Apply the alias table to a team name (case-insensitive)."""
        if team is None:
            return None
        trimmed = team.strip()
        for alias, canonical in self.team_aliases.items():
            if alias.strip().lower() == trimmed.lower():
                return canonical
        return trimmed


def _parse_group_levels(raw: Any) -> dict[str, SupportLevel]:
    levels: dict[str, SupportLevel] = {}
    if not isinstance(raw, dict):
        return levels
    for group, value in raw.items():
        level = SupportLevel.parse(value)
        if level is None:
            logger.warning(f"Skipping group mapping '{group}': unknown level '{value}'")
            continue
        levels[str(group).strip()] = level
    return levels


def _parse_str_map(raw: Any, section: str) -> dict[str, str]:
    result: dict[str, str] = {}
    if raw is None:
        return result
    if not isinstance(raw, dict):
        logger.warning(f"Section '{section}' is not a mapping, ignoring it")
        return result
    for key, value in raw.items():
        if value is None or not str(value).strip():
            logger.warning(f"Skipping empty entry '{key}' in '{section}'")
            continue
        result[str(key).strip()] = str(value).strip()
    return result


def parse_categorization(content: str) -> CategorizationSettings:
    """
    Parse YAML content into CategorizationSettings.

    Missing sections keep their defaults and malformed entries are skipped
    with a warning, so a partially broken file still yields usable tables.

    Args:
        content: Raw YAML text.

    Returns:
        Parsed settings.
    """
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        logger.warning("Categorization config is not a mapping, using defaults")
        return CategorizationSettings()

    # Accept both a top-level document and one nested under "categorization"
    if isinstance(data.get("categorization"), dict):
        data = data["categorization"]

    settings: dict[str, Any] = {
        "group_levels": _parse_group_levels(data.get("group_levels")),
        "project_teams": _parse_str_map(data.get("project_teams"), "project_teams"),
        "project_names": _parse_str_map(data.get("project_names"), "project_names"),
        "team_aliases": _parse_str_map(data.get("team_aliases"), "team_aliases"),
        "sprint_boards": _parse_str_map(data.get("sprint_boards"), "sprint_boards"),
    }

    keywords = data.get("awaiting_escalation_keywords")
    if isinstance(keywords, list) and keywords:
        settings["awaiting_escalation_keywords"] = [str(k).strip() for k in keywords if str(k).strip()]

    statuses = data.get("corroborating_statuses")
    if isinstance(statuses, list) and statuses:
        parsed_statuses = []
        for status in statuses:
            try:
                parsed_statuses.append(int(status))
            except (TypeError, ValueError):
                logger.warning(f"Skipping non-numeric corroborating status '{status}'")
        if parsed_statuses:
            settings["corroborating_statuses"] = parsed_statuses

    denylist = data.get("linkage_denylist")
    if isinstance(denylist, list) and denylist:
        settings["linkage_denylist"] = [str(d).strip() for d in denylist if str(d).strip()]

    linkage_field = data.get("linkage_field")
    if linkage_field:
        settings["linkage_field"] = str(linkage_field).strip()

    return CategorizationSettings(**settings)


def load_categorization(path: Optional[Path]) -> CategorizationSettings:
    """
    Load categorization tables from a YAML file.

    Args:
        path: File location; None or a missing file yields the defaults.

    Returns:
        Parsed settings.
    """
    if path is None or not path.exists():
        logger.warning(f"Categorization config not found at {path}, using defaults")
        return CategorizationSettings()
    try:
        settings = parse_categorization(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid categorization YAML in {path}: {e}") from e
    logger.info(
        f"Loaded categorization config: {len(settings.group_levels)} group mappings, "
        f"{len(settings.project_teams)} project prefixes"
    )
    return settings


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration aggregating all config sections."""

    helpdesk: HelpdeskConfig = field(default_factory=HelpdeskConfig)
    service_desk: ServiceDeskConfig = field(default_factory=ServiceDeskConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # Logging level
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )

    categorization_path: Path = field(
        default_factory=lambda: Path(os.getenv("CATEGORIZATION_CONFIG", "./categorization.yaml"))
    )

    def source_enabled(self, source: Source) -> bool:
        """Whether the sync for a source is switched on."""
        return {
            Source.HELPDESK: self.helpdesk.enabled,
            Source.SERVICE_DESK: self.service_desk.enabled,
            Source.TRACKER: self.tracker.enabled,
        }[source]

    def source_errors(self, source: Source) -> list[str]:
        """
        Validate the settings one source needs.

        Kept per source so a missing credential fails only that source's sync.

        Args:
            source: The source to check.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []
        if source is Source.HELPDESK:
            if not self.helpdesk.domain:
                errors.append("HELPDESK_DOMAIN is required")
            if not self.helpdesk.api_key:
                errors.append("HELPDESK_API_KEY is required")
        elif source is Source.SERVICE_DESK:
            if not self.service_desk.domain:
                errors.append("SERVICE_DESK_DOMAIN is required")
            if not self.service_desk.api_key:
                errors.append("SERVICE_DESK_API_KEY is required")
        elif source is Source.TRACKER:
            if not self.tracker.base_url:
                errors.append("TRACKER_BASE_URL is required")
            if not self.tracker.api_token:
                errors.append("TRACKER_API_TOKEN is required")
            if not self.tracker.email:
                # Basic auth pairs the token with the account email
                errors.append("TRACKER_EMAIL is required")
        return errors

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.

        Only enabled sources are checked.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        if not self.database.url:
            errors.append("DATABASE_URL is required")

        for source in Source:
            if self.source_enabled(source):
                errors.extend(self.source_errors(source))

        if self.scheduler.interval_seconds <= 0:
            errors.append("SYNC_INTERVAL_SECONDS must be positive")

        return errors

    def load_categorization(self) -> CategorizationSettings:
        """Load the categorization tables this config points at."""
        return load_categorization(self.categorization_path)


def get_config() -> AppConfig:
    """
    Get application configuration.

    Returns:
        AppConfig instance with all settings loaded from environment.
    """
    return AppConfig()
