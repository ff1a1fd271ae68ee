"""
Categorization engine for the Ticket Reconciler.

Assigns a support level (L1-L4) and an owning team to every ticket from the
ticket's source, its service-desk group and its status. The rules are an
ordered list of small functions; the first one returning a result wins.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .config import CategorizationSettings
from .models import Categorization, Source, SupportLevel


logger = logging.getLogger(__name__)


TEAM_CONTACT_CENTER = "Contact Center"
TEAM_SERVICE_OWNERS = "Service Owners"
TEAM_APP_SUPPORT = "App Support"
TEAM_DEVELOPERS = "Developers"

TEAM_BY_LEVEL: dict[SupportLevel, str] = {
    SupportLevel.L1: TEAM_CONTACT_CENTER,
    SupportLevel.L2: TEAM_SERVICE_OWNERS,
    SupportLevel.L3: TEAM_APP_SUPPORT,
    SupportLevel.L4: TEAM_DEVELOPERS,
}

# Group-name fragments that mark a technical (L3) queue
TECHNICAL_GROUP_KEYWORDS = (
    "app", "software", "dev", "database", "db", "network", "hardware",
    "compute", "storage", "system", "sysadmin", "vpn", "infosec",
    "security", "implementation", "certification", "technical",
    "engineer", "it ",
)

# Group-name fragments that mark a first-line (L1) queue
FIRST_LINE_GROUP_KEYWORDS = (
    "helpdesk", "help desk", "contact center", "first line", "1st line",
)


@dataclass(frozen=True)
class CategorizationInput:
    """Everything a categorization rule may look at."""

    source: Source
    group_name: Optional[str] = None
    status: Optional[str] = None
    linkage_ref: Optional[str] = None

    @property
    def group(self) -> str:
        return (self.group_name or "").strip().lower()


Rule = Callable[[CategorizationInput, CategorizationSettings], Optional[Categorization]]


def _for_level(level: SupportLevel) -> Categorization:
    return Categorization(level=level, team=TEAM_BY_LEVEL[level])


def is_awaiting_escalation(status: Optional[str], keywords: list[str]) -> bool:
    """
    Check whether a status means "handed to engineering".

    Numeric keywords must match the status exactly; text keywords match as a
    case-insensitive substring of the status label.
    """
    if not status:
        return False
    status_clean = status.strip()
    status_lower = status_clean.lower()
    for keyword in keywords:
        if keyword.isdigit():
            if status_clean == keyword:
                return True
        elif keyword.lower() in status_lower:
            return True
    return False


def helpdesk_rule(item: CategorizationInput, settings: CategorizationSettings) -> Optional[Categorization]:
    if item.source is Source.HELPDESK:
        return _for_level(SupportLevel.L1)
    return None


def tracker_rule(item: CategorizationInput, settings: CategorizationSettings) -> Optional[Categorization]:
    if item.source is Source.TRACKER:
        return _for_level(SupportLevel.L4)
    return None


def awaiting_escalation_rule(item: CategorizationInput, settings: CategorizationSettings) -> Optional[Categorization]:
    if item.source is not Source.SERVICE_DESK:
        return None
    if is_awaiting_escalation(item.status, settings.awaiting_escalation_keywords):
        return _for_level(SupportLevel.L4)
    return None


def group_mapping_rule(item: CategorizationInput, settings: CategorizationSettings) -> Optional[Categorization]:
    """Exact group-name lookup. The service desk never assigns L4 by group alone."""
    if item.source is not Source.SERVICE_DESK or not item.group:
        return None
    for group, level in settings.group_levels.items():
        if group.strip().lower() == item.group:
            if level is SupportLevel.L4:
                logger.debug(f"Clamping L4 group mapping for '{item.group_name}' to L3")
                level = SupportLevel.L3
            return _for_level(level)
    return None


def technical_keyword_rule(item: CategorizationInput, settings: CategorizationSettings) -> Optional[Categorization]:
    if item.source is not Source.SERVICE_DESK or not item.group:
        return None
    # Pad so that "it " also matches a group that ends in "IT"
    padded = f"{item.group} "
    if any(keyword in padded for keyword in TECHNICAL_GROUP_KEYWORDS):
        return _for_level(SupportLevel.L3)
    return None


def first_line_keyword_rule(item: CategorizationInput, settings: CategorizationSettings) -> Optional[Categorization]:
    if item.source is not Source.SERVICE_DESK or not item.group:
        return None
    if any(keyword in item.group for keyword in FIRST_LINE_GROUP_KEYWORDS):
        return _for_level(SupportLevel.L1)
    return None


DEFAULT_RULES: list[Rule] = [
    helpdesk_rule,
    tracker_rule,
    awaiting_escalation_rule,
    group_mapping_rule,
    technical_keyword_rule,
    first_line_keyword_rule,
]


class Categorizer:
    """
    Ordered rule cascade producing (level, team) for a ticket.

    Anything no rule claims falls back to L2 / Service Owners.
    """

    FALLBACK = Categorization(level=SupportLevel.L2, team=TEAM_SERVICE_OWNERS)

    def __init__(
        self,
        settings: Optional[CategorizationSettings] = None,
        rules: Optional[list[Rule]] = None,
    ):
        self._settings = settings or CategorizationSettings()
        self._rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    @property
    def settings(self) -> CategorizationSettings:
        return self._settings

    def categorize(
        self,
        source: Source,
        group_name: Optional[str] = None,
        status: Optional[str] = None,
        linkage_ref: Optional[str] = None,
    ) -> Categorization:
        """
        Categorize one ticket.

        Args:
            source: System the ticket came from.
            group_name: Service-desk group or queue, if any.
            status: Status label or numeric code as text.
            linkage_ref: Tracker reference, if already known. Accepted for
                callers' convenience; no rule currently depends on it.

        Returns:
            The first matching rule's Categorization, else the L2 fallback.
        """
        item = CategorizationInput(
            source=source,
            group_name=group_name,
            status=status,
            linkage_ref=linkage_ref,
        )
        for rule in self._rules:
            result = rule(item, self._settings)
            if result is not None:
                return result
        return self.FALLBACK


def categorize(
    source: Source,
    group_name: Optional[str] = None,
    status: Optional[str] = None,
    linkage_ref: Optional[str] = None,
    settings: Optional[CategorizationSettings] = None,
) -> Categorization:
    """Convenience wrapper around Categorizer with default rules."""
    return Categorizer(settings).categorize(source, group_name, status, linkage_ref)
