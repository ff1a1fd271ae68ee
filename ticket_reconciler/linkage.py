"""
Linkage resolver for the Ticket Reconciler.

Finds the engineering-tracker item a service-desk ticket refers to. Five
strategies run in order and the first verified hit wins:

1. designated custom field
2. subject and description
3. conversation thread (fetched only if the first two found nothing)
4. tracker full-text search for the ticket id
5. fuzzy match of the title against known project names

Every key found in text is looked up in the tracker before it is accepted;
keys that look right but do not exist are dropped and the cascade continues.
"""

import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Callable, Optional

from .adapters import SourceError
from .config import CategorizationSettings
from .models import LinkageResult, TrackerIssue


logger = logging.getLogger(__name__)


TRACKER_KEY_PATTERN = re.compile(r"\b([A-Z]{2,10}-\d+)\b")

STRATEGY_CUSTOM_FIELD = "custom_field"
STRATEGY_TEXT = "text"
STRATEGY_CONVERSATION = "conversation"
STRATEGY_TRACKER_SEARCH = "tracker_search"
STRATEGY_PROJECT_NAME = "project_name"


def is_denied(key: str, denylist: list[str]) -> bool:
    """Check a candidate key against exact and "PREFIX-*" denylist entries."""
    key_upper = key.upper()
    prefix = key_upper.split("-", 1)[0]
    for entry in denylist:
        entry_upper = entry.strip().upper()
        if entry_upper.endswith("-*"):
            if prefix == entry_upper[:-2]:
                return True
        elif key_upper == entry_upper or prefix == entry_upper:
            return True
    return False


def extract_keys(text: Optional[str], settings: CategorizationSettings) -> list[str]:
    """
    Pull plausible tracker keys out of free text.

    A key is kept only when its project prefix is known and it is not on the
    false-positive denylist. Order of appearance is preserved, duplicates are
    dropped.
    """
    if not text:
        return []
    known_prefixes = settings.project_prefixes
    keys: list[str] = []
    for match in TRACKER_KEY_PATTERN.finditer(text):
        candidate = match.group(1)
        if candidate in keys:
            continue
        if is_denied(candidate, settings.linkage_denylist):
            continue
        if candidate.split("-", 1)[0] not in known_prefixes:
            continue
        keys.append(candidate)
    return keys


@dataclass
class LinkageContext:
    """
    What the resolver knows about one ticket.

    Attributes:
        external_id: Service-desk ticket id, used for tracker text search
        title: Ticket subject
        description: Plain-text body
        custom_fields: Source custom fields
        load_conversations: Returns conversation bodies; called at most once
    """

    external_id: str
    title: str = ""
    description: str = ""
    custom_fields: dict[str, Any] = field(default_factory=dict)
    load_conversations: Optional[Callable[[], list[str]]] = None
    _conversations: Optional[list[str]] = field(default=None, init=False, repr=False)

    def conversations(self) -> list[str]:
        if self._conversations is None:
            if self.load_conversations is None:
                self._conversations = []
            else:
                try:
                    self._conversations = list(self.load_conversations())
                except SourceError as e:
                    logger.warning(f"Could not load conversations for {self.external_id}: {e}")
                    self._conversations = []
        return self._conversations


Strategy = Callable[["LinkageResolver", LinkageContext], Optional[LinkageResult]]


def custom_field_strategy(resolver: "LinkageResolver", context: LinkageContext) -> Optional[LinkageResult]:
    field_name = resolver.settings.linkage_field
    if not field_name:
        return None
    value = context.custom_fields.get(field_name)
    if value is None or not str(value).strip():
        return None
    raw = str(value).strip()
    # The field may hold a bare key or a URL/sentence containing one
    candidates = extract_keys(raw.upper(), resolver.settings)
    return resolver.first_verified(candidates, STRATEGY_CUSTOM_FIELD)


def text_strategy(resolver: "LinkageResolver", context: LinkageContext) -> Optional[LinkageResult]:
    text = f"{context.title} {context.description}"
    return resolver.first_verified(extract_keys(text, resolver.settings), STRATEGY_TEXT)


def conversation_strategy(resolver: "LinkageResolver", context: LinkageContext) -> Optional[LinkageResult]:
    for body in context.conversations():
        result = resolver.first_verified(extract_keys(body, resolver.settings), STRATEGY_CONVERSATION)
        if result is not None:
            return result
    return None


def tracker_search_strategy(resolver: "LinkageResolver", context: LinkageContext) -> Optional[LinkageResult]:
    if resolver.tracker is None or not context.external_id:
        return None
    try:
        issues = resolver.tracker.search_text(context.external_id)
    except SourceError as e:
        logger.warning(f"Tracker search for {context.external_id} failed: {e}")
        return None
    known_prefixes = resolver.settings.project_prefixes
    for issue in issues:
        if issue.project_prefix in known_prefixes:
            return resolver.result_for_issue(issue, STRATEGY_TRACKER_SEARCH)
    return None


def project_name_strategy(resolver: "LinkageResolver", context: LinkageContext) -> Optional[LinkageResult]:
    name = resolver.match_project_name(context.title)
    if name is None:
        return None
    return LinkageResult(
        strategy=STRATEGY_PROJECT_NAME,
        project_name=name,
        team=resolver.settings.project_names[name],
    )


DEFAULT_STRATEGIES: list[Strategy] = [
    custom_field_strategy,
    text_strategy,
    conversation_strategy,
    tracker_search_strategy,
    project_name_strategy,
]


class LinkageResolver:
    """
    Multi-strategy cascade resolving a ticket to a verified tracker item.

    The tracker client only needs ``lookup_issue(key)`` and
    ``search_text(text)``. Without a tracker no key can be verified, so only
    the project-name strategy can succeed.
    """

    # Minimum similarity threshold for fuzzy matching (0.0 - 1.0)
    SIMILARITY_THRESHOLD = 0.7

    def __init__(
        self,
        settings: CategorizationSettings,
        tracker: Optional[Any] = None,
        strategies: Optional[list[Strategy]] = None,
    ):
        self._settings = settings
        self._tracker = tracker
        self._strategies = list(strategies) if strategies is not None else list(DEFAULT_STRATEGIES)
        self._lookup_cache: dict[str, Optional[TrackerIssue]] = {}

    @property
    def settings(self) -> CategorizationSettings:
        return self._settings

    @property
    def tracker(self) -> Optional[Any]:
        return self._tracker

    def clear_cache(self) -> None:
        self._lookup_cache.clear()

    def verify(self, key: str) -> Optional[TrackerIssue]:
        """
        Look a key up in the tracker, caching the answer per resolver.

        Lookup failures are treated as "not found".
        """
        if self._tracker is None:
            return None
        if key not in self._lookup_cache:
            try:
                self._lookup_cache[key] = self._tracker.lookup_issue(key)
            except SourceError as e:
                logger.warning(f"Tracker lookup for {key} failed: {e}")
                return None
        return self._lookup_cache[key]

    def result_for_issue(self, issue: TrackerIssue, strategy: str) -> LinkageResult:
        return LinkageResult(
            strategy=strategy,
            key=issue.key,
            issue=issue,
            team=self._settings.team_for_prefix(issue.project_prefix),
        )

    def first_verified(self, candidates: list[str], strategy: str) -> Optional[LinkageResult]:
        for key in candidates:
            issue = self.verify(key)
            if issue is not None:
                return self.result_for_issue(issue, strategy)
            logger.debug(f"Discarding unverified key {key} from {strategy}")
        return None

    def match_project_name(self, title: Optional[str]) -> Optional[str]:
        """
        Find the configured project name a title refers to.

        Tries a case-insensitive substring first, then fuzzy-matches the
        project name against same-length word windows of the title.

        Args:
            title: Ticket subject.

        Returns:
            Matching project name from the catalogue or None.
        """
        if not title or not self._settings.project_names:
            return None

        title_lower = title.lower()
        for name in self._settings.project_names:
            if name.strip() and name.lower() in title_lower:
                return name

        words = title_lower.split()
        best_match = None
        best_score = 0.0
        for name in self._settings.project_names:
            name_lower = name.lower().strip()
            width = len(name_lower.split())
            if width == 0 or width > len(words):
                continue
            for start in range(len(words) - width + 1):
                window = " ".join(words[start:start + width])
                score = SequenceMatcher(None, window, name_lower).ratio()
                if score > best_score:
                    best_score = score
                    best_match = name

        if best_score >= self.SIMILARITY_THRESHOLD:
            logger.debug(f"Fuzzy matched '{title}' -> '{best_match}' (score: {best_score:.2f})")
            return best_match
        return None

    def resolve(self, context: LinkageContext) -> Optional[LinkageResult]:
        """
        Run the cascade for one ticket.

        Args:
            context: Ticket text, custom fields and a lazy conversation loader.

        Returns:
            The first verified LinkageResult, or None when nothing matched.
        """
        for strategy in self._strategies:
            result = strategy(self, context)
            if result is not None:
                logger.debug(
                    f"Linked {context.external_id} via {result.strategy}: "
                    f"{result.key or result.project_name}"
                )
                return result
        return None
