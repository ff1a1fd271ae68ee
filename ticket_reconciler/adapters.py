"""
Source adapters for the Ticket Reconciler.

Responsible for retrieving tickets from the three external systems and
normalizing them into NormalizedRecord:
- First-line helpdesk (Freshdesk API v2)
- Mid-tier service desk (Freshservice API v2)
- Engineering issue tracker (Jira REST API v3)

All clients paginate, raise RateLimitedError on HTTP 429 and retry transient
failures with exponential backoff that honours the server's Retry-After.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

import httpx
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import HelpdeskConfig, HTTPConfig, ServiceDeskConfig, TrackerConfig
from .models import (
    NormalizedRecord,
    Source,
    TicketStatus,
    TrackerIssue,
    ensure_utc,
    priority_label,
    utc_now,
)


logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Base exception for source adapter errors."""
    pass


class SourceAPIError(SourceError):
    """Error when communicating with a source API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(SourceError):
    """The source answered HTTP 429; retry after ``retry_after`` seconds."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


# =============================================================================
# Helpers
# =============================================================================

NO_DESCRIPTION = "No description available"

# A line starting with one of these ends the useful part of an email body
_SIGNATURE_MARKERS = ("Regards,", "Disclaimer", "This e-mail")


def clean_description(raw_text: Optional[str]) -> str:
    """
    Strip signatures, disclaimers, inline image markers and NUL bytes.

    Args:
        raw_text: Plain-text ticket body.

    Returns:
        The relevant lines joined by spaces, or a placeholder if none remain.
    """
    if not raw_text or not raw_text.strip():
        return NO_DESCRIPTION

    relevant = []
    for line in raw_text.replace("\x00", "").splitlines():
        trimmed = line.strip()
        if trimmed.startswith(_SIGNATURE_MARKERS) or "All Rights Reserved" in trimmed:
            break
        if trimmed.startswith("[cid:") or trimmed.startswith("<") or len(trimmed) <= 3:
            continue
        relevant.append(trimmed)

    description = " ".join(relevant)
    return description or NO_DESCRIPTION


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by the source APIs."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    try:
        # Jira style offsets without a colon, e.g. 2024-01-15T10:30:00.000+0000
        return ensure_utc(datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%f%z"))
    except ValueError:
        logger.warning(f"Unparseable timestamp '{value}', ignoring it")
        return None


def format_since(since: datetime) -> str:
    """Format a sync window start for Freshworks ``updated_since``."""
    return ensure_utc(since).strftime("%Y-%m-%dT%H:%M:%SZ")


def map_service_desk_status(code: Any) -> int:
    """
    Normalize a service-desk status code.

    The service desk numbers its base statuses from 0; they are shifted onto
    the helpdesk's 2-5 range. Custom codes (6-10, 18, 19) pass through.
    """
    try:
        code = int(code)
    except (TypeError, ValueError):
        return int(TicketStatus.OPEN)
    return {0: 2, 1: 3, 2: 4, 3: 5}.get(code, code)


def _parse_retry_after(response: httpx.Response, default: float) -> float:
    header = response.headers.get("Retry-After")
    if header is None:
        return default
    try:
        return max(float(header), 0.0)
    except ValueError:
        return default


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, RateLimitedError):
        return True
    if isinstance(error, SourceAPIError):
        # No status code means the request never got an answer
        return error.status_code is None or error.status_code >= 500
    return False


class _RetryAfterWait:
    """Wait the server's Retry-After on 429, otherwise back off exponentially."""

    def __init__(self, fallback):
        self._fallback = fallback

    def __call__(self, retry_state) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError):
            return error.retry_after
        return self._fallback(retry_state)


# =============================================================================
# Base client
# =============================================================================

class _SourceClient:
    """
    Shared plumbing for the source clients.

    Subclasses set ``source`` and implement ``_base_url`` and ``_auth``.
    """

    source: Source

    def __init__(
        self,
        http: HTTPConfig,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            http: Timeouts, retry and paging limits.
            transport: Optional httpx transport, used by tests.
            sleep: Sleep function used between retries.
        """
        self._http = http
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None

    def __enter__(self):
        """Context manager entry."""
        self._client = httpx.Client(
            base_url=self._base_url(),
            auth=self._auth(),
            timeout=self._http.request_timeout,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        if self._client:
            self._client.close()
            self._client = None

    def _base_url(self) -> str:
        raise NotImplementedError

    def _auth(self) -> httpx.Auth:
        raise NotImplementedError

    def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        """Perform one HTTP request and decode its JSON body."""
        if not self._client:
            raise RuntimeError("Client must be used within a context manager")

        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Request error calling {self.source.value} {path}: {e}")
            raise SourceAPIError(f"Request failed: {str(e)}") from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response, self._http.default_retry_after)
            logger.warning(f"{self.source.value} rate limit hit. Retry after {retry_after}s")
            raise RateLimitedError(
                f"Rate limit exceeded. Retry after {retry_after} seconds.",
                retry_after=retry_after,
            )

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise SourceAPIError(
                    f"Authentication failed (401) for {self.source.value}: check its API credentials in .env",
                    status_code=status,
                ) from e
            logger.error(f"HTTP error calling {self.source.value} {path}: {status}")
            raise SourceAPIError(f"HTTP error: {status}", status_code=status) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SourceAPIError(f"Invalid JSON from {self.source.value} {path}") from e

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Perform a request, retrying rate limits and transient failures."""
        retrying = Retrying(
            stop=stop_after_attempt(max(self._http.max_retries, 1)),
            wait=_RetryAfterWait(wait_exponential(multiplier=1, min=2, max=30)),
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying {self.source.value} {path} after error: {retry_state.outcome.exception()}"
            ),
        )
        return retrying(self._send, method, path, **kwargs)


# =============================================================================
# Freshworks family (helpdesk and service desk)
# =============================================================================

class _FreshworksClient(_SourceClient):
    """Paging, agent and group lookups shared by both Freshworks products."""

    _tickets_key: Optional[str] = None

    def __init__(self, config, http: HTTPConfig, **kwargs: Any):
        super().__init__(http, **kwargs)
        self._config = config
        self._group_cache: dict[int, Optional[str]] = {}
        self._agent_cache: dict[int, Optional[str]] = {}

    def _base_url(self) -> str:
        return self._config.base_url

    def _auth(self) -> httpx.Auth:
        # Freshworks basic auth uses the API key as user and any password
        return httpx.BasicAuth(self._config.api_key, "X")

    def _ticket_pages(self, params: dict[str, Any]) -> Iterator[list[dict[str, Any]]]:
        page_size = self._http.page_size
        for page in range(1, self._http.max_pages + 1):
            data = self._request(
                "GET", "/tickets", params={**params, "per_page": page_size, "page": page}
            )
            if self._tickets_key and isinstance(data, dict):
                tickets = data.get(self._tickets_key) or []
            else:
                tickets = data or []
            if not tickets:
                return
            logger.debug(f"Fetched page {page} from {self.source.value}: {len(tickets)} tickets")
            yield tickets
            if len(tickets) < page_size:
                return
        logger.warning(f"Stopped paging {self.source.value} after {self._http.max_pages} pages")

    def _lookup_name(self, cache: dict[int, Optional[str]], path: str, key: int, extract) -> Optional[str]:
        if key in cache:
            return cache[key]
        try:
            name = extract(self._request("GET", path) or {})
        except SourceError as e:
            logger.warning(f"Lookup {path} failed: {e}")
            return None
        cache[key] = name
        return name

    def group_name(self, group_id: Optional[int]) -> Optional[str]:
        """Resolve a group id to its name, cached per client."""
        if group_id is None:
            return None
        return self._lookup_name(
            self._group_cache, f"/groups/{group_id}", group_id,
            lambda data: (data.get("group") or {}).get("name"),
        )

    def agent_name(self, agent_id: Optional[int]) -> Optional[str]:
        raise NotImplementedError

    def _normalize(self, ticket: dict[str, Any]) -> NormalizedRecord:
        raise NotImplementedError

    def fetch_updated_since(self, since: datetime) -> list[NormalizedRecord]:
        """
        Fetch every ticket updated at or after ``since``.

        Tickets that cannot be mapped are logged and skipped.

        Raises:
            SourceError: If the API keeps failing after retries.
        """
        logger.info(f"Fetching {self.source.value} tickets updated since {format_since(since)}")
        records = []
        params = {"updated_since": format_since(since), "include": "requester"}
        for tickets in self._ticket_pages(params):
            for ticket in tickets:
                try:
                    records.append(self._normalize(ticket))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed {self.source.value} ticket {ticket.get('id')}: {e}")
        logger.info(f"Successfully fetched {len(records)} {self.source.value} tickets")
        return records


class HelpdeskClient(_FreshworksClient):
    """
    Client for the first-line helpdesk.

    The list endpoint returns a bare JSON array of tickets.
    """

    source = Source.HELPDESK

    def __init__(self, config: HelpdeskConfig, http: HTTPConfig, **kwargs: Any):
        super().__init__(config, http, **kwargs)

    def agent_name(self, agent_id: Optional[int]) -> Optional[str]:
        if agent_id is None:
            return None
        return self._lookup_name(
            self._agent_cache, f"/agents/{agent_id}", agent_id,
            lambda data: (data.get("contact") or {}).get("name"),
        )

    def _normalize(self, ticket: dict[str, Any]) -> NormalizedRecord:
        requester = ticket.get("requester") or {}
        return NormalizedRecord(
            external_id=ticket["id"],
            title=ticket.get("subject") or "Untitled",
            description=clean_description(ticket.get("description_text")),
            status_code=int(ticket.get("status") or TicketStatus.OPEN),
            priority=priority_label(ticket.get("priority")),
            category=ticket.get("type"),
            requester_name=requester.get("name"),
            requester_email=requester.get("email"),
            assignee=self.agent_name(ticket.get("responder_id")),
            due_date=parse_datetime(ticket.get("due_by")),
            created_at=parse_datetime(ticket.get("created_at")) or utc_now(),
            updated_at=parse_datetime(ticket.get("updated_at")) or utc_now(),
            raw_custom_fields=ticket.get("custom_fields") or {},
        )


class ServiceDeskClient(_FreshworksClient):
    """
    Client for the mid-tier service desk.

    List responses are wrapped in ``{"tickets": [...]}`` and base status codes
    start at 0, so they are remapped before leaving the adapter.
    """

    source = Source.SERVICE_DESK
    _tickets_key = "tickets"

    def __init__(self, config: ServiceDeskConfig, http: HTTPConfig, **kwargs: Any):
        super().__init__(config, http, **kwargs)

    def agent_name(self, agent_id: Optional[int]) -> Optional[str]:
        if agent_id is None:
            return None

        def extract(data: dict[str, Any]) -> Optional[str]:
            agent = data.get("agent") or {}
            first, last = agent.get("first_name"), agent.get("last_name")
            if first and last:
                return f"{first} {last}"
            return first

        return self._lookup_name(self._agent_cache, f"/agents/{agent_id}", agent_id, extract)

    def _normalize(self, ticket: dict[str, Any]) -> NormalizedRecord:
        requester = ticket.get("requester") or {}
        group = ticket.get("group") or {}
        group_name = group.get("name") or self.group_name(ticket.get("group_id"))
        return NormalizedRecord(
            external_id=ticket["id"],
            title=ticket.get("subject") or "Untitled",
            description=clean_description(ticket.get("description_text")),
            status_code=map_service_desk_status(ticket.get("status")),
            priority=priority_label(ticket.get("priority")),
            category=ticket.get("category") or "General",
            requester_name=requester.get("name"),
            requester_email=requester.get("email"),
            assignee=self.agent_name(ticket.get("responder_id")),
            group_name=group_name,
            due_date=parse_datetime(ticket.get("due_by")),
            created_at=parse_datetime(ticket.get("created_at")) or utc_now(),
            updated_at=parse_datetime(ticket.get("updated_at")) or utc_now(),
            raw_custom_fields=ticket.get("custom_fields") or {},
        )

    def fetch_awaiting_escalation(self) -> list[NormalizedRecord]:
        """Fetch every ticket currently awaiting engineering, across all pages."""
        records = []
        for tickets in self._ticket_pages({"include": "requester"}):
            for ticket in tickets:
                if map_service_desk_status(ticket.get("status")) != TicketStatus.AWAITING_ESCALATION:
                    continue
                try:
                    records.append(self._normalize(ticket))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed service desk ticket {ticket.get('id')}: {e}")
        logger.info(f"Found {len(records)} service desk tickets awaiting escalation")
        return records

    def fetch_conversations(self, ticket_id: str) -> list[str]:
        """Plain-text bodies of a ticket's conversation thread."""
        data = self._request("GET", f"/tickets/{ticket_id}/conversations") or {}
        return [
            conversation.get("body_text") or ""
            for conversation in data.get("conversations") or []
        ]


# =============================================================================
# Engineering tracker
# =============================================================================

TRACKER_FIELDS = [
    "summary", "status", "assignee", "priority", "issuetype",
    "created", "updated", "resolutiondate", "duedate", "description", "project",
]

# Jira status categories mapped onto normalized codes
_STATUS_CATEGORY_CODES = {
    "new": TicketStatus.OPEN,
    "indeterminate": TicketStatus.OPEN,
    "done": TicketStatus.RESOLVED,
}


def flatten_document(node: Any) -> str:
    """Flatten an Atlassian Document Format tree into plain text."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return " ".join(part for part in (flatten_document(child) for child in node) if part)
    if isinstance(node, dict):
        if node.get("type") == "text":
            return node.get("text", "")
        return flatten_document(node.get("content"))
    return ""


class TrackerClient(_SourceClient):
    """
    Client for the engineering issue tracker.

    Searches use the token-paginated ``/search/jql`` endpoint.
    """

    source = Source.TRACKER

    def __init__(self, config: TrackerConfig, http: HTTPConfig, **kwargs: Any):
        super().__init__(http, **kwargs)
        self._config = config

    def _base_url(self) -> str:
        return self._config.api_url

    def _auth(self) -> httpx.Auth:
        return httpx.BasicAuth(self._config.email, self._config.api_token)

    def search(
        self,
        jql: str,
        fields: Optional[list[str]] = None,
        max_results: int = 50,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Run a JQL search, following ``nextPageToken`` until exhausted.

        Args:
            jql: Query string.
            fields: Issue fields to return.
            max_results: Page size.
            limit: Stop after this many issues.

        Returns:
            Raw issue dictionaries.
        """
        issues: list[dict[str, Any]] = []
        next_page_token = None
        for _ in range(self._http.max_pages):
            body: dict[str, Any] = {
                "jql": jql,
                "maxResults": max_results,
                "fields": fields or TRACKER_FIELDS,
            }
            if next_page_token:
                body["nextPageToken"] = next_page_token
            data = self._request("POST", "/search/jql", json=body) or {}
            issues.extend(data.get("issues") or [])
            if limit is not None and len(issues) >= limit:
                return issues[:limit]
            next_page_token = data.get("nextPageToken")
            if not next_page_token:
                break
        return issues

    @staticmethod
    def _issue(raw: dict[str, Any]) -> TrackerIssue:
        fields = raw.get("fields") or {}
        return TrackerIssue(
            key=raw["key"],
            status=(fields.get("status") or {}).get("name") or "Unknown",
            assignee=(fields.get("assignee") or {}).get("displayName") or "Unassigned",
            summary=fields.get("summary") or "",
        )

    def _normalize(self, raw: dict[str, Any]) -> NormalizedRecord:
        fields = raw.get("fields") or {}
        status = fields.get("status") or {}
        category_key = (status.get("statusCategory") or {}).get("key", "new")
        return NormalizedRecord(
            external_id=raw["key"],
            title=fields.get("summary") or "Untitled",
            description=clean_description(flatten_document(fields.get("description"))),
            status_code=_STATUS_CATEGORY_CODES.get(category_key, TicketStatus.OPEN),
            status_text=status.get("name"),
            priority=(fields.get("priority") or {}).get("name") or "Medium",
            category=(fields.get("issuetype") or {}).get("name"),
            assignee=(fields.get("assignee") or {}).get("displayName"),
            group_name=(fields.get("project") or {}).get("key"),
            due_date=parse_datetime(fields.get("duedate")),
            created_at=parse_datetime(fields.get("created")) or utc_now(),
            updated_at=parse_datetime(fields.get("updated")) or utc_now(),
            resolved_at=parse_datetime(fields.get("resolutiondate")),
        )

    def fetch_updated_since(self, since: datetime) -> list[NormalizedRecord]:
        """Fetch issues updated at or after ``since``, skipping unmappable ones."""
        moment = ensure_utc(since).strftime("%Y-%m-%d %H:%M")
        jql = f'updated >= "{moment}" ORDER BY updated DESC'
        logger.info(f"Fetching tracker issues updated since {moment}")
        records = []
        for raw in self.search(jql):
            try:
                records.append(self._normalize(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed tracker issue {raw.get('key')}: {e}")
        logger.info(f"Successfully fetched {len(records)} tracker issues")
        return records

    def lookup_issue(self, key: str) -> Optional[TrackerIssue]:
        """
        Look up one issue by key.

        Returns:
            The issue, or None when the tracker does not know the key.
        """
        try:
            issues = self.search(
                f'issuekey = "{key}"', fields=["summary", "status", "assignee"], max_results=1, limit=1
            )
        except SourceAPIError as e:
            # The tracker rejects JQL naming a key that does not exist
            if e.status_code in (400, 404):
                return None
            raise
        return self._issue(issues[0]) if issues else None

    def search_text(self, text: str, limit: int = 5) -> list[TrackerIssue]:
        """Full-text search, most recently updated first."""
        escaped = text.replace('"', '\\"')
        issues = self.search(
            f'text ~ "{escaped}" ORDER BY updated DESC',
            fields=["summary", "status", "assignee"],
            max_results=limit,
            limit=limit,
        )
        return [self._issue(raw) for raw in issues]

    def active_sprint(self, project_key: str) -> list[TrackerIssue]:
        """Issues in the project's currently open sprints."""
        issues = self.search(
            f'project = "{project_key}" AND sprint in openSprints() ORDER BY Rank ASC',
            fields=["summary", "status", "assignee"],
        )
        logger.info(f"Fetched {len(issues)} active sprint issues for {project_key}")
        return [self._issue(raw) for raw in issues]
