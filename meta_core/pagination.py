"""Cursor pagination normalization for Graph API list envelopes."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

logger = logging.getLogger(__name__)

# Query parameters that must not be copied out of provider paging URLs
_STRIPPED_PARAMS = frozenset({"access_token", "appsecret_proof"})


@dataclass
class PaginatedResult:
    """One page of records plus the cursors to move around it."""

    data: List[Dict[str, Any]] = field(default_factory=list)
    after: Optional[str] = None
    before: Optional[str] = None
    next_path: Optional[str] = None
    previous_path: Optional[str] = None
    has_next_page: bool = False
    has_previous_page: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "data": self.data,
            "paging": {
                "after": self.after,
                "before": self.before,
                "next_path": self.next_path,
                "previous_path": self.previous_path,
                "has_next_page": self.has_next_page,
                "has_previous_page": self.has_previous_page,
            },
        }


def is_list_envelope(body: Any) -> bool:
    """Whether a decoded body is a {data: [...], paging: ...} list response."""
    return isinstance(body, dict) and isinstance(body.get("data"), list)


class PaginationNormalizer:
    """Converts raw paging blocks into PaginatedResult objects."""

    def __init__(self, base_url: str, api_version: str):
        """
        Initialize normalizer.

        Args:
            base_url: Provider base URL (e.g. https://graph.facebook.com)
            api_version: Graph API version prefix (e.g. v23.0)
        """
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version

    def normalize(self, raw: Dict[str, Any]) -> PaginatedResult:
        """
        Normalize a list envelope.

        Args:
            raw: Decoded provider response

        Returns:
            PaginatedResult with cursors and next/previous flags
        """
        paging = raw.get("paging") or {}
        cursors = paging.get("cursors") or {}

        after = cursors.get("after") or None
        before = cursors.get("before") or None
        next_path = self.relative_path(paging["next"]) if paging.get("next") else None
        previous_path = self.relative_path(paging["previous"]) if paging.get("previous") else None

        return PaginatedResult(
            data=list(raw.get("data") or []),
            after=after,
            before=before,
            next_path=next_path,
            previous_path=previous_path,
            has_next_page=bool(after or next_path),
            has_previous_page=bool(before or previous_path),
        )

    def relative_path(self, url: str) -> str:
        """
        Reduce a full paging URL to a path the client can request again.

        The host and API version prefix are dropped, and any token
        parameters embedded by the provider are removed.

        Args:
            url: Absolute URL from paging.next / paging.previous

        Returns:
            Version-relative path with query string, e.g. "act_1/ads?after=X"
        """
        parts = urlsplit(url)
        path = parts.path.lstrip("/")

        version_prefix = f"{self.api_version}/"
        if path.startswith(version_prefix):
            path = path[len(version_prefix):]
        elif path.split("/", 1)[0].startswith("v") and "/" in path:
            # Provider may answer with a different version than requested
            head, rest = path.split("/", 1)
            if head[1:].replace(".", "").isdigit():
                path = rest

        query = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if key not in _STRIPPED_PARAMS
        ]
        return f"{path}?{urlencode(query)}" if query else path


async def walk_all_pages(
    first_page: PaginatedResult,
    fetch_next: Callable[[PaginatedResult], Awaitable[PaginatedResult]],
) -> List[Dict[str, Any]]:
    """
    Follow forward cursors until has_next_page is False.

    There is no page-count bound; use only for small listings such as the
    caller's accessible ad accounts.

    Args:
        first_page: Already-fetched first page
        fetch_next: Coroutine that fetches the page after the given one

    Returns:
        All records across pages, in order
    """
    records: List[Dict[str, Any]] = list(first_page.data)
    page = first_page
    pages = 1

    while page.has_next_page:
        page = await fetch_next(page)
        records.extend(page.data)
        pages += 1

    logger.debug(f"Walked {pages} pages, {len(records)} records")
    return records
