"""
Meta Graph API client with quota, credential and retry integration.

Every call flows through the same path: quota gate for the account scope,
credential check, backoff executor around the HTTP call, then pagination
normalization for list responses.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from meta_core.backoff import BackoffExecutor, BackoffPolicy, RetryStats, decode_response_body
from meta_core.credentials import CredentialManager, normalize_scope_id, ACCOUNT_PREFIX
from meta_core.errors import ProviderAuthInvalidError, RefreshFailedError
from meta_core.pagination import (
    PaginatedResult,
    PaginationNormalizer,
    is_list_envelope,
    walk_all_pages,
)
from meta_core.quota import CallCost, QuotaTracker
from meta_core.settings import MetaSettings, get_settings

logger = logging.getLogger(__name__)


DEFAULT_ACCOUNT_FIELDS = "id,name,account_status,balance,currency,timezone_name,business"
DEFAULT_CAMPAIGN_FIELDS = (
    "id,name,objective,status,effective_status,created_time,updated_time,"
    "start_time,stop_time,budget_remaining,daily_budget,lifetime_budget"
)
DEFAULT_INSIGHTS_FIELDS = "impressions,clicks,spend,reach,frequency,ctr,cpc,cpm,actions,cost_per_action_type"

SUPPORTED_METHODS = ("GET", "POST", "DELETE")


def serialize_params(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Encode parameters the way the Graph API expects them.

    Lists and dicts are JSON-encoded, booleans lower-cased, None dropped.

    Args:
        params: Raw parameter mapping

    Returns:
        Flat string mapping usable as a query string or form body
    """
    serialized: Dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, dict)):
            serialized[key] = json.dumps(value)
        elif isinstance(value, bool):
            serialized[key] = "true" if value else "false"
        else:
            serialized[key] = str(value)
    return serialized


def scope_for_object(object_id: str) -> Optional[str]:
    """Quota scope attributable to an object id, if it is an ad account."""
    return object_id if str(object_id).startswith(ACCOUNT_PREFIX) else None


class MetaAPIClient:
    """
    Composition root for Meta Graph API calls.

    Quota tracker, credential manager and executor are constructed by the
    caller and injected; nothing here is looked up globally.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        quota: QuotaTracker,
        executor: BackoffExecutor,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0,
        owns_http_client: bool = False,
    ):
        """
        Initialize Meta API client.

        Args:
            credentials: Credential manager for the calling user
            quota: Quota tracker shared by calls of this process/tenant
            executor: Backoff executor
            http_client: Async HTTP client (one is created if omitted)
            timeout_seconds: Per-request timeout
            owns_http_client: Close http_client in aclose() even though it was passed in
        """
        self.credentials = credentials
        self.quota = quota
        self.executor = executor
        self._owns_client = http_client is None or owns_http_client
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        credential = credentials.credential
        self.normalizer = PaginationNormalizer(credential.base_url, credential.api_version)
        logger.info(f"MetaAPIClient initialized (api_version={credential.api_version})")

    async def aclose(self) -> None:
        """Close owned HTTP resources."""
        if self._owns_client:
            await self._http.aclose()
        await self.credentials.aclose()

    async def __aenter__(self) -> "MetaAPIClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        scope_key: Optional[str] = None,
        cost: Optional[int] = None,
        stats: Optional[RetryStats] = None,
    ) -> Union[PaginatedResult, Any]:
        """
        Make a request to the Meta Graph API.

        Args:
            endpoint: Version-relative path, optionally with a query string
            method: HTTP method (GET, POST, DELETE)
            body: Parameters (query string for GET/DELETE, form body for POST)
            scope_key: Ad account to charge against the quota tracker
            cost: Score override (defaults to read=1 for GET, write=3 otherwise)
            stats: Filled in with attempts and delays of this call

        Returns:
            PaginatedResult for list envelopes, the decoded body otherwise
        """
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")

        if scope_key:
            scope_key = normalize_scope_id(scope_key)
            if cost is None:
                cost = CallCost.READ if method == "GET" else CallCost.WRITE
            await self.quota.check_and_reserve(scope_key, int(cost))

        await self._ensure_token()

        path = endpoint.lstrip("/")
        url = f"{self.credentials.credential.graph_url}/{path}"
        description = f"{method} {path.split('?', 1)[0] or '/'}"
        params = serialize_params(body)

        masked = {k: ("***" if k in ("access_token", "client_secret") else v) for k, v in params.items()}
        logger.debug(f"API Request: {description} params={masked} scope={scope_key}")

        async def send() -> httpx.Response:
            headers = self.credentials.auth_headers()
            if method == "POST":
                return await self._http.post(url, data=params, headers=headers)
            return await self._http.request(method, url, params=params or None, headers=headers)

        try:
            response = await self.executor.execute(send, description, stats)
        except ProviderAuthInvalidError:
            self.credentials.mark_unverified()
            raise

        logger.debug(f"API Response: {description} status={response.status_code}")
        decoded = decode_response_body(response)
        if is_list_envelope(decoded):
            return self.normalizer.normalize(decoded)
        return decoded

    async def _ensure_token(self) -> None:
        try:
            await self.credentials.refresh_if_needed()
        except RefreshFailedError as e:
            logger.warning(f"Token refresh unavailable, continuing with current token: {e}")

    # Pagination

    async def get_page(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        scope_key: Optional[str] = None,
    ) -> PaginatedResult:
        """
        Fetch one page of a list endpoint.

        Args:
            endpoint: List endpoint path
            params: Query parameters (limit, after, before, fields, ...)
            scope_key: Ad account to charge

        Returns:
            Normalized page
        """
        result = await self.request(endpoint, "GET", params, scope_key)
        if not isinstance(result, PaginatedResult):
            raise ValueError(f"Endpoint {endpoint} did not return a list response")
        return result

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        scope_key: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every page of a list endpoint.

        Unbounded; intended for small listings only.

        Args:
            endpoint: List endpoint path
            params: Query parameters for the first page
            scope_key: Ad account to charge (each page is scored)

        Returns:
            All records across pages
        """
        params = dict(params or {})
        first_page = await self.get_page(endpoint, params, scope_key)

        async def fetch_next(page: PaginatedResult) -> PaginatedResult:
            if page.next_path:
                return await self.get_page(page.next_path, None, scope_key)
            return await self.get_page(endpoint, {**params, "after": page.after}, scope_key)

        return await walk_all_pages(first_page, fetch_next)

    # Accounts

    async def get_ad_accounts(self, fields: str = DEFAULT_ACCOUNT_FIELDS) -> List[Dict[str, Any]]:
        """
        List every ad account the token can access.

        Returns:
            Ad account records
        """
        return await self.get_all_pages("me/adaccounts", {"fields": fields, "limit": 100})

    async def get_ad_account(self, account_id: str, fields: Optional[str] = None) -> Dict[str, Any]:
        """
        Get a single ad account.

        Args:
            account_id: Raw or act_-prefixed account id
            fields: Comma-separated fields

        Returns:
            Ad account record
        """
        account = normalize_scope_id(account_id)
        return await self.request(
            account,
            "GET",
            {"fields": fields or "id,name,account_status,currency,timezone_name,funding_source_details,business"},
            scope_key=account,
        )

    # Campaigns

    async def get_campaigns(
        self,
        account_id: str,
        fields: Optional[List[str]] = None,
        status: Optional[List[str]] = None,
        limit: int = 25,
        after: Optional[str] = None,
        before: Optional[str] = None,
    ) -> PaginatedResult:
        """
        List campaigns of an ad account.

        Args:
            account_id: Raw or act_-prefixed account id
            fields: Fields to return
            status: effective_status filter
            limit: Page size
            after: Forward cursor
            before: Backward cursor

        Returns:
            One page of campaigns
        """
        account = normalize_scope_id(account_id)
        params = {
            "fields": ",".join(fields) if fields else DEFAULT_CAMPAIGN_FIELDS,
            "effective_status": status,
            "limit": limit,
            "after": after,
            "before": before,
        }
        return await self.get_page(f"{account}/campaigns", params, scope_key=account)

    async def create_campaign(self, account_id: str, campaign_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a campaign.

        Args:
            account_id: Raw or act_-prefixed account id
            campaign_data: name, objective, status, budgets, special_ad_categories, ...

        Returns:
            Provider response ({"id": ...})
        """
        account = normalize_scope_id(account_id)
        return await self.request(f"{account}/campaigns", "POST", campaign_data, scope_key=account)

    # Generic objects

    async def get_object(self, object_id: str, fields: Optional[str] = None) -> Any:
        """
        Read any object by id.

        Raw campaign/ad set/ad ids cannot be attributed to an account, so
        these lookups are only quota-tracked when the id is an ad account.

        Args:
            object_id: Graph object id
            fields: Comma-separated fields

        Returns:
            Decoded object
        """
        return await self.request(
            object_id, "GET", {"fields": fields}, scope_key=scope_for_object(object_id)
        )

    async def update_object(
        self,
        object_id: str,
        updates: Dict[str, Any],
        scope_key: Optional[str] = None,
    ) -> Any:
        """
        Update an object (campaign, ad set, ad, ...).

        Args:
            object_id: Graph object id
            updates: Fields to change
            scope_key: Owning ad account, when known

        Returns:
            Provider response ({"success": true})
        """
        return await self.request(object_id, "POST", updates, scope_key=scope_key or scope_for_object(object_id))

    async def delete_object(self, object_id: str, scope_key: Optional[str] = None) -> Any:
        """
        Delete an object.

        Args:
            object_id: Graph object id
            scope_key: Owning ad account, when known

        Returns:
            Provider response ({"success": true})
        """
        return await self.request(object_id, "DELETE", None, scope_key=scope_key or scope_for_object(object_id))

    # Insights

    async def get_insights(
        self,
        object_id: str,
        fields: Optional[List[str]] = None,
        level: Optional[str] = None,
        date_preset: Optional[str] = None,
        time_range: Optional[Dict[str, str]] = None,
        time_increment: Optional[int] = None,
        breakdowns: Optional[List[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
    ) -> PaginatedResult:
        """
        Get performance insights for an account, campaign, ad set or ad.

        Args:
            object_id: Object to report on
            fields: Metrics to return
            level: Aggregation level (account, campaign, adset, ad)
            date_preset: Named date range (e.g. last_7d)
            time_range: {"since": "YYYY-MM-DD", "until": "YYYY-MM-DD"}
            time_increment: Days per row
            breakdowns: Breakdown dimensions
            limit: Page size
            after: Forward cursor

        Returns:
            One page of insight rows
        """
        params = {
            "fields": ",".join(fields) if fields else DEFAULT_INSIGHTS_FIELDS,
            "level": level,
            "date_preset": date_preset,
            "time_range": time_range,
            "time_increment": time_increment,
            "breakdowns": ",".join(breakdowns) if breakdowns else None,
            "limit": limit,
            "after": after,
        }
        return await self.get_page(f"{object_id}/insights", params, scope_key=scope_for_object(object_id))

    # Batch

    async def batch_request(self, requests: List[Dict[str, Any]]) -> Any:
        """
        Submit a Graph API batch.

        Args:
            requests: [{"method": "GET", "relative_url": "..."}, ...]

        Returns:
            List of per-request responses
        """
        return await self.request("", "POST", {"batch": requests})

    def get_quota_status(self, account_id: str) -> Dict[str, Any]:
        """Quota status for an ad account."""
        return self.quota.get_status(normalize_scope_id(account_id))


def create_meta_api_client(
    settings: Optional[MetaSettings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    quota: Optional[QuotaTracker] = None,
    credentials: Optional[CredentialManager] = None,
) -> MetaAPIClient:
    """
    Factory function to create MetaAPIClient.

    Args:
        settings: Runtime settings (environment when omitted)
        http_client: Shared async HTTP client
        quota: Quota tracker to share (a new one per tier when omitted)
        credentials: Credential manager (built from settings when omitted)

    Returns:
        Configured MetaAPIClient instance
    """
    settings = settings or get_settings()
    owns_http_client = http_client is None
    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(settings.request_timeout_seconds)
    )

    if credentials is None:
        credentials = CredentialManager.from_settings(settings, http_client=http_client)
    if quota is None:
        quota = QuotaTracker.for_tier(
            settings.rate_limit_tier,
            max_wait_seconds=settings.quota_max_wait_seconds,
        )

    executor = BackoffExecutor(BackoffPolicy(
        max_attempts=settings.max_attempts,
        base_delay=settings.backoff_base_seconds,
        max_delay=settings.backoff_max_seconds,
        jitter=settings.backoff_jitter_seconds,
    ))

    return MetaAPIClient(
        credentials=credentials,
        quota=quota,
        executor=executor,
        http_client=http_client,
        timeout_seconds=settings.request_timeout_seconds,
        owns_http_client=owns_http_client,
    )
