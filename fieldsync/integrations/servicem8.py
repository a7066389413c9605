"""
ServiceM8 REST API client.

Authenticates with an API key (X-API-Key) or an OAuth bearer token.
List reads go through a process-local TTL cache; single-entity reads always
hit the API so webhook handlers see current state. Every call consults the
last reported rate-limit quota and fails fast with RateLimitedError when it
is exhausted instead of waiting for the reset.

Retries: TransientError (timeouts, transport errors, 5xx) is retried with
exponential backoff up to retry_attempts. Auth, not-found, validation and
rate-limit failures are raised immediately.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from fieldsync.integrations.cache import (
    DEFAULT_RESET_SECONDS,
    RateLimitState,
    TTLCache,
    make_cache_key,
)
from fieldsync.integrations.errors import (
    AuthError,
    NotFoundError,
    RateLimitedError,
    ServiceM8Error,
    TransientError,
    ValidationError,
)
from fieldsync.schemas.servicem8 import RequestOptions
from fieldsync.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.servicem8.com/api_1.0"


class ServiceM8Client:
    """Rate-limited, cached ServiceM8 API client."""

    def __init__(
        self,
        api_key: str = "",
        oauth_token: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        cache_enabled: bool = True,
        cache_ttl: float = 300,
        rate_limit_enabled: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.oauth_token = oauth_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.cache_enabled = cache_enabled
        self.rate_limit_enabled = rate_limit_enabled
        self._http = http_client
        self._owns_http = http_client is None
        self._clock = clock
        self._sleep = sleep
        self._cache = TTLCache(cache_ttl, clock=clock)
        self._rate_limit = RateLimitState(clock=clock)
        self.request_count = 0
        self.error_count = 0

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "ServiceM8Client":
        if settings is None:
            from fieldsync.config import get_settings
            settings = get_settings()
        kwargs = dict(
            api_key=settings.servicem8_api_key,
            oauth_token=settings.servicem8_oauth_token,
            base_url=settings.servicem8_base_url,
            timeout=settings.servicem8_timeout_seconds,
            retry_attempts=settings.servicem8_retry_attempts,
            retry_delay=settings.servicem8_retry_delay_seconds,
            cache_enabled=settings.servicem8_cache_enabled,
            cache_ttl=settings.servicem8_cache_ttl_seconds,
            rate_limit_enabled=settings.servicem8_rate_limit_enabled,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.oauth_token:
            headers["Authorization"] = f"Bearer {self.oauth_token}"
        elif self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Send one logical request, retrying transient failures."""
        if not self.api_key and not self.oauth_token:
            raise AuthError("ServiceM8 credentials are not configured")

        last_error: Optional[ServiceM8Error] = None
        for attempt in range(1, self.retry_attempts + 1):
            if self.rate_limit_enabled:
                self._rate_limit.check()

            self.request_count += 1
            try:
                response = await self._get_http().request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    json=json_body,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except httpx.TimeoutException:
                last_error = TransientError(f"ServiceM8 request timed out: {method} {path}")
            except httpx.TransportError as e:
                last_error = TransientError(f"ServiceM8 transport error: {e}")
            else:
                self._rate_limit.update_from_headers(response.headers)
                if response.is_success:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError:
                        raise ValidationError(
                            f"ServiceM8 returned non-JSON body for {path}",
                            status_code=response.status_code,
                        )
                error = self._error_for_response(response)
                if not isinstance(error, TransientError):
                    self.error_count += 1
                    await _alert_on_error(error, method, path)
                    raise error
                last_error = error

            self.error_count += 1
            if attempt < self.retry_attempts:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "ServiceM8 %s %s failed (attempt %d/%d): %s - retrying in %.1fs",
                    method, path, attempt, self.retry_attempts, last_error, delay,
                )
                await self._sleep(delay)

        logger.error(
            "ServiceM8 %s %s failed after %d attempts: %s",
            method, path, self.retry_attempts, last_error,
        )
        raise last_error

    def _error_for_response(self, response: httpx.Response) -> ServiceM8Error:
        status = response.status_code
        message = _extract_message(response)

        if status in (401, 403):
            return AuthError(f"ServiceM8 authentication failed: {message}", status_code=status)
        if status == 404:
            return NotFoundError(f"ServiceM8 resource not found: {message}", status_code=status)
        if status == 429:
            reset_at = self._reset_from_429(response)
            self._rate_limit.mark_exhausted(reset_at)
            return RateLimitedError(
                f"ServiceM8 rate limit exceeded: {message}", reset_at=reset_at
            )
        if status >= 500:
            return TransientError(f"ServiceM8 server error {status}: {message}", status_code=status)
        return ValidationError(f"ServiceM8 rejected request ({status}): {message}", status_code=status)

    def _reset_from_429(self, response: httpx.Response) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return self._clock() + float(retry_after)
            except ValueError:
                pass
        reset = response.headers.get("X-RateLimit-Reset")
        if reset:
            try:
                return float(reset)
            except ValueError:
                pass
        return self._clock() + DEFAULT_RESET_SECONDS

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def _list(
        self,
        entity: str,
        path: str,
        params: Optional[dict] = None,
        fresh: bool = False,
    ) -> dict:
        """GET a collection, normalized to {"data": [...], "meta": {...}}."""
        key = make_cache_key(entity, params)
        if self.cache_enabled and not fresh:
            hit, cached = self._cache.get(key)
            if hit:
                return cached

        raw = await self._request("GET", path, params=params)
        result = _normalize_list(raw)
        if self.cache_enabled:
            self._cache.set(key, result)
        return result

    async def _get_one(self, path: str, uuid: str) -> dict:
        data = await self._request("GET", path)
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise NotFoundError(f"ServiceM8 returned no record for {uuid}", status_code=404)
        return data

    def invalidate(self, entity: str) -> int:
        return self._cache.invalidate(f"{entity}:")

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_cache_stats(self) -> dict:
        return self._cache.stats()

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    async def get_companies(self, options: Optional[RequestOptions] = None, fresh: bool = False) -> dict:
        params = _build_query([], options)
        return await self._list("company", "/company.json", params, fresh=fresh)

    async def get_company(self, company_uuid: str) -> dict:
        return await self._get_one(f"/company/{company_uuid}.json", company_uuid)

    async def create_company(self, payload: dict) -> dict:
        """Create a client. Returns the ServiceM8 reply plus the record uuid."""
        body = _with_uuid(payload)
        data = await self._request("POST", "/company.json", json_body=body)
        self.invalidate("company")
        return {**(data or {}), "uuid": body["uuid"]}

    # ------------------------------------------------------------------
    # Jobs and quotes
    # ------------------------------------------------------------------

    async def get_jobs(
        self,
        company_uuid: Optional[str] = None,
        options: Optional[RequestOptions] = None,
        fresh: bool = False,
    ) -> dict:
        base = [f"company_uuid eq '{company_uuid}'"] if company_uuid else []
        params = _build_query(base, options)
        return await self._list("job", "/job.json", params, fresh=fresh)

    async def get_quotes(
        self,
        company_uuid: str,
        options: Optional[RequestOptions] = None,
        fresh: bool = False,
    ) -> dict:
        """Jobs still in the Quote stage for a company."""
        options = (options or RequestOptions()).model_copy(update={"status": ["Quote"]})
        return await self.get_jobs(company_uuid, options, fresh=fresh)

    async def get_job(self, job_uuid: str) -> dict:
        return await self._get_one(f"/job/{job_uuid}.json", job_uuid)

    async def create_job(self, payload: dict) -> dict:
        body = _with_uuid(payload)
        data = await self._request("POST", "/job.json", json_body=body)
        self.invalidate("job")
        return {**(data or {}), "uuid": body["uuid"]}

    async def update_job_status(
        self,
        job_uuid: str,
        status: str,
        extra: Optional[dict] = None,
    ) -> dict:
        body = {"status": status}
        if extra:
            body.update({k: v for k, v in extra.items() if v is not None})
        data = await self._request("POST", f"/job/{job_uuid}.json", json_body=body)
        self.invalidate("job")
        return data

    async def approve_quote(
        self,
        job_uuid: str,
        line_items: Optional[list[str]] = None,
        notes: Optional[str] = None,
    ) -> dict:
        return await self.update_job_status(job_uuid, "Work Order", {
            "quote_approved": 1,
            "quote_approved_date": datetime.now(timezone.utc).isoformat(),
            "approved_line_items": line_items,
            "client_approval_notes": notes,
        })

    async def reject_quote(self, job_uuid: str, reason: Optional[str] = None) -> dict:
        return await self.update_job_status(job_uuid, "Quote", {
            "quote_approved": 0,
            "quote_rejection_reason": reason,
        })

    # ------------------------------------------------------------------
    # Job children
    # ------------------------------------------------------------------

    async def get_job_activities(self, job_uuid: str, fresh: bool = False) -> dict:
        params = {"$filter": f"job_uuid eq '{job_uuid}'", "$expand": "staff"}
        return await self._list("jobactivity", "/jobactivity.json", params, fresh=fresh)

    async def get_job_activity(self, activity_uuid: str) -> dict:
        return await self._get_one(f"/jobactivity/{activity_uuid}.json", activity_uuid)

    async def get_job_attachments(self, job_uuid: str, fresh: bool = False) -> dict:
        params = {"$filter": f"job_uuid eq '{job_uuid}'"}
        return await self._list("attachment", "/attachment.json", params, fresh=fresh)

    async def get_attachment(self, attachment_uuid: str) -> dict:
        return await self._get_one(f"/attachment/{attachment_uuid}.json", attachment_uuid)

    async def get_job_materials(self, job_uuid: str, fresh: bool = False) -> dict:
        params = {"$filter": f"job_uuid eq '{job_uuid}'"}
        return await self._list("material", "/material.json", params, fresh=fresh)

    # ------------------------------------------------------------------
    # Staff, agreements, recurring work
    # ------------------------------------------------------------------

    async def get_staff(self, fresh: bool = False) -> dict:
        params = {"$filter": "is_active eq 1"}
        return await self._list("staff", "/staff.json", params, fresh=fresh)

    async def get_service_agreements(self, company_uuid: str) -> dict:
        params = {"$filter": f"company_uuid eq '{company_uuid}'"}
        return await self._list("serviceagreement", "/serviceagreement.json", params)

    async def get_recurring_jobs(self, company_uuid: str) -> dict:
        params = {"$filter": f"company_uuid eq '{company_uuid}'"}
        return await self._list("recurringjob", "/recurringjob.json", params)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/company.json", params={"$top": 1})
            return True
        except ServiceM8Error as e:
            logger.warning("ServiceM8 connection test failed: %s", str(e))
            return False

    def get_api_stats(self) -> dict:
        return {
            "rate_limit": self._rate_limit.snapshot(),
            "cache": self._cache.stats(),
            "requests": self.request_count,
            "errors": self.error_count,
        }


def _build_query(base_filters: list[str], options: Optional[RequestOptions]) -> dict:
    """Translate RequestOptions into OData query params."""
    filters = list(base_filters)
    params: dict[str, Any] = {}
    if options is None:
        if filters:
            params["$filter"] = " and ".join(filters)
        return params

    if options.status:
        filters.append(_any_of("status", options.status))
    if options.date_start and options.date_end:
        filters.append(f"(date ge '{options.date_start}' and date le '{options.date_end}')")
    elif options.date_start:
        filters.append(f"date ge '{options.date_start}'")
    elif options.date_end:
        filters.append(f"date le '{options.date_end}'")
    if options.staff_assigned:
        filters.append(_any_of("staff_assigned", options.staff_assigned))
    if options.modified_since:
        filters.append(f"edit_date gt '{options.modified_since}'")

    if filters:
        params["$filter"] = " and ".join(filters)

    expand = []
    if options.include_activities:
        expand.append("activities")
    if options.include_attachments:
        expand.append("attachments")
    if options.include_materials:
        expand.append("materials")
    if options.include_staff:
        expand.append("staff")
    if expand:
        params["$expand"] = ",".join(expand)

    if options.limit:
        params["$top"] = options.limit
    if options.offset:
        params["$skip"] = options.offset
    return params


def _any_of(field: str, values: list[str]) -> str:
    clause = " or ".join(f"{field} eq '{v}'" for v in values)
    return f"({clause})"


def _with_uuid(payload: dict) -> dict:
    # ServiceM8 accepts a caller-chosen uuid on create
    body = {k: v for k, v in payload.items() if v is not None}
    body.setdefault("uuid", str(uuid.uuid4()))
    return body


def _normalize_list(raw: Any) -> dict:
    if isinstance(raw, list):
        return {"data": raw, "meta": {"total": len(raw)}}
    if isinstance(raw, dict) and "data" in raw:
        data = raw.get("data") or []
        meta = raw.get("meta") or {"total": len(data)}
        return {"data": data, "meta": meta}
    return {"data": [], "meta": {"total": 0}}


def _extract_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:200]
    return str(body)[:200]


async def _alert_on_error(error: ServiceM8Error, method: str, path: str) -> None:
    """Credential and quota failures affect every caller of the shared client."""
    if isinstance(error, AuthError):
        await send_alert(
            AlertType.SERVICEM8_AUTH_FAILED,
            f"ServiceM8 rejected credentials on {method} {path}: {error.message}",
            severity="critical",
        )
    elif isinstance(error, RateLimitedError):
        await send_alert(
            AlertType.SERVICEM8_RATE_LIMITED,
            f"ServiceM8 rate limit hit on {method} {path}",
            severity="warning",
            extra={"reset_at": datetime.fromtimestamp(error.reset_at, tz=timezone.utc).isoformat()},
        )
