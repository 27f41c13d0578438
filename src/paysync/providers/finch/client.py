"""
Async Finch API client over httpx.

Every call carries the connection's bearer token and a bounded timeout.
Transient failures (429, 5xx, network errors, timeouts) are retried with
exponential backoff up to `max_retries`; after that the classified error is
raised to the caller (the sync engine), which decides whether it is fatal
for the job or just one failed record.

Finch batch endpoints (/employer/individual, /employer/pay-statement) answer
HTTP 200 and carry a per-item "code"; those codes are classified exactly like
HTTP statuses.
"""
import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from paysync.config import Settings
from paysync.models.connection import Provider
from paysync.providers.base import (
    AuthError,
    CompanyInfo,
    DirectoryEntry,
    NotFound,
    ProviderClient,
    ProviderError,
    ProviderRecord,
    RateLimited,
    TokenGrant,
    TransportError,
)
from paysync.providers.finch import normalizer

logger = logging.getLogger(__name__)

FINCH_API_URL = "https://api.tryfinch.com/api"
FINCH_SANDBOX_API_URL = "https://sandbox.tryfinch.com/api"
FINCH_TOKEN_URL = "https://api.tryfinch.com/auth/token"
FINCH_AUTH_URL = "https://connect.tryfinch.com/authorize"


def classify_status(status: int, message: str, retry_after: Optional[float] = None) -> Optional[ProviderError]:
    """Map an HTTP (or batch item) status code onto the provider error taxonomy.

    Returns None for success codes.
    """
    if status < 400:
        return None
    if status in (401, 403):
        return AuthError(message)
    if status == 404:
        return NotFound(message)
    if status == 429:
        return RateLimited(message, retry_after=retry_after)
    if status >= 500:
        return TransportError(message)
    return ProviderError(message)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class FinchClient(ProviderClient):
    """
    Thin async wrapper over the Finch employer API.

    A fresh httpx.AsyncClient is opened per request so the client holds no
    connection state between jobs; pass `transport` to stub the network in
    tests (httpx.MockTransport).
    """

    provider = Provider.FINCH.value

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        sandbox: bool = True,
        api_version: str = "2020-09-17",
        products: str = "company,directory,individual,employment,payment,pay_statement",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        page_size: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.sandbox = sandbox
        self.api_url = FINCH_SANDBOX_API_URL if sandbox else FINCH_API_URL
        self.api_version = api_version
        self.products = products
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.page_size = page_size
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "FinchClient":
        return cls(
            client_id=settings.finch_client_id,
            client_secret=settings.finch_client_secret,
            redirect_uri=settings.finch_redirect_uri,
            sandbox=settings.finch_sandbox_mode,
            api_version=settings.finch_api_version,
            products=settings.finch_products,
            timeout=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            backoff_seconds=settings.provider_backoff_seconds,
            page_size=settings.directory_page_size,
            **kwargs,
        )

    # ─── HTTP plumbing ────────────────────────────────────────────────────────

    async def _send_once(
        self,
        method: str,
        url: str,
        access_token: Optional[str],
        json_body: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> Any:
        headers = {"Finch-API-Version": self.api_version}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            try:
                response = await http.request(method, url, headers=headers, json=json_body, params=params)
            except httpx.TimeoutException as exc:
                raise TransportError(f"{method} {url} timed out") from exc
            except httpx.HTTPError as exc:
                raise TransportError(f"{method} {url} failed: {exc}") from exc

        error = classify_status(
            response.status_code,
            f"{method} {url} returned {response.status_code}",
            retry_after=_retry_after(response),
        )
        if error is not None:
            raise error
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{method} {url} returned a non-JSON body") from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send one request, retrying RateLimited/TransportError with backoff."""
        attempt = 0
        while True:
            try:
                return await self._send_once(method, url, access_token, json_body, params)
            except (RateLimited, TransportError) as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                if isinstance(exc, RateLimited) and exc.retry_after is not None:
                    delay = exc.retry_after
                logger.info(
                    "Finch %s %s: %s; retry %d/%d in %.1fs",
                    method, url, exc, attempt, self.max_retries, delay,
                )
                await asyncio.sleep(delay)

    def _item_body(self, item: Dict[str, Any], record_id: str) -> Dict[str, Any]:
        """Unwrap one entry of a Finch batch response, raising on its code."""
        code = int(item.get("code", 200))
        error = classify_status(code, f"Finch record {record_id} returned code {code}")
        if error is not None:
            raise error
        return item.get("body") or {}

    # ─── OAuth ────────────────────────────────────────────────────────────────

    def authorization_url(self, state: str) -> str:
        query = urlencode({
            "client_id": self.client_id,
            "products": self.products,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "sandbox": "true" if self.sandbox else "false",
        })
        return f"{FINCH_AUTH_URL}?{query}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """
        Exchange an authorization code for an access token.

        Raises:
            AuthError: if Finch rejects the code (invalid, expired, reused).
        """
        try:
            data = await self._request(
                "POST",
                FINCH_TOKEN_URL,
                json_body={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                },
            )
        except (AuthError, NotFound, RateLimited, TransportError):
            raise
        except ProviderError as exc:
            # 400 invalid_grant and friends: the code itself is bad
            raise AuthError(str(exc)) from exc

        access_token = data.get("access_token")
        if not access_token:
            raise AuthError("Finch token response did not include an access_token")
        return TokenGrant(
            access_token=access_token,
            provider_account_id=data.get("company_id"),
            scopes=list(data.get("products") or []),
            refresh_token=data.get("refresh_token"),
        )

    # ─── Data endpoints ───────────────────────────────────────────────────────

    async def fetch_company(self, access_token: str) -> CompanyInfo:
        data = await self._request("GET", f"{self.api_url}/employer/company", access_token=access_token)
        return CompanyInfo(
            provider_account_id=data.get("id"),
            legal_name=data.get("legal_name"),
            ein=data.get("ein"),
        )

    async def fetch_directory(self, access_token: str) -> List[DirectoryEntry]:
        """Walk every directory page (limit/offset) and return all entries."""
        entries: List[DirectoryEntry] = []
        offset = 0
        while True:
            data = await self._request(
                "GET",
                f"{self.api_url}/employer/directory",
                access_token=access_token,
                params={"limit": self.page_size, "offset": offset},
            )
            individuals = data.get("individuals") or []
            entries.extend(normalizer.normalize_directory_entry(raw) for raw in individuals)

            total = (data.get("paging") or {}).get("count")
            offset += len(individuals)
            if not individuals or total is None or offset >= total:
                return entries

    async def fetch_individual(self, access_token: str, individual_id: str) -> ProviderRecord:
        data = await self._request(
            "POST",
            f"{self.api_url}/employer/individual",
            access_token=access_token,
            json_body={"requests": [{"individual_id": individual_id}]},
        )
        responses = data.get("responses") or []
        if not responses:
            raise NotFound(f"Finch returned no individual for {individual_id}")
        body = self._item_body(responses[0], individual_id)
        return ProviderRecord(provider_record_id=individual_id, payload=body)

    async def fetch_payments(
        self, access_token: str, start_date: date, end_date: date
    ) -> List[ProviderRecord]:
        data = await self._request(
            "GET",
            f"{self.api_url}/employer/payment",
            access_token=access_token,
            params={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )
        payments = data if isinstance(data, list) else data.get("payments") or []
        return [
            ProviderRecord(provider_record_id=str(p.get("id", "")), payload=p)
            for p in payments
        ]

    async def fetch_pay_statements(self, access_token: str, payment_id: str) -> List[ProviderRecord]:
        """Return every pay statement of one payment, following per-request paging."""
        statements: List[ProviderRecord] = []
        offset = 0
        while True:
            data = await self._request(
                "POST",
                f"{self.api_url}/employer/pay-statement",
                access_token=access_token,
                json_body={"requests": [{"payment_id": payment_id, "limit": self.page_size, "offset": offset}]},
            )
            responses = data.get("responses") or []
            if not responses:
                raise NotFound(f"Finch returned no pay statements for payment {payment_id}")
            body = self._item_body(responses[0], payment_id)
            page = body.get("pay_statements") or []
            statements.extend(
                ProviderRecord(
                    provider_record_id=f"{payment_id}:{s.get('individual_id', '')}",
                    payload=s,
                )
                for s in page
            )

            total = (body.get("paging") or {}).get("count")
            offset += len(page)
            if not page or total is None or offset >= total:
                return statements

    # ─── Normalization ────────────────────────────────────────────────────────

    def normalize_individual(self, record, entry=None):
        return normalizer.normalize_individual(record, entry)

    def normalize_payment(self, record):
        return normalizer.normalize_payment(record)

    def normalize_pay_statement(self, payment_id, record):
        return normalizer.normalize_pay_statement(payment_id, record)
