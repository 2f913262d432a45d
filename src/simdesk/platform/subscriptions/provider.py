"""
eSIM provisioning provider client.

Thin httpx client for the provider's status query endpoint. Only the
reconciler uses it, one order at a time; there is no bulk path.
"""

import asyncio
import hashlib
import hmac
import json
import uuid
from typing import Any

import httpx
import structlog

from simdesk.platform.core.clock import Clock, SystemClock
from simdesk.platform.settings import Settings, settings
from simdesk.platform.subscriptions.classifier import ProviderStatus

logger = structlog.get_logger(__name__)

QUERY_PATH = "/esim/query"


class EsimProviderError(Exception):
    """Base exception for provider client errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EsimProviderAuthenticationError(EsimProviderError):
    """Credentials rejected by the provider."""

    pass


class EsimProviderTimeoutError(EsimProviderError):
    """Request did not complete within the configured timeout."""

    pass


class EsimAccessClient:
    """Signed JSON client for the provider API."""

    def __init__(
        self,
        base_url: str,
        access_code: str | None,
        secret_key: str | None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_code = access_code
        self.secret_key = secret_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.clock = clock or SystemClock()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls, config: Settings | None = None, **kwargs: Any
    ) -> "EsimAccessClient":
        provider = (config or settings).provider
        return cls(
            base_url=provider.base_url,
            access_code=provider.access_code,
            secret_key=provider.secret_key,
            timeout=provider.timeout_seconds,
            max_retries=provider.max_retries,
            retry_backoff=provider.retry_backoff_seconds,
            **kwargs,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_code and self.secret_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def sign(self, timestamp: str, request_id: str, body: str) -> str:
        """HMAC-SHA256 over timestamp + request id + access code + body, hex lower-case."""
        message = f"{timestamp}{request_id}{self.access_code or ''}{body}"
        return hmac.new(
            (self.secret_key or "").encode(), message.encode(), hashlib.sha256
        ).hexdigest()

    def _signed_headers(self, body: str) -> dict[str, str]:
        timestamp = str(int(self.clock.now().timestamp() * 1000))
        request_id = uuid.uuid4().hex
        return {
            "RT-AccessCode": self.access_code or "",
            "RT-Timestamp": timestamp,
            "RT-RequestID": request_id,
            "RT-Signature": self.sign(timestamp, request_id, body),
        }

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.is_configured:
            raise EsimProviderAuthenticationError("Provider credentials are not configured")

        client = await self._get_client()
        body = json.dumps(payload, separators=(",", ":"))

        try:
            response = await client.post(path, content=body, headers=self._signed_headers(body))
        except httpx.TimeoutException as e:
            logger.error("Provider request timeout", path=path, error=str(e))
            raise EsimProviderTimeoutError(f"Request timeout: {path}") from e
        except httpx.RequestError as e:
            logger.error("Provider request error", path=path, error=str(e))
            raise EsimProviderError(f"Request failed: {e}") from e

        if response.status_code in (401, 403):
            raise EsimProviderAuthenticationError(
                "Authentication failed with provider", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise EsimProviderError(
                f"Provider API error: {response.text[:200]}", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EsimProviderError("Provider returned a non-JSON body", response.status_code) from e

        if not data.get("success", False):
            raise EsimProviderError(
                f"Provider rejected request: {data.get('errorMsg') or data.get('errorCode')}",
                status_code=response.status_code,
            )
        return data

    async def query_order(self, order_no: str) -> dict[str, Any]:
        """Raw query response for one order, retried on transient failures."""
        payload = {"orderNo": order_no, "pager": {"pageSize": 5, "pageNum": 1}}
        last_error: EsimProviderError | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._post(QUERY_PATH, payload)
            except EsimProviderAuthenticationError:
                raise
            except EsimProviderError as e:
                last_error = e
                retryable = e.status_code is None or e.status_code >= 500 or e.status_code == 429
                if not retryable or attempt == self.max_retries:
                    break
                logger.warning(
                    "Provider query failed, retrying",
                    order_no=order_no,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))

        assert last_error is not None
        raise last_error

    async def query_status(self, order_no: str) -> ProviderStatus | None:
        """Current provider status of one order, or None when the order is unknown upstream."""
        data = await self.query_order(order_no)
        esim_list = (data.get("obj") or {}).get("esimList") or []
        if not esim_list:
            return None
        record = esim_list[0]
        if not isinstance(record, dict):
            return None
        return ProviderStatus.from_payload(record)


__all__ = [
    "EsimAccessClient",
    "EsimProviderAuthenticationError",
    "EsimProviderError",
    "EsimProviderTimeoutError",
]
