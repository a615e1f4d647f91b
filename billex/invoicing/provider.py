"""
External invoicing provider client

The provider assigns folios server-side; the engine only calls it under
the tenant's folio lock. HTTP failures are retried by the shared retry
helper with bounded attempts, except for responses that will not change
on retry (bad request, auth, not found, unprocessable).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from billex.config.billex_config import BillexConfig
from billex.exceptions import ProviderError
from billex.models.invoice import to_decimal
from billex.utils.retry import RetryPolicy, retry_async

from .rate_limiter import RateLimitConfig, RateLimiter

logger = logging.getLogger(__name__)

ARTIFACT_KINDS = ('pdf', 'xml')
NON_RETRYABLE_STATUS = frozenset({400, 401, 403, 404, 422})


@dataclass(frozen=True)
class TenantCredentials:
    """Provider credentials of one tenant"""
    tenant_id: str
    api_key: str


@dataclass
class ProviderInvoice:
    """What the provider returns for a created invoice"""
    id: str
    series: Optional[str]
    folio_number: Optional[int]
    total: Decimal
    raw: Optional[Dict[str, Any]] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> 'ProviderInvoice':
        if not isinstance(data, dict) or not data.get('id'):
            raise ProviderError("provider response has no invoice id", retryable=False)
        folio = data.get('folio_number')
        try:
            folio_number = int(folio) if folio is not None else None
            total = to_decimal(data.get('total', 0)) or Decimal('0')
        except (TypeError, ValueError) as e:
            # The invoice exists on the provider side; keep its id in the message
            raise ProviderError(
                f"provider response for invoice {data['id']} is malformed: {e}",
                retryable=False
            ) from e
        return cls(
            id=str(data['id']),
            series=data.get('series'),
            folio_number=folio_number,
            total=total,
            raw=data
        )


class InvoicingProvider(ABC):
    """
    Abstract invoicing provider

    Implementations raise ProviderError for every failure, with retryable
    set when repeating the call could succeed.
    """

    @abstractmethod
    async def create_invoice(self, credentials: TenantCredentials, spec: Dict[str, Any]) -> ProviderInvoice:
        """Register an invoice; the provider assigns series and folio"""
        pass

    @abstractmethod
    async def download_artifact(self, credentials: TenantCredentials, invoice_id: str, kind: str) -> bytes:
        """Fetch the rendered invoice ('pdf' or 'xml')"""
        pass

    async def close(self) -> None:
        pass


class HttpInvoicingProvider(InvoicingProvider):
    """
    Provider client over HTTP (Facturapi-style REST API)

    Usage:
        provider = HttpInvoicingProvider.from_config()
        invoice = await provider.create_invoice(credentials, spec)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, base_delay=1.0, max_delay=5.0)
        self.rate_limiter = rate_limiter
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport
        )

    @classmethod
    def from_config(cls, config: Optional[BillexConfig] = None, **kwargs: Any) -> 'HttpInvoicingProvider':
        config = config or BillexConfig()
        provider = config.section('provider')
        return cls(
            base_url=provider.get('base_url', 'https://www.facturapi.io/v2'),
            timeout=float(provider.get('request_timeout_seconds', 20)),
            retry_policy=RetryPolicy.from_config(provider.get('retry') or {}),
            rate_limiter=RateLimiter(RateLimitConfig.from_dict(provider.get('rate_limit') or {})),
            **kwargs
        )

    def _headers(self, credentials: TenantCredentials) -> Dict[str, str]:
        return {'Authorization': f'Bearer {credentials.api_key}'}

    @staticmethod
    def _error_from_response(response: httpx.Response) -> ProviderError:
        try:
            message = response.json().get('message') or response.text
        except ValueError:
            message = response.text
        return ProviderError(
            f"Provider returned {response.status_code}: {message}",
            status_code=response.status_code,
            retryable=response.status_code not in NON_RETRYABLE_STATUS
        )

    async def _request(
        self,
        method: str,
        path: str,
        credentials: TenantCredentials,
        json: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        async def attempt() -> httpx.Response:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire(credentials.tenant_id)
            try:
                # httpx timeouts apply per phase; wait_for bounds the whole request
                response = await asyncio.wait_for(
                    self._client.request(method, path, json=json, headers=self._headers(credentials)),
                    timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                raise ProviderError(f"Provider request exceeded its {self.timeout}s deadline") from e
            except httpx.TimeoutException as e:
                raise ProviderError(f"Provider request timed out after {self.timeout}s: {e}") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"Provider request failed: {e}") from e
            if response.status_code >= 400:
                raise self._error_from_response(response)
            return response

        return await retry_async(
            attempt,
            self.retry_policy,
            retry_on=(ProviderError,),
            should_retry=lambda e: getattr(e, 'retryable', False),
            description=f"{method} {path}"
        )

    async def create_invoice(self, credentials: TenantCredentials, spec: Dict[str, Any]) -> ProviderInvoice:
        response = await self._request('POST', '/invoices', credentials, json=spec)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Provider returned invalid JSON: {e}", retryable=False) from e
        invoice = ProviderInvoice.from_response(data)
        logger.info(
            f"Created invoice {invoice.id} ({invoice.series}-{invoice.folio_number}) "
            f"for tenant {credentials.tenant_id}"
        )
        return invoice

    async def download_artifact(self, credentials: TenantCredentials, invoice_id: str, kind: str) -> bytes:
        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"Unknown artifact kind: {kind}")
        response = await self._request('GET', f'/invoices/{invoice_id}/{kind}', credentials)
        return response.content

    async def close(self) -> None:
        await self._client.aclose()
