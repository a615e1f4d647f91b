"""
Tests for the provider client, payload construction, tenant gate and rate limiter
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from billex.config.billex_config import BillexConfig
from billex.exceptions import ProviderError
from billex.invoicing import (
    HttpInvoicingProvider,
    InvoiceOptions,
    RateLimitConfig,
    RateLimiter,
    SubscriptionSnapshot,
    SubscriptionTenantGate,
    TenantCredentials,
    build_invoice_spec,
)
from billex.models import CanonicalLineItem, ServiceEntry
from billex.utils.retry import RetryPolicy

from conftest import FakeClock

CREDENTIALS = TenantCredentials(tenant_id='t1', api_key='sk_test_123')


class TestBuildInvoiceSpec:
    """Provider payload for one line item"""

    def setup_method(self):
        self.item = CanonicalLineItem(
            source_label='Hoja1',
            services=[
                ServiceEntry(id='ESC1_1', tax_key='78101800', description='Arrastre', location='CDMX',
                             subtotal='1000.00', vat_amount='160.00', withholding_amount='40.00'),
                ServiceEntry(id='ESC1_2', description='Banderazo', subtotal='250.00', vat_amount='40.00'),
            ]
        )

    def test_one_item_per_service(self):
        spec = build_invoice_spec(self.item, 'cus_1')
        assert spec['customer'] == 'cus_1'
        assert spec['use'] == 'G03'
        assert spec['payment_form'] == '99'
        assert spec['payment_method'] == 'PPD'
        assert spec['currency'] == 'MXN'
        assert len(spec['items']) == 2

        first = spec['items'][0]
        assert first['quantity'] == 1
        assert first['product']['price'] == 1000.0
        assert first['product']['description'] == 'ID: ESC1_1 - Arrastre - CDMX'
        assert first['product']['unit_key'] == 'E48'
        assert first['product']['tax_included'] is False
        assert [t['withholding'] for t in first['product']['taxes']] == [False, True]
        assert first['product']['taxes'][1]['rate'] == 0.04

    def test_no_withholding_tax_without_withholding(self):
        second = build_invoice_spec(self.item, 'cus_1')['items'][1]
        assert second['product']['description'] == 'ID: ESC1_2 - Banderazo'
        assert len(second['product']['taxes']) == 1
        assert second['product']['taxes'][0]['rate'] == 0.16

    def test_product_key_precedence(self):
        spec = build_invoice_spec(self.item, 'cus_1')
        # Valid tax key on the service, otherwise the configured default
        assert spec['items'][0]['product']['product_key'] == '78101800'
        assert spec['items'][1]['product']['product_key'] == InvoiceOptions().product_key

        grouped = self.item.model_copy(update={'metadata': {'product_key': '90121800'}})
        spec = build_invoice_spec(grouped, 'cus_1')
        assert {i['product']['product_key'] for i in spec['items']} == {'90121800'}

    def test_options_from_config(self):
        config = BillexConfig.setup(invoice={'payment_method': 'PUE', 'unit_key': 'H87'})
        options = InvoiceOptions.from_config(config)
        spec = build_invoice_spec(self.item, 'cus_1', options)
        assert spec['payment_method'] == 'PUE'
        assert spec['items'][0]['product']['unit_key'] == 'H87'


class TestHttpInvoicingProvider:
    """HTTP client behaviour against a mock transport"""

    def make_provider(self, handler, attempts=3):
        return HttpInvoicingProvider(
            base_url='https://api.example.test/v2',
            retry_policy=RetryPolicy(max_attempts=attempts, base_delay=0, max_delay=0),
            transport=httpx.MockTransport(handler)
        )

    @pytest.mark.asyncio
    async def test_create_invoice(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={'id': 'inv_1', 'series': 'A', 'folio_number': 101, 'total': 1160.0})

        provider = self.make_provider(handler)
        try:
            invoice = await provider.create_invoice(CREDENTIALS, {'customer': 'cus_1', 'items': []})
        finally:
            await provider.close()

        assert invoice.id == 'inv_1'
        assert invoice.folio_number == 101
        assert invoice.total == Decimal('1160.0')
        assert seen[0].method == 'POST'
        assert seen[0].url.path == '/v2/invoices'
        assert seen[0].headers['Authorization'] == 'Bearer sk_test_123'
        assert json.loads(seen[0].content)['customer'] == 'cus_1'

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        responses = [
            httpx.Response(503, json={'message': 'busy'}),
            httpx.Response(200, json={'id': 'inv_2', 'series': 'A', 'folio_number': 102, 'total': 10}),
        ]
        provider = self.make_provider(lambda request: responses.pop(0))
        try:
            invoice = await provider.create_invoice(CREDENTIALS, {})
        finally:
            await provider.close()
        assert invoice.id == 'inv_2'
        assert responses == []

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(422, json={'message': 'invalid customer'})

        provider = self.make_provider(handler)
        try:
            with pytest.raises(ProviderError) as exc_info:
                await provider.create_invoice(CREDENTIALS, {})
        finally:
            await provider.close()

        assert len(calls) == 1
        assert exc_info.value.status_code == 422
        assert exc_info.value.retryable is False
        assert 'invalid customer' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text='down')

        provider = self.make_provider(handler, attempts=2)
        try:
            with pytest.raises(ProviderError):
                await provider.create_invoice(CREDENTIALS, {})
        finally:
            await provider.close()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_error(self):
        def handler(request):
            raise httpx.ReadTimeout('slow', request=request)

        provider = self.make_provider(handler, attempts=1)
        try:
            with pytest.raises(ProviderError, match='timed out'):
                await provider.create_invoice(CREDENTIALS, {})
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_response_without_id(self):
        provider = self.make_provider(lambda request: httpx.Response(200, json={'series': 'A'}))
        try:
            with pytest.raises(ProviderError, match='no invoice id'):
                await provider.create_invoice(CREDENTIALS, {})
        finally:
            await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize('body', [
        {'id': 'inv_9', 'series': 'A', 'folio_number': 'A-2', 'total': 10},
        {'id': 'inv_9', 'series': 'A', 'folio_number': 2, 'total': '12-34'},
        {'id': 'inv_9', 'series': 'A', 'folio_number': [2], 'total': 10},
    ])
    async def test_malformed_response_is_not_retried(self, body):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=body)

        provider = self.make_provider(handler)
        try:
            with pytest.raises(ProviderError, match='inv_9') as exc_info:
                await provider.create_invoice(CREDENTIALS, {})
        finally:
            await provider.close()

        assert exc_info.value.retryable is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_whole_request_has_a_deadline(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={'id': 'inv_1'})

        provider = HttpInvoicingProvider(
            base_url='https://api.example.test/v2',
            timeout=0.05,
            retry_policy=RetryPolicy(max_attempts=1, base_delay=0, max_delay=0),
            transport=httpx.MockTransport(handler)
        )
        try:
            with pytest.raises(ProviderError, match='deadline'):
                await provider.create_invoice(CREDENTIALS, {})
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_download_artifact(self):
        def handler(request):
            assert request.url.path == '/v2/invoices/inv_1/pdf'
            return httpx.Response(200, content=b'%PDF-1.4 invoice')

        provider = self.make_provider(handler)
        try:
            assert await provider.download_artifact(CREDENTIALS, 'inv_1', 'pdf') == b'%PDF-1.4 invoice'
            with pytest.raises(ValueError):
                await provider.download_artifact(CREDENTIALS, 'inv_1', 'docx')
        finally:
            await provider.close()


class TestSubscriptionTenantGate:
    """Subscription-driven generation gate"""

    @pytest.mark.asyncio
    async def test_active_subscription_allowed(self):
        gate = SubscriptionTenantGate(lambda tenant_id: SubscriptionSnapshot(status='active', invoices_used=3, invoice_limit=100))
        decision = await gate.is_generation_allowed('t1')
        assert decision.allowed
        assert decision.subscription_status == 'active'

    @pytest.mark.asyncio
    async def test_async_lookup(self):
        async def lookup(tenant_id):
            return SubscriptionSnapshot(status='canceled')

        decision = await SubscriptionTenantGate(lookup).is_generation_allowed('t1')
        assert not decision.allowed
        assert decision.reason == 'subscription_canceled'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('snapshot, reason', [
        (None, 'no_subscription'),
        (SubscriptionSnapshot(status='active', tenant_active=False), 'tenant_inactive'),
        (SubscriptionSnapshot(status='active', invoices_used=100, invoice_limit=100), 'invoice_limit_reached'),
        (SubscriptionSnapshot(status='trial', trial_ends_at=datetime.now(timezone.utc) - timedelta(days=1)), 'trial_expired'),
    ])
    async def test_rejections(self, snapshot, reason):
        decision = await SubscriptionTenantGate(lambda tenant_id: snapshot).is_generation_allowed('t1')
        assert not decision.allowed
        assert decision.reason == reason


class TestRateLimiter:
    """Per-tenant token buckets"""

    def setup_method(self):
        self.clock = FakeClock()
        self.sleeps = []

        async def fake_sleep(seconds):
            self.sleeps.append(seconds)
            self.clock.advance(seconds)

        self.limiter = RateLimiter(
            RateLimitConfig(requests_per_minute=60, burst_size=2),
            clock=self.clock,
            sleep=fake_sleep
        )

    @pytest.mark.asyncio
    async def test_burst_then_wait(self):
        await self.limiter.acquire('t1')
        await self.limiter.acquire('t1')
        assert self.sleeps == []
        await self.limiter.acquire('t1')
        assert self.sleeps == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_tenants_have_separate_buckets(self):
        for _ in range(2):
            await self.limiter.acquire('t1')
        await self.limiter.acquire('t2')
        assert self.sleeps == []
        assert self.limiter.get_stats()['tenants'] == 2

    def test_config_from_dict(self):
        config = RateLimitConfig.from_dict({'requests_per_minute': 30})
        assert config.requests_per_minute == 30
        assert config.burst_size == 10
