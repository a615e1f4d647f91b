"""
End-to-end tests through BillexEngine: prepare, confirm inline, confirm as a job
"""

import zipfile
from decimal import Decimal

import openpyxl
import pytest

from billex import BillexEngine
from billex.config.billex_config import BillexConfig
from billex.db.connection import Database
from billex.exceptions import BatchNotFoundError, ParseError, ValidationError
from billex.invoicing import TenantCredentials
from billex.models import JobStatus
from billex.store import InMemoryKeyValueStore

from conftest import FakeProvider, FlakyLockStore, stacked_workbook


def three_sheet_workbook():
    return stacked_workbook({
        'Hoja1': ([('ESC1_1', 862.07, 137.93, 0)], 1000.00),
        'Hoja2': ([('ESC2_1', 431.03, 68.97, 0)], 450.00),
        'Hoja3': ([('ESC3_1', 2000000, 320000, 0)], None),
    })


class TestBillexEngine:

    def setup_method(self):
        self.delivered = []

    def make_engine(self, tmp_path, store=None, **jobs):
        BillexConfig.setup(jobs={'artifact_dir': str(tmp_path / 'artifacts'), **jobs})
        db = Database('sqlite://')
        db.create_all()
        self.provider = FakeProvider()
        return BillexEngine(
            store=store or InMemoryKeyValueStore(),
            db=db,
            provider=self.provider,
            credentials_resolver=lambda tenant_id: TenantCredentials(tenant_id, 'sk_test')
        )

    def deliver(self, job, outcome):
        self.delivered.append((job, outcome))

    @pytest.mark.asyncio
    async def test_prepare_batch_excludes_invalid_sections(self, tmp_path):
        engine = self.make_engine(tmp_path)
        prepared = await engine.prepare_batch(three_sheet_workbook(), 'u1', 't1', 'cus_1')

        batch = prepared.batch
        assert [i.source_label for i in batch.line_items] == ['Hoja1', 'Hoja2']
        assert batch.source_format == 'stacked_sheet'
        assert batch.client_label == 'ESCOTEL'
        assert batch.metadata['excluded_sections'] == ['Hoja3']
        assert [r.source_label for r in prepared.excluded] == ['Hoja3']
        assert [r.source_label for r in prepared.discrepancies] == ['Hoja2']
        assert batch.expires_at is not None

        stored = await engine.batch_store.load('u1', batch.batch_id)
        assert stored.item_count == 2
        await engine.close()

    @pytest.mark.asyncio
    async def test_prepare_batch_nothing_valid(self, tmp_path):
        engine = self.make_engine(tmp_path)
        raw = stacked_workbook({'Hoja1': ([('ESC1_1', 2000000, 0, 0)], None)})
        with pytest.raises(ValidationError, match='No section passed'):
            await engine.prepare_batch(raw, 'u1', 't1', 'cus_1')
        await engine.close()

    @pytest.mark.asyncio
    async def test_prepare_batch_no_services(self, tmp_path):
        engine = self.make_engine(tmp_path)
        raw = stacked_workbook({'Hoja1': ([], None)})
        with pytest.raises(ParseError, match='No section with service records'):
            await engine.prepare_batch(raw, 'u1', 't1', 'cus_1', source_format='escotel')
        await engine.close()

    @pytest.mark.asyncio
    async def test_confirm_inline(self, tmp_path):
        engine = self.make_engine(tmp_path)
        prepared = await engine.prepare_batch(three_sheet_workbook(), 'u1', 't1', 'cus_1')

        assert not engine.should_run_async(prepared.batch)
        report = await engine.confirm('u1', prepared.batch.batch_id)

        assert report.succeeded_count == 2
        assert [r.folio for r in report.results] == ['A-1', 'A-2']
        assert report.results[1].discrepancy.delta == Decimal('50.00')
        assert len(engine.ledger.list_for_tenant('t1')) == 2

        with pytest.raises(BatchNotFoundError):
            await engine.confirm('u1', prepared.batch.batch_id)
        await engine.close()

    @pytest.mark.asyncio
    async def test_async_threshold(self, tmp_path):
        BillexConfig.setup(orchestrator={'async_threshold_items': 1})
        engine = self.make_engine(tmp_path)
        prepared = await engine.prepare_batch(three_sheet_workbook(), 'u1', 't1', 'cus_1')
        assert engine.should_run_async(prepared.batch)
        await engine.close()

    @pytest.mark.asyncio
    async def test_confirm_async_unknown_batch(self, tmp_path):
        engine = self.make_engine(tmp_path)
        with pytest.raises(BatchNotFoundError):
            await engine.confirm_async('u1', 'does-not-exist')
        assert engine.queue.stats()['total'] == 0
        await engine.close()

    @pytest.mark.asyncio
    async def test_confirm_async_writes_report(self, tmp_path):
        engine = self.make_engine(tmp_path)
        prepared = await engine.prepare_batch(three_sheet_workbook(), 'u1', 't1', 'cus_1')

        job_id = await engine.confirm_async('u1', prepared.batch.batch_id)
        assert engine.queue.get(job_id).status == JobStatus.QUEUED

        worker = engine.create_worker(self.deliver)
        assert await worker.run_once() == 1

        job = engine.queue.get(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.progress == 100
        assert job.result_artifact_path.endswith('.xlsx')
        assert job.scheduled_cleanup_at is not None

        workbook = openpyxl.load_workbook(job.result_artifact_path)
        rows = list(workbook['Invoices'].iter_rows(min_row=2, values_only=True))
        assert [r[0] for r in rows] == ['Hoja1', 'Hoja2', 'TOTAL']
        assert rows[1][9] == 'YES'
        assert rows[1][8] == pytest.approx(50.0)

        delivered_job, outcome = self.delivered[0]
        assert delivered_job.job_id == job_id
        assert outcome.summary['succeeded'] == 2
        assert outcome.summary['folios'] == ['A-1', 'A-2']
        assert outcome.summary['discrepancies'] == ['Hoja2']
        await engine.close()

    @pytest.mark.asyncio
    async def test_confirm_async_with_invoice_bundle(self, tmp_path):
        engine = self.make_engine(tmp_path)
        prepared = await engine.prepare_batch(three_sheet_workbook(), 'u1', 't1', 'cus_1')

        job_id = await engine.confirm_async('u1', prepared.batch.batch_id, include_invoices=True)
        await engine.create_worker(self.deliver).run_once()

        job = engine.queue.get(job_id)
        assert job.result_artifact_path.endswith('.zip')
        with zipfile.ZipFile(job.result_artifact_path) as archive:
            names = archive.namelist()
            assert archive.read('pdf/Hoja1_A-1.pdf') == b'pdf:inv_1'
        assert 'xml/Hoja2_A-2.xml' in names
        assert f'batch_{prepared.batch.batch_id}.xlsx' in names
        await engine.close()

    @pytest.mark.asyncio
    async def test_batch_expired_before_worker_ran(self, tmp_path):
        engine = self.make_engine(tmp_path)
        prepared = await engine.prepare_batch(three_sheet_workbook(), 'u1', 't1', 'cus_1')
        job_id = await engine.confirm_async('u1', prepared.batch.batch_id)
        await engine.batch_store.delete('u1', prepared.batch.batch_id)

        await engine.create_worker(self.deliver).run_once()

        job = engine.queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert self.delivered[0][1] is None
        assert self.provider.calls == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_batch_job_failing_midway_is_not_rerun(self, tmp_path):
        engine = self.make_engine(
            tmp_path,
            store=FlakyLockStore(fail_on=2),
            max_attempts=3,
            retry_base_delay_seconds=0
        )
        prepared = await engine.prepare_batch(three_sheet_workbook(), 'u1', 't1', 'cus_1')
        job_id = await engine.confirm_async('u1', prepared.batch.batch_id)

        worker = engine.create_worker(self.deliver)
        await worker.run_once()
        assert await worker.run_once() == 0

        job = engine.queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert 'connection reset' in job.error
        assert self.delivered[0][1] is None

        # Hoja1 was issued exactly once; Hoja2 never reached the provider
        descriptions = [spec['items'][0]['product']['description'] for _, spec in self.provider.calls]
        assert descriptions == ['ID: ESC1_1 - Arrastre de vehiculo - CDMX']
        assert [r['source_label'] for r in engine.ledger.list_for_tenant('t1')] == ['Hoja1']
        with pytest.raises(BatchNotFoundError):
            await engine.batch_store.load('u1', prepared.batch.batch_id)
        await engine.close()
