"""
Tests for the command-line interface
"""

import json

import yaml
from click.testing import CliRunner

from billex.cli import cli
from billex.db.connection import Database
from billex.jobs import JobQueue

from conftest import stacked_workbook


class TestCli:

    def setup_method(self):
        self.runner = CliRunner()

    def invoke(self, tmp_path, *args):
        # Keep log lines out of the captured output
        config = tmp_path / 'cli.yaml'
        config.write_text(yaml.safe_dump({'logging': {'level': 'ERROR'}}))
        return self.runner.invoke(cli, ['--config', str(config), *args])

    def test_parse_json(self, tmp_path):
        path = tmp_path / 'services.xlsx'
        path.write_bytes(stacked_workbook({
            'Hoja1': ([('ESC1_1', 862.07, 137.93, 0)], 1000.00),
            'Hoja2': ([('ESC2_1', 431.03, 68.97, 0)], 450.00),
        }))

        result = self.invoke(tmp_path, 'parse', str(path), '--json')

        assert result.exit_code == 0, result.output
        document = json.loads(result.output)
        assert document['format'] == 'stacked_sheet'
        assert document['client'] == 'ESCOTEL'
        first, second = document['sections']
        assert first['computed_total'] == '1000.00'
        assert first['discrepancy'] is None
        assert second['discrepancy'] == '50.00'

    def test_parse_text(self, tmp_path):
        path = tmp_path / 'services.xlsx'
        path.write_bytes(stacked_workbook({'Hoja1': ([('ESC1_1', 100, 16, 0)], None)}))

        result = self.invoke(tmp_path, 'parse', str(path), '--format', 'escotel')

        assert result.exit_code == 0, result.output
        assert 'Format: stacked_sheet' in result.output
        assert 'Hoja1: 1 services, total 116.00' in result.output

    def test_parse_unsupported(self, tmp_path):
        path = tmp_path / 'notes.txt'
        path.write_text('hello')
        result = self.invoke(tmp_path, 'parse', str(path))
        assert result.exit_code != 0
        assert 'Error' in result.output

    def test_init_and_job_status(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'billex.db'}"
        result = self.invoke(tmp_path, 'init', '--database-url', url)
        assert result.exit_code == 0, result.output
        assert 'Initialized database' in result.output

        db = Database(url)
        job_id = JobQueue(db).enqueue('batch_generation', {'owner_id': 'u1', 'batch_id': 'b1'})
        db.dispose()

        result = self.invoke(tmp_path, 'job', job_id)
        assert result.exit_code == 0, result.output
        job = json.loads(result.output)
        assert job['status'] == 'QUEUED'
        assert job['payload']['batch_id'] == 'b1'

        result = self.invoke(tmp_path, 'job', 'job_missing')
        assert result.exit_code != 0
