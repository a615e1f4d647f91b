"""
Billex CLI commands

This module provides command-line interface for Billex operations.
"""

import asyncio
import json
from pathlib import Path

import click

from billex.config.billex_config import BillexConfig
from billex.config.logging_setup import setup_logging
from billex.db.connection import Database
from billex.exceptions import BillexError
from billex.extraction.factory import ParserFactory, parse
from billex.jobs.queue import JobQueue
from billex.validation.guard import AmountGuard


def _load_config(config_path):
    config = BillexConfig.from_file(config_path) if config_path else BillexConfig()
    setup_logging(config)
    return config


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True), help='Path to configuration file')
@click.pass_context
def cli(ctx, config_path):
    """Billex command-line interface"""
    ctx.ensure_object(dict)
    ctx.obj['config'] = _load_config(config_path)


@cli.command()
@click.option('--database-url', help='SQLAlchemy URL (defaults to database.url)')
@click.option('--save', is_flag=True, help='Write the effective configuration to ~/.billex/config.yaml')
@click.pass_context
def init(ctx, database_url, save):
    """Create the database tables"""
    config = ctx.obj['config']
    if database_url:
        config.set('database.url', database_url)

    db = Database(config=config)
    db.create_all()
    click.echo(f'Initialized database at {db.url}')

    if save:
        path = config.save()
        click.echo(f'Configuration saved to {path}')


@cli.command('parse')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--format', 'source_format', type=click.Choice(sorted(ParserFactory.formats())),
              help='Source format or client alias (sniffed when omitted)')
@click.option('--client', 'client_label', help='Client label for amount limits')
@click.option('--json', 'as_json', is_flag=True, help='Print a JSON document instead of lines')
@click.pass_context
def parse_command(ctx, file, source_format, client_label, as_json):
    """Parse a document and show its sections, totals and discrepancies"""
    config = ctx.obj['config']
    raw = Path(file).read_bytes()

    try:
        options = {'client_label': client_label} if client_label else {}
        document = parse(raw, source_format, **options)
    except BillexError as e:
        click.echo(f'Error: {e}', err=True)
        raise click.Abort()

    guard = AmountGuard.from_config(config)
    label = client_label or document.client_label
    reviews = {r.source_label: r for r in guard.review_all(document.line_items, label)}

    sections = []
    for section in document.sections:
        entry = {'section': section.name}
        if section.error:
            entry['error'] = section.error
        elif section.empty:
            entry['empty'] = True
        else:
            review = reviews[section.name]
            entry.update({
                'services': section.line_item.service_count,
                'computed_total': str(section.line_item.computed_total),
                'declared_total': (
                    str(section.line_item.declared_total)
                    if section.line_item.declared_total is not None else None
                ),
                'discrepancy': str(review.discrepancy.delta) if review.discrepancy.exceeds else None,
                'invalid': review.error
            })
        sections.append(entry)

    if as_json:
        click.echo(json.dumps({
            'format': document.format,
            'client': document.client_label,
            'sections': sections
        }, indent=2))
        return

    click.echo(f'Format: {document.format}  Client: {document.client_label or "-"}')
    for entry in sections:
        if 'error' in entry:
            click.echo(f"  {entry['section']}: ERROR {entry['error']}")
        elif entry.get('empty'):
            click.echo(f"  {entry['section']}: no services")
        else:
            line = (
                f"  {entry['section']}: {entry['services']} services, "
                f"total {entry['computed_total']}"
            )
            if entry['declared_total'] is not None:
                line += f" (declared {entry['declared_total']})"
            if entry['discrepancy']:
                line += f" DISCREPANCY {entry['discrepancy']}"
            if entry['invalid']:
                line += f" INVALID: {entry['invalid']}"
            click.echo(line)


@cli.command()
@click.pass_context
def worker(ctx):
    """Run the async job worker until interrupted"""
    from billex.engine import BillexEngine
    from billex.notifications.sink import LoggingNotificationSink, fire_and_forget

    config = ctx.obj['config']
    sink = LoggingNotificationSink()

    def deliver(job, outcome):
        recipient = job.payload.get('owner_id') or job.payload.get('tenant_id') or job.job_id
        if outcome is None:
            fire_and_forget(sink, recipient, f'Job {job.job_id} failed: {job.error}')
        else:
            fire_and_forget(sink, recipient, f'Job {job.job_id} finished', outcome.artifact_path)

    async def main():
        engine = await BillexEngine.create(config)
        try:
            await engine.create_worker(deliver).run()
        finally:
            await engine.close()

    asyncio.run(main())


@cli.command('job')
@click.argument('job_id')
@click.pass_context
def job_status(ctx, job_id):
    """Show the status of an async job"""
    queue = JobQueue(Database(config=ctx.obj['config']))
    job = queue.get(job_id)
    if job is None:
        click.echo(f'Job {job_id} not found', err=True)
        raise click.Abort()
    click.echo(json.dumps(job.model_dump(mode='json'), indent=2))


if __name__ == '__main__':
    cli()
