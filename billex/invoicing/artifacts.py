"""
Download generated invoices and bundle them into one zip
"""

import logging
import zipfile
from pathlib import Path
from typing import Iterable, List, Tuple, Union

from billex.exceptions import ProviderError
from billex.models.invoice import InvoiceResult

from .provider import InvoicingProvider, TenantCredentials

logger = logging.getLogger(__name__)


def _entry_name(result: InvoiceResult, kind: str) -> str:
    stem = result.folio or result.invoice_id
    label = ''.join(c if c.isalnum() or c in '-_' else '_' for c in result.source_label)
    return f"{kind}/{label}_{stem}.{kind}"


async def download_batch_artifacts(
    provider: InvoicingProvider,
    credentials: TenantCredentials,
    results: Iterable[InvoiceResult],
    destination: Union[str, Path],
    kinds: Tuple[str, ...] = ('pdf', 'xml')
) -> Tuple[Path, List[str]]:
    """
    Zip the rendered invoices of every successful result

    A failed download is logged and listed, not raised, so one missing
    file does not lose the rest of the bundle.

    Returns:
        (zip path, list of failed downloads)
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    failures: List[str] = []

    with zipfile.ZipFile(destination, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
        for result in results:
            if not result.succeeded or not result.invoice_id:
                continue
            for kind in kinds:
                try:
                    content = await provider.download_artifact(credentials, result.invoice_id, kind)
                except ProviderError as e:
                    logger.warning(f"Could not download {kind} for invoice {result.invoice_id}: {e}")
                    failures.append(f"{result.invoice_id}.{kind}")
                    continue
                archive.writestr(_entry_name(result, kind), content)

    logger.info(f"Wrote invoice bundle {destination} ({len(failures)} downloads failed)")
    return destination, failures
