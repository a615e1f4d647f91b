"""
Purchase order PDFs

Text is extracted with pdfminer, the document type is checked (CFDI
invoices, quotes and delivery notes are rejected), then the client, the
10-digit order number and the amount are read. The amount is the order's
subtotal; VAT is added on top.
"""

import io
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pdfminer.high_level import extract_text
from pdfminer.pdfparser import PDFSyntaxError
from pdfminer.psparser import PSException

from billex.exceptions import ParseError
from billex.models.invoice import ServiceEntry, money
from billex.utils.amounts import parse_amount

from .base import DocumentParser

logger = logging.getLogger(__name__)

PDF_MAGIC = b'%PDF'

PURCHASE_ORDER = 'PURCHASE_ORDER'
CFDI_INVOICE = 'CFDI_INVOICE'
QUOTE = 'QUOTE'
DELIVERY_NOTE = 'DELIVERY_NOTE'
UNKNOWN = 'UNKNOWN'

HEADER_CHARS = 1000

PURCHASE_ORDER_HEADER = re.compile(r'Pedido\s+de\s+compra', re.IGNORECASE)
CFDI_MARKERS = [
    re.compile(r'Folio\s+Fiscal', re.IGNORECASE),
    re.compile(r'Sello\s+digital\s+del\s+CFDI', re.IGNORECASE),
    re.compile(r'Cadena\s+original\s+del\s+complemento', re.IGNORECASE),
    re.compile(r'Este\s+documento\s+es\s+una\s+representaci[óo]n\s+impresa\s+de\s+un\s+CFDI', re.IGNORECASE),
    re.compile(r'Tipo\s+de\s+CFDI', re.IGNORECASE),
    re.compile(r'Versi[óo]n\s+CFDI', re.IGNORECASE),
    re.compile(r'M[ée]todo\s+de\s+pago.*?(PUE|PPD)', re.IGNORECASE),
]

KNOWN_CLIENTS = {
    'SOS': (re.compile(r'PROTECCION\s+S\.O\.S\.\s+JURIDICO', re.IGNORECASE), 'PROTECCION S.O.S. JURIDICO'),
    'ARSA': (re.compile(r'ARSA\s+ASESORIA\s+INTEGRAL\s+PROFESIONAL', re.IGNORECASE), 'ARSA ASESORIA INTEGRAL PROFESIONAL'),
    'INFO': (re.compile(r'INFOASIST\s+INFORMACION\s+Y\s+ASISTENCIA', re.IGNORECASE), 'INFOASIST INFORMACION Y ASISTENCIA'),
}

CLIENT_SECTION = re.compile(r'Desde:\s*Cliente\s*([\s\S]*?)Para:', re.IGNORECASE)
PROVIDER_SECTION = re.compile(r'Para:\s*([\s\S]*?)Condiciones\s+de\s+pago', re.IGNORECASE)

ORDER_PATTERNS = [
    re.compile(r'Pedido\s+de\s+compra:\s*(\d{10})\b', re.IGNORECASE),
    re.compile(r'Pedido\s+de\s+compra\s*\(Nuevo\)\s*(\d{10})\b', re.IGNORECASE),
    re.compile(r'(?<!\d)(\d{10})(?!\d)'),
]

AMOUNT_PATTERNS = [
    re.compile(r'Importe:\s*\$\s*([\d,.]+)\s*MXN', re.IGNORECASE),
    re.compile(r'Total.*?\$\s*([\d,.]+)', re.IGNORECASE),
    re.compile(r'Suma\s+total.*?\$\s*([\d,.]+)', re.IGNORECASE),
]

MIN_CONFIDENCE = 50


@dataclass
class OrderAnalysis:
    """What was read from a purchase order"""
    client_code: Optional[str] = None
    client_name: Optional[str] = None
    order_number: Optional[str] = None
    amount: Optional[Decimal] = None
    provider_name: Optional[str] = None
    confidence: int = 0
    errors: List[str] = field(default_factory=list)


def identify_document_type(text: str) -> str:
    """Classify a PDF's text; only purchase orders can be invoiced"""
    header = text[:HEADER_CHARS]

    if PURCHASE_ORDER_HEADER.search(header):
        if any(marker.search(text) for marker in CFDI_MARKERS):
            return CFDI_INVOICE
        return PURCHASE_ORDER

    if re.search(r'Factura', header, re.IGNORECASE) or re.search(r'Folio\s+Fiscal|CFDI', text, re.IGNORECASE):
        return CFDI_INVOICE
    if re.search(r'COTIZACI[ÓO]N|PRESUPUESTO|PROPUESTA\s+ECON[ÓO]MICA', header, re.IGNORECASE):
        return QUOTE
    if re.search(r'REMISI[ÓO]N|NOTA\s+DE\s+ENTREGA', header, re.IGNORECASE):
        return DELIVERY_NOTE
    return UNKNOWN


def _match_known_client(text: str) -> Optional[Tuple[str, str]]:
    for code, (pattern, full_name) in KNOWN_CLIENTS.items():
        if pattern.search(text):
            return code, full_name
    return None


def analyze_order_text(text: str) -> OrderAnalysis:
    """Read client, order number, amount and provider from order text"""
    analysis = OrderAnalysis()

    # Client: prefer the "Desde: Cliente ... Para:" block
    section = CLIENT_SECTION.search(text)
    if section:
        first_line = next((line.strip() for line in section.group(1).splitlines() if line.strip()), None)
        if first_line:
            analysis.client_name = first_line
            known = _match_known_client(first_line)
            if known:
                analysis.client_code, analysis.client_name = known
            analysis.confidence += 30

    if not analysis.client_name:
        known = _match_known_client(text)
        if known:
            analysis.client_code, analysis.client_name = known
            analysis.confidence += 30
        else:
            analysis.errors.append("client not identified")

    for pattern in ORDER_PATTERNS:
        match = pattern.search(text)
        if match:
            analysis.order_number = match.group(1)
            analysis.confidence += 35
            break
    else:
        analysis.errors.append("order number not found")

    for pattern in AMOUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            amount = parse_amount(match.group(1))
            if amount is not None:
                analysis.amount = amount
                analysis.confidence += 35
                break
    if analysis.amount is None:
        analysis.errors.append("amount not found")

    provider = PROVIDER_SECTION.search(text)
    if provider:
        analysis.provider_name = next(
            (
                line.strip() for line in provider.group(1).splitlines()
                if line.strip() and not any(word in line for word in ('Teléfono', 'Fax', 'Correo'))
            ),
            None
        )

    logger.debug(f"Order analysis confidence: {analysis.confidence}%")
    return analysis


class PurchaseOrderPdfParser(DocumentParser):
    """One purchase order per PDF, invoiced as a single line item"""

    format_name = 'purchase_order_pdf'

    def __init__(self, client_label: Optional[str] = None, vat_rate: Decimal = Decimal('0.16')):
        super().__init__(client_label)
        self.vat_rate = Decimal(str(vat_rate))

    @classmethod
    def sniff(cls, raw: bytes) -> bool:
        return bool(raw) and raw.lstrip()[:4] == PDF_MAGIC

    def extract_document_text(self, raw: bytes) -> str:
        if not self.sniff(raw):
            raise ParseError("not a PDF document")
        try:
            return extract_text(io.BytesIO(raw))
        except (PDFSyntaxError, PSException, ValueError, TypeError) as e:
            raise ParseError(f"unreadable PDF: {e}") from e

    def detect_sections(self, raw: bytes) -> List[Tuple[str, OrderAnalysis]]:
        text = self.extract_document_text(raw)
        if not text.strip():
            raise ParseError("PDF has no extractable text")

        document_type = identify_document_type(text)
        if document_type != PURCHASE_ORDER:
            logger.warning(f"Rejected PDF of type {document_type}")
            raise ParseError(f"document is a {document_type}, not a purchase order")

        analysis = analyze_order_text(text)
        name = f"PO {analysis.order_number}" if analysis.order_number else 'purchase order'
        return [(name, analysis)]

    def extract_services(self, analysis: OrderAnalysis) -> List[ServiceEntry]:
        problems = list(analysis.errors)
        if analysis.amount is not None and analysis.amount <= 0:
            problems.append("amount must be positive")
        if analysis.confidence < MIN_CONFIDENCE:
            problems.append(f"confidence too low ({analysis.confidence}%)")
        if not analysis.client_name or not analysis.order_number or analysis.amount is None or problems:
            raise ParseError(', '.join(problems) or "incomplete purchase order")

        return [ServiceEntry(
            id=analysis.order_number,
            description=f"Pedido de compra {analysis.order_number}",
            location=analysis.client_name,
            subtotal=analysis.amount,
            vat_amount=money(analysis.amount * self.vat_rate)
        )]

    def section_metadata(self, name: str, analysis: OrderAnalysis) -> Dict[str, Any]:
        return {
            'client_code': analysis.client_code,
            'client_name': analysis.client_name,
            'order_number': analysis.order_number,
            'provider_name': analysis.provider_name,
            'confidence': analysis.confidence
        }

    def section_client_label(self, name: str, analysis: OrderAnalysis) -> Optional[str]:
        return self.client_label or analysis.client_code
