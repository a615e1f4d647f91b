"""
Document parser interface

Each source format (an insurer's spreadsheet layout, a vendor's PDF) is one
DocumentParser. Parsing is a pure transformation of bytes: downloading and
decoding happen in the caller.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from billex.exceptions import ParseError
from billex.models.invoice import CanonicalLineItem, ServiceEntry, money

logger = logging.getLogger(__name__)


@dataclass
class ParsedSection:
    """
    One named sub-section of a document (a sheet, a group, a page)

    A section with no service records has neither a line item nor an
    error: it is empty, which is normal for mixed documents.
    """
    name: str
    line_item: Optional[CanonicalLineItem] = None
    error: Optional[str] = None
    totals: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return self.line_item is None and self.error is None


@dataclass
class ParsedDocument:
    """Result of parsing one document"""
    format: str
    sections: List[ParsedSection] = field(default_factory=list)
    client_label: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def line_items(self) -> List[CanonicalLineItem]:
        return [s.line_item for s in self.sections if s.line_item is not None]

    @property
    def empty_sections(self) -> List[ParsedSection]:
        return [s for s in self.sections if s.empty]

    @property
    def failed_sections(self) -> List[ParsedSection]:
        return [s for s in self.sections if s.error is not None]

    @property
    def service_count(self) -> int:
        return sum(item.service_count for item in self.line_items)


class DocumentParser(ABC):
    """
    Base class for source-format parsers

    Subclasses implement detect_sections and extract_services; parse()
    drives them, isolating per-section failures so one broken sheet does
    not hide its siblings.
    """

    format_name: str = ''
    client_label: Optional[str] = None

    def __init__(self, client_label: Optional[str] = None):
        if client_label:
            self.client_label = client_label

    @classmethod
    @abstractmethod
    def sniff(cls, raw: bytes) -> bool:
        """Whether raw looks like this parser's format"""
        pass

    @abstractmethod
    def detect_sections(self, raw: bytes) -> List[Tuple[str, Any]]:
        """
        Split the document into named sections

        Returns:
            Ordered (name, payload) pairs; payload is whatever
            extract_services needs

        Raises:
            ParseError: The document as a whole is malformed
        """
        pass

    @abstractmethod
    def extract_services(self, payload: Any) -> List[ServiceEntry]:
        """
        Read the service records of one section

        Raises:
            ParseError: The section is malformed
        """
        pass

    def declared_total(self, payload: Any) -> Optional[Decimal]:
        """Total stated by the document for a section, if it states one"""
        return None

    def section_metadata(self, name: str, payload: Any) -> Dict[str, Any]:
        return {}

    def section_client_label(self, name: str, payload: Any) -> Optional[str]:
        return self.client_label

    def compute_totals(self, services: List[ServiceEntry]) -> Dict[str, Decimal]:
        subtotal = sum((s.subtotal for s in services), Decimal('0'))
        vat = sum((s.vat_amount for s in services), Decimal('0'))
        withholding = sum((s.withholding_amount for s in services), Decimal('0'))
        return {
            'subtotal': money(subtotal),
            'vat': money(vat),
            'withholding': money(withholding),
            'total': money(subtotal + vat - withholding)
        }

    def parse(self, raw: bytes) -> ParsedDocument:
        """
        Parse a whole document

        Raises:
            ParseError: The document as a whole is malformed
        """
        document = ParsedDocument(format=self.format_name, client_label=self.client_label)

        for name, payload in self.detect_sections(raw):
            try:
                services = self.extract_services(payload)
            except ParseError as e:
                logger.warning(f"Skipping section {name}: {e.reason}")
                document.sections.append(ParsedSection(name=name, error=e.reason))
                continue

            if not services:
                logger.debug(f"Section {name} has no service records")
                document.sections.append(ParsedSection(name=name))
                continue

            line_item = CanonicalLineItem(
                source_label=name,
                services=services,
                declared_total=self.declared_total(payload),
                client_label=self.section_client_label(name, payload),
                metadata=self.section_metadata(name, payload)
            )
            document.sections.append(ParsedSection(
                name=name,
                line_item=line_item,
                totals=self.compute_totals(services)
            ))

        if document.client_label is None and document.line_items:
            document.client_label = document.line_items[0].client_label

        logger.info(
            f"Parsed {self.format_name} document: {len(document.line_items)} sections with data, "
            f"{len(document.empty_sections)} empty, {len(document.failed_sections)} failed"
        )
        return document
