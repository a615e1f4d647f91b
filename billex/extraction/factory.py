"""
Parser registry and format detection
"""

import logging
from typing import Any, Dict, Optional, Type

from billex.exceptions import ParseError

from .base import DocumentParser, ParsedDocument
from .column_sheet import ColumnSheetParser
from .insurer_sheets import AxaSheetParser, ClubAsistenciaSheetParser, QualitasSheetParser
from .purchase_order_pdf import PDF_MAGIC, PurchaseOrderPdfParser
from .stacked_sheet import StackedSheetParser
from .workbook import XLSX_MAGIC

logger = logging.getLogger(__name__)


class ParserFactory:
    """
    Registry of source-format parsers

    Formats are selected by an explicit hint (a format name or a client
    alias) or, failing that, by sniffing the document.
    """

    _parser_classes: Dict[str, Type[DocumentParser]] = {
        ColumnSheetParser.format_name: ColumnSheetParser,
        StackedSheetParser.format_name: StackedSheetParser,
        PurchaseOrderPdfParser.format_name: PurchaseOrderPdfParser,
        AxaSheetParser.format_name: AxaSheetParser,
        ClubAsistenciaSheetParser.format_name: ClubAsistenciaSheetParser,
        QualitasSheetParser.format_name: QualitasSheetParser,
    }

    _aliases: Dict[str, str] = {
        'escotel': StackedSheetParser.format_name,
        'chubb': ColumnSheetParser.format_name,
        'pdf': PurchaseOrderPdfParser.format_name,
        'purchase_order': PurchaseOrderPdfParser.format_name,
        'axa': AxaSheetParser.format_name,
        'club_asistencia': ClubAsistenciaSheetParser.format_name,
        'cas': ClubAsistenciaSheetParser.format_name,
        'qualitas': QualitasSheetParser.format_name,
    }

    @classmethod
    def register_parser(cls, name: str, parser_class: Type[DocumentParser], aliases: tuple = ()) -> None:
        """
        Register a new parser

        Args:
            name: Format name
            parser_class: Class implementing DocumentParser
            aliases: Extra hint names resolving to this format
        """
        if not issubclass(parser_class, DocumentParser):
            raise ValueError("Parser class must inherit from DocumentParser")
        cls._parser_classes[name.lower()] = parser_class
        for alias in aliases:
            cls._aliases[alias.lower()] = name.lower()

    @classmethod
    def formats(cls) -> list:
        """Format names and aliases accepted as hints"""
        return list(cls._parser_classes) + list(cls._aliases)

    @classmethod
    def resolve(cls, hint: str) -> str:
        name = hint.strip().lower()
        name = cls._aliases.get(name, name)
        if name not in cls._parser_classes:
            raise ParseError(f"unsupported source format: {hint}")
        return name

    @classmethod
    def detect_format(cls, raw: bytes, hint: Optional[str] = None) -> str:
        """
        Pick the format for a document

        Raises:
            ParseError: Unknown hint, or no registered parser recognises the document
        """
        if hint:
            return cls.resolve(hint)

        if not raw:
            raise ParseError("empty document")

        head = raw.lstrip()[:4]
        if head == PDF_MAGIC:
            return PurchaseOrderPdfParser.format_name

        if raw.startswith(XLSX_MAGIC):
            # Header probe before id probe
            for name, parser_class in cls._parser_classes.items():
                if parser_class is PurchaseOrderPdfParser:
                    continue
                if parser_class.sniff(raw):
                    logger.debug(f"Detected format {name}")
                    return name
            raise ParseError("spreadsheet layout not recognised")

        raise ParseError("unsupported document format")

    @classmethod
    def get_parser(cls, format_name: str, **options: Any) -> DocumentParser:
        return cls._parser_classes[cls.resolve(format_name)](**options)


def detect_format(raw: bytes, hint: Optional[str] = None) -> str:
    return ParserFactory.detect_format(raw, hint)


def get_parser(format_name: str, **options: Any) -> DocumentParser:
    return ParserFactory.get_parser(format_name, **options)


def parse(raw: bytes, source_format_hint: Optional[str] = None, **options: Any) -> ParsedDocument:
    """
    Parse raw document bytes into named sections

    Args:
        raw: Document bytes
        source_format_hint: Format name or client alias; sniffed when omitted
        **options: Passed to the parser constructor

    Raises:
        ParseError: Unsupported or malformed document
    """
    format_name = detect_format(raw, source_format_hint)
    return get_parser(format_name, **options).parse(raw)
