from billex.utils.amounts import parse_amount
from .base import DocumentParser, ParsedDocument, ParsedSection
from .column_sheet import ColumnSheetParser
from .insurer_sheets import AxaSheetParser, ClubAsistenciaSheetParser, QualitasSheetParser
from .purchase_order_pdf import PurchaseOrderPdfParser, identify_document_type
from .stacked_sheet import StackedSheetParser
from .factory import ParserFactory, detect_format, get_parser, parse

__all__ = [
    'parse',
    'detect_format',
    'get_parser',
    'parse_amount',
    'identify_document_type',
    'ParserFactory',
    'DocumentParser',
    'ParsedDocument',
    'ParsedSection',
    'ColumnSheetParser',
    'StackedSheetParser',
    'PurchaseOrderPdfParser',
    'AxaSheetParser',
    'ClubAsistenciaSheetParser',
    'QualitasSheetParser',
]
