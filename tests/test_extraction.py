"""
Tests for the document parsers and format detection
"""

from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

from billex.exceptions import ParseError
from billex.extraction import (
    AxaSheetParser,
    ClubAsistenciaSheetParser,
    ColumnSheetParser,
    ParserFactory,
    PurchaseOrderPdfParser,
    QualitasSheetParser,
    StackedSheetParser,
    detect_format,
    parse,
)
from billex.extraction.column_sheet import map_columns
from billex.extraction.purchase_order_pdf import (
    CFDI_INVOICE,
    PURCHASE_ORDER,
    QUOTE,
    analyze_order_text,
    identify_document_type,
)

from conftest import column_workbook, rows_workbook, stacked_workbook

AXA_HEADER = ('FACTURA', 'No. ORDEN', 'No. FOLIO', 'AUTORIZACION', 'IMPORTE')

CAS_ROWS = [
    ('Reporte de servicios Club de Asistencia',),
    ('Fecha', 'Folio CAS', 'PEDIDO SAP', 'Total', 'Moneda'),
    (datetime(2025, 3, 4), 'CAS-1', '4500001', 1160, 'MXN'),
    (45658, 'CAS-2', '4500002', '580.00', 'MXN'),
]

QUALITAS_ROWS = [
    ('RELACION DE SERVICIOS',),
    ('25GA00123',),
    ('0412345/25',),
    ('R-778899', '$1,500.00'),
    ('25GB00456',),
    ('0498765/25',),
    ('R-112233 $ 800',),
    ('25GA00999',),
    ('0400000/25',),
    ('sin importe',),
]

PURCHASE_ORDER_TEXT = """Pedido de compra: 4500012345
Desde: Cliente
PROTECCION S.O.S. JURIDICO
Av. Reforma 100
Para:
GRUAS DEL CENTRO SA DE CV
Teléfono 555 123 4567
Condiciones de pago 30 dias
Importe: $ 1,500.00 MXN
"""


class TestStackedSheetParser:
    """One sheet per invoice, services stacked in column A"""

    def test_sheets_become_sections(self):
        raw = stacked_workbook({
            'Hoja1': ([('ESC001_1', 862.07, 137.93, 0)], 1000.00),
            'Hoja2': ([('ESC001_2', 300.00, 48.00, 12.00), ('ESC001_3', 100.00, 16.00, 0)], 450.00),
        })
        document = StackedSheetParser().parse(raw)

        assert document.format == 'stacked_sheet'
        assert document.client_label == 'ESCOTEL'
        assert [s.name for s in document.sections] == ['Hoja1', 'Hoja2']

        first, second = document.line_items
        assert first.computed_total == Decimal('1000.00')
        assert first.declared_total == Decimal('1000')
        assert first.services[0].tax_key == '78101803'
        assert first.services[0].location == 'CDMX'
        assert second.service_count == 2
        assert second.withholding_amount == Decimal('12')
        assert second.computed_total == Decimal('452.00')

    def test_empty_sheet_is_empty_section(self):
        raw = stacked_workbook({
            'Hoja1': ([('ESC001_1', 100.00, 16.00, 0)], None),
            'Notas': ([], None),
        })
        document = StackedSheetParser().parse(raw)
        assert len(document.line_items) == 1
        assert [s.name for s in document.empty_sections] == ['Notas']
        assert document.line_items[0].declared_total is None

    def test_service_without_positive_subtotal_skipped(self):
        raw = stacked_workbook({'Hoja1': ([('ESC001_1', 0, 0, 0), ('ESC001_2', 50.00, 8.00, 0)], None)})
        document = StackedSheetParser().parse(raw)
        assert [s.id for s in document.line_items[0].services] == ['ESC001_2']

    def test_bad_vat_fails_only_that_section(self):
        raw = stacked_workbook({
            'Hoja1': ([('ESC001_1', 100.00, 'dieciseis', 0)], None),
            'Hoja2': ([('ESC001_2', 100.00, 16.00, 0)], None),
        })
        document = StackedSheetParser().parse(raw)
        assert [s.name for s in document.failed_sections] == ['Hoja1']
        assert 'VAT is not a number' in document.failed_sections[0].error
        assert [item.source_label for item in document.line_items] == ['Hoja2']

    def test_not_a_workbook(self):
        with pytest.raises(ParseError):
            StackedSheetParser().parse(b'plain text')


class TestColumnSheetParser:
    """Header-mapped rows grouped into tow and other services"""

    def test_rows_grouped_by_service_type(self):
        raw = column_workbook([
            ('1001', 'Grua plataforma', 1000, -40),
            ('1002', 'ARRASTRE', 500, None),
            ('1003', 'Cerrajeria', 200, None),
        ])
        document = ColumnSheetParser().parse(raw)

        assert document.client_label == 'CHUBB'
        sections = {s.name: s for s in document.sections}
        with_withholding = sections['tow_with_withholding'].line_item
        assert with_withholding.computed_total == Decimal('1120.00')
        assert with_withholding.metadata == {'product_key': '78101803', 'withholding': True}
        assert with_withholding.services[0].description == 'No. Caso 1001 Servicio GRUA PLATAFORMA'

        assert sections['tow_without_withholding'].line_item.computed_total == Decimal('580.00')
        other = sections['other_services'].line_item
        assert other.computed_total == Decimal('232.00')
        assert other.metadata['product_key'] == '90121800'

    def test_missing_group_is_empty(self):
        raw = column_workbook([('1001', 'Cerrajeria', 200, None)])
        document = ColumnSheetParser().parse(raw)
        assert len(document.line_items) == 1
        assert len(document.empty_sections) == 2

    def test_invalid_amounts_reported_with_rows(self):
        rows = [(str(1000 + i), 'GRUA', 'abc', None) for i in range(7)]
        with pytest.raises(ParseError) as exc_info:
            ColumnSheetParser().parse(column_workbook(rows))
        message = str(exc_info.value)
        assert 'row 2' in message
        assert '...and 2 more' in message

    def test_missing_required_columns(self):
        raw = column_workbook([('1001', 200)], header=('Caso', 'Monto'))
        with pytest.raises(ParseError, match='missing required columns'):
            ColumnSheetParser().parse(raw)

    def test_map_columns(self):
        mapping = map_columns(['Numero de Caso', 'Tipo de Servicio', 'Importe Total', 'Retencion 4%'])
        assert mapping == {'case_number': 0, 'service': 1, 'amount': 2, 'withholding': 3}

    def test_single_letter_alias_matches_exactly_only(self):
        assert map_columns(['Caso', 'Servicio', 'Hora']) is None
        assert map_columns(['Caso', 'Servicio', 'H'])['amount'] == 2


class TestPurchaseOrderPdf:
    """Purchase order text analysis"""

    def test_identify_document_type(self):
        assert identify_document_type(PURCHASE_ORDER_TEXT) == PURCHASE_ORDER
        assert identify_document_type('Factura\nFolio Fiscal 1234') == CFDI_INVOICE
        assert identify_document_type('Pedido de compra\nFolio Fiscal 1234') == CFDI_INVOICE
        assert identify_document_type('COTIZACIÓN 88') == QUOTE

    def test_analyze_order_text(self):
        analysis = analyze_order_text(PURCHASE_ORDER_TEXT)
        assert analysis.client_code == 'SOS'
        assert analysis.client_name == 'PROTECCION S.O.S. JURIDICO'
        assert analysis.order_number == '4500012345'
        assert analysis.amount == Decimal('1500.00')
        assert analysis.provider_name == 'GRUAS DEL CENTRO SA DE CV'
        assert analysis.confidence == 100

    def test_parse_order(self):
        with patch('billex.extraction.purchase_order_pdf.extract_text', return_value=PURCHASE_ORDER_TEXT):
            document = PurchaseOrderPdfParser().parse(b'%PDF-1.4 order')

        item = document.line_items[0]
        assert item.source_label == 'PO 4500012345'
        assert item.client_label == 'SOS'
        assert item.computed_total == Decimal('1740.00')
        assert item.declared_total is None
        assert item.metadata['order_number'] == '4500012345'

    def test_invoice_pdf_rejected(self):
        with patch('billex.extraction.purchase_order_pdf.extract_text', return_value='Factura\nFolio Fiscal X'):
            with pytest.raises(ParseError, match='not a purchase order'):
                PurchaseOrderPdfParser().parse(b'%PDF-1.4 invoice')

    def test_incomplete_order_is_failed_section(self):
        text = 'Pedido de compra\nDesde: Cliente\nALGUIEN\nPara:\nNadie\n'
        with patch('billex.extraction.purchase_order_pdf.extract_text', return_value=text):
            document = PurchaseOrderPdfParser().parse(b'%PDF-1.4 order')
        assert not document.line_items
        assert 'order number not found' in document.failed_sections[0].error


class TestSingleInvoiceSheets:
    """One-invoice sheets: AXA rows, Club Asistencia rows, Qualitas blocks"""

    def test_axa_rows_become_one_invoice(self):
        raw = rows_workbook([
            AXA_HEADER,
            ('F-10', 'O-1', 'FOL1', 'AUT9', 1000),
            ('F-10', 'O-2', 'FOL2', None, '500.00'),
        ])
        document = AxaSheetParser().parse(raw)

        assert document.client_label == 'AXA'
        assert len(document.sections) == 1
        item = document.line_items[0]
        assert item.source_label == 'Hoja1'
        assert item.metadata == {'product_key': '78101803', 'withholding': True}
        assert [s.id for s in item.services] == ['FOL1', 'FOL2']
        assert item.services[0].description == (
            'ARRASTRE DE GRUA FACTURA F-10 No. ORDEN O-1 No. FOLIO FOL1 AUTORIZACION AUT9'
        )
        assert item.services[1].description.endswith('AUTORIZACION N/A')
        assert item.services[0].vat_amount == Decimal('160.00')
        assert item.services[0].withholding_amount == Decimal('40.00')
        assert item.computed_total == Decimal('1680.00')

    def test_axa_without_withholding(self):
        raw = rows_workbook([AXA_HEADER, ('F-10', 'O-1', 'FOL1', 'AUT9', 1000)])
        item = AxaSheetParser(with_withholding=False).parse(raw).line_items[0]
        assert item.services[0].withholding_amount == Decimal('0')
        assert item.metadata['withholding'] is False
        assert item.computed_total == Decimal('1160.00')

    def test_axa_invalid_amounts_reported_with_rows(self):
        raw = rows_workbook([
            AXA_HEADER,
            ('F-10', 'O-1', 'FOL1', 'AUT9', 1000),
            ('F-10', 'O-2', 'FOL2', 'AUT9', 'abc'),
            ('F-10', 'O-3', 'FOL3', 'AUT9', -5),
        ])
        with pytest.raises(ParseError) as exc_info:
            AxaSheetParser().parse(raw)
        assert 'row 3' in str(exc_info.value)
        assert 'row 4' in str(exc_info.value)

    def test_axa_missing_required_columns(self):
        raw = rows_workbook([('FACTURA', 'No. FOLIO', 'IMPORTE'), ('F-10', 'FOL1', 1000)])
        with pytest.raises(ParseError, match='missing required columns'):
            AxaSheetParser().parse(raw)

    def test_club_asistencia_totals_include_vat(self):
        document = ClubAsistenciaSheetParser().parse(rows_workbook(CAS_ROWS))

        assert document.client_label == 'CLUB ASISTENCIA'
        item = document.line_items[0]
        first, second = item.services
        assert first.id == 'CAS-1'
        assert first.subtotal == Decimal('1000.00')
        assert first.vat_amount == Decimal('160.00')
        assert first.description == 'Fecha 2025-03-04 Folio CAS CAS-1 PEDIDO SAP 4500001'
        # Excel serial date
        assert second.description.startswith('Fecha 2025-01-01 ')
        assert second.subtotal == Decimal('500.00')
        assert item.computed_total == Decimal('1680.00')

    def test_club_asistencia_header_must_be_in_row_two(self):
        with pytest.raises(ParseError, match='row 2'):
            ClubAsistenciaSheetParser().parse(rows_workbook(CAS_ROWS[1:]))

    def test_club_asistencia_non_positive_total(self):
        rows = CAS_ROWS + [(datetime(2025, 3, 5), 'CAS-3', '4500003', 0, 'MXN')]
        with pytest.raises(ParseError, match='row 5: total must be a positive number'):
            ClubAsistenciaSheetParser().parse(rows_workbook(rows))

    def test_qualitas_blocks(self):
        document = QualitasSheetParser().parse(rows_workbook(QUALITAS_ROWS))

        assert document.client_label == 'QUALITAS'
        item = document.line_items[0]
        # The block without an amount is skipped
        assert [s.id for s in item.services] == ['25GA00123', '25GB00456']
        assert item.services[0].description == 'Folio 25GA00123 Siniestro 0412345/25 Reporte R-778899'
        assert item.services[0].subtotal == Decimal('1500.00')
        assert item.services[1].subtotal == Decimal('800.00')
        assert item.computed_total == Decimal('2576.00')

    def test_qualitas_without_services_is_empty(self):
        raw = rows_workbook([('RELACION DE SERVICIOS',), ('25GA00999',), ('0400000/25',)])
        document = QualitasSheetParser().parse(raw)
        assert document.line_items == []
        assert len(document.empty_sections) == 1


class TestFormatDetection:
    """Sniffing and hints"""

    def test_sniffs_column_sheet(self):
        assert detect_format(column_workbook([('1001', 'GRUA', 100, None)])) == 'column_sheet'

    def test_sniffs_stacked_sheet(self):
        raw = stacked_workbook({'Hoja1': ([('ESC001_1', 100.00, 16.00, 0)], None)})
        assert detect_format(raw) == 'stacked_sheet'

    def test_sniffs_pdf(self):
        assert detect_format(b'%PDF-1.7 ...') == 'purchase_order_pdf'

    def test_client_alias_hint(self):
        assert detect_format(b'', 'Escotel') == 'stacked_sheet'
        assert detect_format(b'', 'chubb') == 'column_sheet'

    def test_sniffs_single_invoice_sheets(self):
        assert detect_format(rows_workbook([AXA_HEADER, ('F-10', 'O-1', 'FOL1', 'AUT9', 1000)])) == 'axa_sheet'
        assert detect_format(rows_workbook(CAS_ROWS)) == 'club_asistencia_sheet'
        assert detect_format(rows_workbook(QUALITAS_ROWS)) == 'qualitas_sheet'

    def test_withholding_choice_passed_through_parse(self):
        document = parse(rows_workbook(QUALITAS_ROWS), 'qualitas', with_withholding=False)
        assert document.line_items[0].computed_total == Decimal('2668.00')
        assert detect_format(b'', 'CAS') == 'club_asistencia_sheet'
        assert detect_format(b'', 'axa') == 'axa_sheet'

    def test_unknown_hint(self):
        with pytest.raises(ParseError, match='unsupported source format'):
            detect_format(b'', 'mystery')

    def test_unrecognised_document(self):
        with pytest.raises(ParseError):
            parse(b'hello world')

    def test_parse_passes_options(self):
        raw = stacked_workbook({'Hoja1': ([('ESC001_1', 100.00, 16.00, 0)], None)})
        document = parse(raw, client_label='OTRO')
        assert document.line_items[0].client_label == 'OTRO'

    def test_formats_listed(self):
        assert {'column_sheet', 'stacked_sheet', 'purchase_order_pdf', 'escotel'} <= set(ParserFactory.formats())
