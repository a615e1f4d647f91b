from .excel_report import build_generation_report, build_ledger_report

__all__ = ['build_generation_report', 'build_ledger_report']
