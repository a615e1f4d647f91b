import io
import zipfile
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from billex.exceptions import ParseError

XLSX_MAGIC = b'PK'


def open_workbook(raw: bytes) -> Any:
    """Load an xlsx workbook from bytes with cached cell values"""
    if not raw or not raw.startswith(XLSX_MAGIC):
        raise ParseError("not an xlsx workbook")
    try:
        return load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        raise ParseError(f"unreadable workbook: {e}") from e
