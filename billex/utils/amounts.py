"""
Amount parsing for spreadsheet cells and PDF text
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

_NOISE = re.compile(r'[^\d,.\-]')


def parse_amount(text: Any) -> Optional[Decimal]:
    """
    Parse a money amount written with either decimal convention

    '1.234,56' and '1,234.56' both give Decimal('1234.56'). A separator
    followed by at most two digits at the end is the decimal separator;
    any other separator is a thousands separator. Currency symbols and
    suffixes such as 'MXN' are ignored.

    Returns:
        Decimal, or None if there is no number in text
    """
    if text is None:
        return None
    if isinstance(text, bool):
        return None
    if isinstance(text, Decimal):
        return text
    if isinstance(text, (int, float)):
        if text != text:  # NaN
            return None
        return Decimal(str(text))

    cleaned = _NOISE.sub('', str(text).strip())
    if not cleaned or not re.search(r'\d', cleaned):
        return None

    last_comma = cleaned.rfind(',')
    last_dot = cleaned.rfind('.')

    if last_comma > -1 and len(cleaned) - last_comma <= 3 and last_comma > last_dot:
        cleaned = cleaned.replace('.', '').replace(',', '.')
    elif last_dot > -1 and len(cleaned) - last_dot <= 3:
        cleaned = cleaned.replace(',', '')
    else:
        cleaned = cleaned.replace(',', '').replace('.', '')

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def cell_amount(value: Any) -> Optional[Decimal]:
    """Amount from a worksheet cell; blank cells give None"""
    if isinstance(value, str) and not value.strip():
        return None
    return parse_amount(value)
