from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Tuple

from gridcore.errors import ERROR_VALUE

# locale -> (thousands separator, decimal separator)
SEPARATORS: Dict[str, Tuple[str, str]] = {
    "en-US": (",", "."),
    "en-GB": (",", "."),
    "en-IN": (",", "."),
    "de-DE": (".", ","),
    "es-ES": (".", ","),
    "it-IT": (".", ","),
    "fr-FR": (" ", ","),
}

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "INR": "₹", "JPY": "¥"}

# currencies whose amounts are shown without minor units
ZERO_DECIMAL_CURRENCIES = {"JPY"}

# locales that put the currency symbol after the amount
SUFFIX_SYMBOL_LOCALES = {"de-DE", "es-ES", "it-IT", "fr-FR"}


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _fixed(value: float, precision: int) -> str:
    """Half-up fixed-point text, matching how spreadsheets round for display."""
    quantum = Decimal(1).scaleb(-precision) if precision > 0 else Decimal(1)
    return str(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _group_lakh(digits: str, sep: str) -> str:
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return sep.join(groups + [tail])


def format_number(value: Any, *, locale: str = "en-US", precision: int = 2) -> str:
    """Grouped number text, e.g. ``1,234.56`` (en-US) or ``1.234,56`` (de-DE)."""
    if _is_missing(value):
        return ""
    number = float(value)
    if math.isinf(number):
        return "∞" if number > 0 else "-∞"
    thousands, decimal = SEPARATORS.get(locale, SEPARATORS["en-US"])
    text = _fixed(abs(number), max(0, precision))
    whole, _, frac = text.partition(".")
    if locale == "en-IN":
        whole = _group_lakh(whole, thousands)
    else:
        whole = f"{int(whole):,}".replace(",", thousands)
    sign = "-" if number < 0 and float(text) != 0 else ""
    return f"{sign}{whole}{decimal}{frac}" if frac else f"{sign}{whole}"


def format_currency(value: Any, *, currency: str = "USD", locale: str = "en-US") -> str:
    code = (currency or "USD").upper()
    digits = 0 if code in ZERO_DECIMAL_CURRENCIES else 2
    amount = format_number(abs(float(value)), locale=locale, precision=digits)
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")
    sign = "-" if float(value) < 0 else ""
    if locale in SUFFIX_SYMBOL_LOCALES:
        return f"{sign}{amount} {symbol.strip()}"
    return f"{sign}{symbol}{amount}"


def format_calculated_value(
    value: Any,
    fmt: str = "number",
    *,
    currency: str = "USD",
    locale: str = "en-US",
    precision: int = 2,
) -> Any:
    """Render a calculated value for display.

    ``None``, NaN, infinities and the error sentinel are returned unchanged.
    """
    if _is_missing(value) or value == ERROR_VALUE:
        return value
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return value
    if math.isnan(value) or math.isinf(value):
        return value

    if fmt == "percentage":
        return f"{_fixed(value * 100, precision)}%"
    if fmt == "currency":
        return format_currency(value, currency=currency, locale=locale)
    if fmt == "decimal2":
        return _fixed(value, 2)
    if fmt == "decimal4":
        return _fixed(value, 4)
    if fmt == "integer":
        return str(math.floor(value + 0.5))
    if fmt == "scientific":
        return f"{value:.{precision}e}"
    return _fixed(value, 2)
