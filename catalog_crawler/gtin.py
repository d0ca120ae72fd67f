"""
GTIN / EAN helpers: check digit validation and extraction from page text.
"""
import re
from typing import Optional

GTIN_LENGTHS = (8, 12, 13, 14)

_GTIN_JSON_KEYS = (
    re.compile(r'"gtin14"\s*:\s*"(\d{14})"', re.IGNORECASE),
    re.compile(r'"gtin13"\s*:\s*"(\d{13})"', re.IGNORECASE),
    re.compile(r'"gtin12"\s*:\s*"(\d{12})"', re.IGNORECASE),
    re.compile(r'"gtin8"\s*:\s*"(\d{8})"', re.IGNORECASE),
)
_GTIN_CANDIDATE = re.compile(r"\b\d{8,14}\b")


def calc_gtin_check_digit(body: str) -> int:
    """Modulo-10 check digit, weights 3,1,3,... starting at the rightmost digit of body."""
    total = 0
    for pos, ch in enumerate(reversed(body), start=1):
        total += int(ch) * (3 if pos % 2 == 1 else 1)
    return (10 - total % 10) % 10


def is_valid_gtin(value: Optional[str]) -> bool:
    if not value or not value.isdigit() or len(value) not in GTIN_LENGTHS:
        return False
    # str.isdigit accepts non-ASCII digits
    if not value.isascii():
        return False
    return calc_gtin_check_digit(value[:-1]) == int(value[-1])


def sanitize_ean(value: Optional[str]) -> Optional[str]:
    """
    Trim whitespace and reduce a zero-padded GTIN-14 to its GTIN-13 form.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) == 14 and value.startswith("0"):
        return value[1:]
    return value


def extract_gtin_from_text(text: str) -> Optional[str]:
    """Longest valid GTIN found in free text, or None."""
    candidates = sorted(_GTIN_CANDIDATE.findall(text or ""), key=len, reverse=True)
    for candidate in candidates:
        if is_valid_gtin(candidate):
            return candidate
    return None


def extract_gtin_from_html(html: str, free_text: bool = True) -> Optional[str]:
    """
    GTIN from embedded "gtinNN" JSON keys. With free_text, fall back to any
    valid digit run on the page, which can be a false positive.
    """
    for pattern in _GTIN_JSON_KEYS:
        m = pattern.search(html or "")
        if m and is_valid_gtin(m.group(1)):
            return m.group(1)
    if not free_text:
        return None
    return extract_gtin_from_text(re.sub(r"\s+", " ", html or ""))
