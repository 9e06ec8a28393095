from __future__ import annotations

"""
Text normalisation helpers shared by import, lookup and scoring.

Public helpers:

* basic_clean(text) -> str
    HTML strip + unicode fold + whitespace collapse. Used for page text,
    descriptions and anything shown back to a user.

* normalize_title(text) -> str
    Canonical title key for fuzzy matching: lower-case ASCII words only.

* normalize_identifier(value) -> Optional[str]
    Trimmed SKU / barcode or None.

* parse_price / parse_quantity
    Lenient numeric parsing of spreadsheet cells.

* word_set(text) / count_punctuation(text) / url_host(url)
    Small primitives used by the reranker heuristics.
"""

import math
import re
import unicodedata
from typing import Any, List, Optional, Set
from urllib.parse import urlparse

from bs4 import BeautifulSoup

MAX_INPUT_CHARS = 20_000

_TAG_HINT_RE = re.compile(r"<[a-zA-Z/!][^>]*>")
_WS_RE = re.compile(r"\s+")
_NON_TITLE_RE = re.compile(r"[^a-z0-9\s]")
_PRICE_STRIP_RE = re.compile(r"[^0-9.,-]")
_QTY_STRIP_RE = re.compile(r"[^0-9-]")
PUNCTUATION_CHARS = frozenset("!@#$%^&*()_+=[]{};:'\",<>/?\\|`~")


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------

def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def _strip_html(text: str) -> str:
    if not text or not _TAG_HINT_RE.search(text):
        return text or ""
    soup = BeautifulSoup(text, "html.parser")
    return soup.get_text(" ", strip=True)


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\u2018", "'").replace("\u2019", "'")
    text = text.replace("\u201c", '"').replace("\u201d", '"')
    text = text.replace("\u2013", "-").replace("\u2014", "-")
    return text


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def basic_clean(text: Any) -> str:
    if _is_missing(text):
        return ""
    s = str(text)[:MAX_INPUT_CHARS]
    s = _strip_html(s)
    s = _normalise_unicode(s)
    return _WS_RE.sub(" ", s).strip()


def normalize_title(text: Any) -> str:
    """Lower-case, drop everything but ASCII letters/digits/spaces, collapse spaces."""
    s = basic_clean(text).lower()
    s = _NON_TITLE_RE.sub("", s)
    return _WS_RE.sub(" ", s).strip()


def normalize_identifier(value: Any) -> Optional[str]:
    if _is_missing(value):
        return None
    s = str(value).strip()
    # spreadsheets turn numeric barcodes into floats
    if isinstance(value, float) and value.is_integer():
        s = str(int(value))
    return s or None


def parse_price(value: Any) -> Optional[float]:
    """The first comma is read as a decimal separator ("12,50" -> 12.5)."""
    if _is_missing(value):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _PRICE_STRIP_RE.sub("", str(value)).replace(",", ".", 1)
    if not cleaned:
        return None
    try:
        price = float(cleaned)
    except ValueError:
        return None
    return price if math.isfinite(price) else None


def parse_quantity(value: Any) -> Optional[int]:
    if _is_missing(value):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    cleaned = _QTY_STRIP_RE.sub("", str(value).split(".", 1)[0])
    if not cleaned or cleaned == "-":
        return None
    try:
        return int(cleaned)
    except ValueError:
        return None


def words(text: Any) -> List[str]:
    s = basic_clean(text).lower()
    return [w for w in s.split(" ") if w]


def word_set(text: Any) -> Set[str]:
    return set(words(text))


def count_punctuation(text: Any) -> int:
    return sum(1 for ch in str(text or "") if ch in PUNCTUATION_CHARS)


def url_host(url: Optional[str]) -> str:
    """Host of `url` without a leading "www.", lower-cased; "" if unparsable."""
    if not url:
        return ""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host
