"""Product name normalization used before similarity scoring."""

import re
import unicodedata
from typing import Iterable, Optional

from compmatch.errors import InvalidInputError

# Generic marketing and filler words that appear across unrelated products.
# Product attributes (wireless, bluetooth, usb) stay: they tell variants apart.
DEFAULT_STOPWORDS = frozenset({
    "a", "an", "and", "the", "for", "with", "of", "in", "on", "by", "to",
    "new", "sale", "hot", "best", "top", "premium", "original", "genuine",
    "official", "authentic", "free", "shipping", "deal", "offer", "quality",
    "latest", "brand",
})

# Anything that is not a letter or digit becomes a separator (punctuation, currency symbols, _)
_SEPARATOR_RE = re.compile(r"[\W_]+", re.UNICODE)

# Names that are just a price ("$19.99", "25") are scraper noise, not products
_PRICE_LIKE_RE = re.compile(r"^\s*[$€£]?\s*\d+([.,]\d+)?\s*$")


def _strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(raw: Optional[str], stopwords: Optional[Iterable[str]] = None) -> str:
    """
    Normalize a product name into a canonical, order-independent token string.

    Lowercases, strips diacritics, turns punctuation and currency symbols
    into separators, drops stopwords, then joins the sorted unique tokens
    with single spaces.

    Args:
        raw: Raw product name (None and whitespace-only give "")
        stopwords: Words to drop; defaults to DEFAULT_STOPWORDS

    Returns:
        Normalized name, possibly empty
    """
    if not raw:
        return ""

    stop = DEFAULT_STOPWORDS if stopwords is None else frozenset(w.lower() for w in stopwords)

    text = _strip_diacritics(raw.lower())
    text = _SEPARATOR_RE.sub(" ", text)
    tokens = {token for token in text.split() if token not in stop}
    return " ".join(sorted(tokens))


def require_normalized(raw: Optional[str], stopwords: Optional[Iterable[str]] = None) -> str:
    """Normalize a name, raising InvalidInputError when nothing meaningful remains."""
    normalized = normalize(raw, stopwords)
    if not normalized:
        raise InvalidInputError(f"Name has no meaningful tokens: {raw!r}")
    return normalized


def looks_like_price(name: Optional[str]) -> bool:
    """True when a scraped "name" is really just a price."""
    return bool(name) and bool(_PRICE_LIKE_RE.match(name))
