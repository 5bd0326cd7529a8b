"""Value types produced by the scrapers."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class ScrapedProduct:
    """One listing found on a competitor catalog page."""

    url: str
    name: str
    price: Optional[Decimal] = None
    currency: str = "USD"


@dataclass(frozen=True)
class ProductPage:
    """Name and price extracted from a single product page."""

    name: Optional[str]
    price: Optional[Decimal]
    currency: str = "USD"
