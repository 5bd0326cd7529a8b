"""HTML/JSON extraction helpers for competitor pages."""

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse

from selectolax.parser import HTMLParser, Node

from compmatch.scraping.types import ProductPage, ScrapedProduct

logger = logging.getLogger(__name__)

BOT_MARKERS = (
    "captcha",
    "access denied",
    "blocked",
    "verify you are human",
    "please verify",
    "are you a robot",
    "cloudflare",
    "just a moment",
    "checking your browser",
)

# Product cards, tried in order; the first selector matching more than MIN_CARDS wins
CARD_SELECTORS = (
    "[data-product-id]",
    "[data-product]",
    ".product-item",
    ".product-card",
    ".product",
    ".product-tile",
    ".product-grid-item",
)
MIN_CARDS = 3

NAME_SELECTORS = (".product-title", ".product-name", ".card-title", "h2 a", "h3 a", "h2", "h3", "a[title]")
PRICE_SELECTORS = (".price__current", ".price", ".product-price", "[data-price]", "[data-product-price]")

CURRENCY_SYMBOLS = (
    ("kč", "CZK"),
    ("czk", "CZK"),
    ("€", "EUR"),
    ("eur", "EUR"),
    ("£", "GBP"),
    ("gbp", "GBP"),
    ("$", "USD"),
    ("usd", "USD"),
)

_NUMBER_RE = re.compile(r"\d[\d\s.,']*")
_SPACES_RE = re.compile(r"[\s']")

# Pages with more visible text than this are real content even if a marker word appears
_BOT_PAGE_MAX_TEXT = 3000


def parse_price(text: Optional[str]) -> Optional[Decimal]:
    """
    Parse a price string into a Decimal.

    The rightmost of ``,`` or ``.`` is the decimal separator, except that a
    single separator followed by exactly three digits is a thousands
    separator (``1,299`` -> 1299).

    Examples: ``$19.99`` -> 19.99, ``€ 12,50`` -> 12.50, ``1 299 Kč`` -> 1299,
    ``1.299,95 €`` -> 1299.95.
    """
    if text is None:
        return None
    if isinstance(text, (int, float, Decimal)):
        try:
            return Decimal(str(text))
        except InvalidOperation:
            return None

    match = _NUMBER_RE.search(str(text))
    if not match:
        return None
    raw = _SPACES_RE.sub("", match.group(0)).rstrip(".,")

    last_dot = raw.rfind(".")
    last_comma = raw.rfind(",")
    decimal_pos = max(last_dot, last_comma)

    if decimal_pos == -1:
        number = raw
    else:
        separator = raw[decimal_pos]
        single_kind = last_dot == -1 or last_comma == -1
        digits_after = len(raw) - decimal_pos - 1
        if single_kind and (raw.count(separator) > 1 or digits_after == 3):
            # Only thousands separators
            number = raw.replace(separator, "")
        else:
            integer = re.sub(r"[.,]", "", raw[:decimal_pos])
            number = f"{integer}.{raw[decimal_pos + 1:]}"

    try:
        return Decimal(number)
    except InvalidOperation:
        logger.debug(f"Could not parse price from {text!r}")
        return None


def detect_currency(text: Optional[str], default: str = "USD") -> str:
    """Detect an ISO currency code from a price string."""
    if not text:
        return default
    lowered = text.lower()
    for marker, code in CURRENCY_SYMBOLS:
        if marker in lowered:
            return code
    return default


def detect_bot_block(html: Optional[str]) -> bool:
    """
    Detect a bot challenge / captcha page.

    Checks the page title, and the visible text only when the page is small
    (challenge pages are short; real pages may mention "blocked" in copy).
    """
    if not html:
        return False
    tree = HTMLParser(html)

    title_node = tree.css_first("title")
    title = title_node.text(strip=True).lower() if title_node else ""
    if any(marker in title for marker in BOT_MARKERS):
        return True

    body = tree.body
    text = body.text(separator=" ", strip=True).lower() if body else ""
    if len(text) > _BOT_PAGE_MAX_TEXT:
        return False
    return any(marker in text for marker in BOT_MARKERS)


def is_shopify_url(url: str) -> bool:
    """Shopify stores: *.myshopify.com or Shopify-style /collections, /products paths."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    return host.endswith("myshopify.com") or "/collections" in parsed.path or "/products" in parsed.path


def base_url(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _first_text(node: Node, selectors) -> Optional[str]:
    for selector in selectors:
        found = node.css_first(selector)
        if found is None:
            continue
        text = found.text(separator=" ", strip=True)
        if not text and selector == "a[title]":
            text = (found.attributes.get("title") or "").strip()
        if text:
            return text
    return None


def _card_price(card: Node) -> tuple[Optional[Decimal], Optional[str]]:
    for selector in PRICE_SELECTORS:
        found = card.css_first(selector)
        if found is None:
            continue
        raw = found.attributes.get("data-price") or found.attributes.get("data-product-price")
        raw = raw or found.text(separator=" ", strip=True)
        price = parse_price(raw)
        if price is not None:
            return price, raw
    return None, None


def _card_link(card: Node, page_url: str) -> Optional[str]:
    if card.tag == "a" and card.attributes.get("href"):
        href = card.attributes.get("href")
    else:
        link = card.css_first("a[href]")
        href = link.attributes.get("href") if link is not None else None
    if not href or href.startswith(("#", "javascript:", "mailto:")):
        return None
    return urljoin(page_url, href).split("#")[0]


def extract_listing_cards(html: str, page_url: str, default_currency: str = "USD") -> List[ScrapedProduct]:
    """
    Extract product cards from a catalog listing page.

    Cards without a name or link are skipped; cards without a price keep ``price=None``.
    """
    tree = HTMLParser(html)

    cards: list[Node] = []
    for selector in CARD_SELECTORS:
        nodes = tree.css(selector)
        if len(nodes) > MIN_CARDS:
            cards = nodes
            break
        if len(nodes) > len(cards):
            cards = nodes

    products: list[ScrapedProduct] = []
    seen: set[str] = set()
    for card in cards:
        name = _first_text(card, NAME_SELECTORS)
        url = _card_link(card, page_url)
        if not name or not url or url in seen:
            continue
        seen.add(url)
        price, raw_price = _card_price(card)
        products.append(
            ScrapedProduct(
                url=url,
                name=name,
                price=price,
                currency=detect_currency(raw_price, default_currency),
            )
        )
    return products


def extract_json_ld(html: str) -> List[Dict[str, Any]]:
    """Extract JSON-LD objects, flattening lists and @graph containers."""
    results: list[dict] = []
    tree = HTMLParser(html)
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            data = json.loads(script.text())
        except json.JSONDecodeError:
            continue
        stack = data if isinstance(data, list) else [data]
        for obj in stack:
            if not isinstance(obj, dict):
                continue
            graph = obj.get("@graph")
            if isinstance(graph, list):
                results.extend(item for item in graph if isinstance(item, dict))
            else:
                results.append(obj)
    return results


def _is_product(obj: Dict[str, Any]) -> bool:
    obj_type = obj.get("@type", "")
    if isinstance(obj_type, list):
        return "Product" in obj_type
    return obj_type == "Product"


def product_from_json_ld(objects: List[Dict[str, Any]]) -> Optional[ProductPage]:
    """Build a ProductPage from the first schema.org Product with a usable offer."""
    for obj in objects:
        if not _is_product(obj):
            continue
        offers = obj.get("offers") or {}
        if isinstance(offers, list):
            offers = offers[0] if offers else {}
        if not isinstance(offers, dict):
            continue
        raw_price = offers.get("price", offers.get("lowPrice"))
        price = parse_price(raw_price)
        if price is None:
            continue
        name = obj.get("name")
        return ProductPage(
            name=name.strip() if isinstance(name, str) else None,
            price=price,
            currency=(offers.get("priceCurrency") or "USD").upper(),
        )
    return None


def _meta(tree: HTMLParser, key: str) -> Optional[str]:
    node = tree.css_first(f'meta[property="{key}"]') or tree.css_first(f'meta[name="{key}"]')
    if node is None:
        return None
    content = node.attributes.get("content")
    return content.strip() if content else None


def extract_product_page(html: str) -> Optional[ProductPage]:
    """
    Extract name and price from a product page.

    JSON-LD first, then Open Graph / product meta tags, then DOM selectors.
    """
    page = product_from_json_ld(extract_json_ld(html))
    if page is not None:
        return page

    tree = HTMLParser(html)
    name = _meta(tree, "og:title")
    if not name:
        h1 = tree.css_first("h1")
        name = h1.text(strip=True) if h1 is not None else None

    raw_price = _meta(tree, "product:price:amount") or _meta(tree, "og:price:amount")
    currency = _meta(tree, "product:price:currency") or _meta(tree, "og:price:currency")
    if raw_price is None:
        for selector in PRICE_SELECTORS:
            found = tree.css_first(selector)
            if found is not None:
                raw_price = found.attributes.get("data-price") or found.text(separator=" ", strip=True)
                if parse_price(raw_price) is not None:
                    break
                raw_price = None

    price = parse_price(raw_price)
    if price is None:
        return None
    return ProductPage(
        name=name or None,
        price=price,
        currency=(currency or detect_currency(raw_price)).upper(),
    )


def extract_shopify_products(payload: Dict[str, Any], store_url: str, currency: str = "USD") -> List[ScrapedProduct]:
    """Convert a Shopify ``/products.json`` payload into listings (first variant price)."""
    products: list[ScrapedProduct] = []
    root = base_url(store_url)
    for item in payload.get("products") or []:
        if not isinstance(item, dict):
            continue
        handle = item.get("handle")
        title = (item.get("title") or "").strip()
        if not handle or not title:
            continue
        variants = item.get("variants") or []
        price = parse_price(variants[0].get("price")) if variants and isinstance(variants[0], dict) else None
        products.append(
            ScrapedProduct(
                url=f"{root}/products/{handle}",
                name=title,
                price=price,
                currency=currency,
            )
        )
    return products


def product_from_shopify_js(payload: Dict[str, Any]) -> Optional[ProductPage]:
    """Convert a Shopify ``/products/{handle}.js`` payload (prices in cents)."""
    raw = payload.get("price")
    if raw is None:
        variants = payload.get("variants") or []
        raw = variants[0].get("price") if variants and isinstance(variants[0], dict) else None
    if raw is None:
        return None
    try:
        price = (Decimal(str(raw)) / 100).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    title = payload.get("title")
    return ProductPage(name=title.strip() if isinstance(title, str) else None, price=price)
