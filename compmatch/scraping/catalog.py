"""Competitor catalog and single product scraping."""

import json
import logging
import time
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from compmatch import metrics
from compmatch.errors import (
    MatchingError,
    ScrapeBlockedError,
    ScrapeNotFoundError,
    ScrapeParseError,
    ScrapeTransientError,
)
from compmatch.scraping.http_client import FetchPolicy, fetch_with_policy
from compmatch.scraping.parsing import (
    base_url,
    extract_listing_cards,
    extract_product_page,
    extract_shopify_products,
    is_shopify_url,
    product_from_shopify_js,
)
from compmatch.scraping.types import ProductPage, ScrapedProduct

logger = logging.getLogger(__name__)

TIER_PLAIN = "plain"
TIER_PREMIUM_PROXY = "premium_proxy"
TIER_RENDER_JS = "render_js"

SHOPIFY_PAGE_SIZE = 250


def with_page(url: str, page: int) -> str:
    """Return ``url`` with its ``page`` query parameter set (page 1 is the URL itself)."""
    if page <= 1:
        return url
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page)))
    return urlunparse(parsed._replace(query=urlencode(query)))


class CatalogScraper:
    """
    Scrapes competitor catalogs (for discovery) and single product pages (for price refresh).

    Requests go direct, or through a ScrapingBee-style scraping API when
    ``scraping_api_base_url`` is configured. Single product scrapes escalate
    through fetch tiers: plain, premium proxy, then JS rendering.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: Optional[FetchPolicy] = None,
        max_pages: int = 20,
        min_products_per_page: int = 3,
        scraping_api_base_url: str = "",
        scraping_api_key: str = "",
        fallback_tiers: Optional[list[str]] = None,
    ):
        self.client = client
        self.policy = policy or FetchPolicy()
        self.max_pages = max_pages
        self.min_products_per_page = min_products_per_page
        self.scraping_api_base_url = scraping_api_base_url.rstrip("/")
        self.scraping_api_key = scraping_api_key
        self.fallback_tiers = fallback_tiers or [TIER_PLAIN, TIER_PREMIUM_PROXY, TIER_RENDER_JS]

    @property
    def api_enabled(self) -> bool:
        return bool(self.scraping_api_base_url and self.scraping_api_key)

    async def _fetch(self, url: str, tier: str = TIER_PLAIN, kind: str = "page") -> httpx.Response:
        """Fetch a URL directly, or through the scraping API for the given tier."""
        started = time.monotonic()
        success = False
        try:
            if self.api_enabled:
                params = {
                    "api_key": self.scraping_api_key,
                    "url": url,
                    "render_js": "true" if tier == TIER_RENDER_JS else "false",
                }
                if tier in (TIER_PREMIUM_PROXY, TIER_RENDER_JS):
                    params["premium_proxy"] = "true"
                resp = await fetch_with_policy(
                    self.client,
                    self.scraping_api_base_url,
                    self.policy,
                    params=params,
                )
            else:
                resp = await fetch_with_policy(self.client, url, self.policy)
            success = True
            return resp
        finally:
            metrics.record_scrape(kind, success, time.monotonic() - started)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def scrape_catalog(self, url: str) -> list[ScrapedProduct]:
        """
        Scrape every listing of a competitor catalog.

        Args:
            url: Competitor catalog URL (store root or collection page)

        Returns:
            Listings deduplicated by URL, in page order

        Raises:
            ScrapeBlockedError: First page blocked
            ScrapeTransientError: First page unreachable after retries
        """
        if is_shopify_url(url):
            try:
                products = await self._scrape_shopify(url)
                if products:
                    return products
            except (ScrapeNotFoundError, ScrapeParseError) as e:
                logger.info(f"Shopify JSON unavailable for {url}, falling back to HTML: {e}")

        return await self._scrape_listing_pages(url)

    async def _scrape_shopify(self, url: str) -> list[ScrapedProduct]:
        root = base_url(url)
        products: dict[str, ScrapedProduct] = {}
        for page in range(1, self.max_pages + 1):
            page_url = f"{root}/products.json?limit={SHOPIFY_PAGE_SIZE}&page={page}"
            resp = await self._fetch(page_url, kind="catalog")
            try:
                payload = resp.json()
            except (json.JSONDecodeError, ValueError) as e:
                raise ScrapeParseError(f"Invalid Shopify JSON from {page_url}: {e}") from e
            if not isinstance(payload, dict):
                raise ScrapeParseError(f"Unexpected Shopify payload from {page_url}")

            batch = extract_shopify_products(payload, url)
            for product in batch:
                products.setdefault(product.url, product)
            if len(batch) < SHOPIFY_PAGE_SIZE:
                break

        logger.info(f"Shopify catalog {root}: {len(products)} products")
        return list(products.values())

    async def _scrape_listing_pages(self, url: str) -> list[ScrapedProduct]:
        products: dict[str, ScrapedProduct] = {}
        for page in range(1, self.max_pages + 1):
            page_url = with_page(url, page)
            try:
                resp = await self._fetch(page_url, kind="catalog")
            except (ScrapeBlockedError, ScrapeTransientError, ScrapeNotFoundError) as e:
                if page == 1:
                    raise
                logger.info(f"Stopping pagination at page {page} of {url}: {e}")
                break

            cards = extract_listing_cards(resp.text, page_url if self.api_enabled else str(resp.url))
            new = [card for card in cards if card.url not in products]
            for card in new:
                products[card.url] = card

            logger.debug(f"{page_url}: {len(cards)} cards, {len(new)} new")
            if not new or len(cards) < self.min_products_per_page:
                break

        logger.info(f"Catalog {url}: {len(products)} listings")
        return list(products.values())

    # ------------------------------------------------------------------
    # Single product
    # ------------------------------------------------------------------

    async def _scrape_shopify_js(self, url: str) -> Optional[ProductPage]:
        parsed = urlparse(url)
        js_url = urlunparse(parsed._replace(path=parsed.path.rstrip("/") + ".js", query="", fragment=""))
        resp = await fetch_with_policy(self.client, js_url, self.policy)
        try:
            return product_from_shopify_js(resp.json())
        except (json.JSONDecodeError, ValueError, AttributeError):
            return None

    async def scrape_single_product(self, url: str) -> ProductPage:
        """
        Scrape one product page, escalating through fetch tiers.

        Args:
            url: Product page URL

        Returns:
            ProductPage with a price

        Raises:
            ScrapeNotFoundError: The URL does not exist (not retried on other tiers)
            ScrapeBlockedError / ScrapeTransientError: Every tier failed
            ScrapeParseError: Pages fetched but no price found
        """
        last_error: Optional[MatchingError] = None

        if is_shopify_url(url) and "/products/" in url:
            try:
                page = await self._scrape_shopify_js(url)
                if page is not None and page.price is not None:
                    return page
            except ScrapeNotFoundError:
                logger.debug(f"No Shopify .js endpoint for {url}")
            except (ScrapeBlockedError, ScrapeTransientError) as e:
                last_error = e

        for tier in self.fallback_tiers:
            if tier != TIER_PLAIN and not self.api_enabled:
                continue
            try:
                resp = await self._fetch(url, tier=tier, kind="product")
            except ScrapeNotFoundError:
                raise
            except (ScrapeBlockedError, ScrapeTransientError) as e:
                logger.info(f"Tier {tier} failed for {url}: {e}")
                last_error = e
                continue

            page = extract_product_page(resp.text)
            if page is not None and page.price is not None:
                return page
            last_error = ScrapeParseError(f"No price found on {url} (tier {tier})")

        raise last_error or ScrapeParseError(f"No price found on {url}")
