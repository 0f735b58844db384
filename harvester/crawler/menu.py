"""Menu page preparation and product-card extraction.

Uses the rendering session to get a client-rendered menu into a parseable
state, then BeautifulSoup (lxml parser) for a single pass over the product
cards of the rendered HTML.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from harvester.errors import HttpStatusError, ParseError
from harvester.models import RawScrapedItem
from harvester.session.base import RenderingSession, SessionTimeoutError

logger = logging.getLogger(__name__)

CARD_SELECTORS = (
    '[data-testid="product-card"]',
    '[class*="ProductCard"]',
    '[class*="product-card"]',
    'div[class*="styles_productCard"]',
)
CARD_SELECTOR = ", ".join(CARD_SELECTORS)

_NAME_SELECTOR = 'h2, h3, [class*="productName"], [class*="ProductName"]'
_BRAND_SELECTOR = '[class*="brandName"], [class*="BrandName"]'
_CATEGORY_SELECTOR = '[class*="category"], [class*="Category"]'
_THC_SELECTOR = '[class*="thc"], [class*="THC"]'
_CBD_SELECTOR = '[class*="cbd"], [class*="CBD"]'
_PRICE_SELECTOR = '[class*="price"], [class*="Price"]'
_SOLD_OUT_SELECTOR = (
    '[class*="outOfStock"], [class*="OutOfStock"], [class*="soldOut"], '
    '[class*="SoldOut"], [data-testid*="out-of-stock"], [data-testid*="sold-out"]'
)

_PRICE_RE = re.compile(r"\$(\d+(?:\.\d{1,2})?)")
_WHITESPACE_RE = re.compile(r"\s+")

AGE_GATE_SCRIPT = """
() => {
  for (const button of document.querySelectorAll('button')) {
    const text = (button.textContent || '').trim().toLowerCase();
    if (text === 'yes' || text === 'i am 21' || text.includes('21+')
        || text.includes('enter') || text === 'i agree') {
      button.click();
      return true;
    }
  }
  return false;
}
"""


@dataclass
class MenuCard:
    """One product card of a rendered menu listing."""

    item: RawScrapedItem
    text: str
    sold_out: bool = False


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _select_text(card: Tag, selector: str) -> Optional[str]:
    el = card.select_one(selector)
    if el is None:
        return None
    text = _collapse(el.get_text(" "))
    return text or None


def _card_price(card: Tag, card_text: str) -> Optional[str]:
    for el in card.select(_PRICE_SELECTOR):
        text = _collapse(el.get_text(" "))
        if _PRICE_RE.search(text):
            return text
    # Sale layouts show several prices; the lowest is the current one
    amounts = [float(m) for m in _PRICE_RE.findall(card_text)]
    if amounts:
        return f"${min(amounts):.2f}"
    return None


def _card_url(card: Tag, base_url: Optional[str]) -> Optional[str]:
    link = card if card.name == "a" and card.get("href") else card.select_one('a[href*="/product/"]')
    if link is None:
        return None
    href = link.get("href", "").strip()
    if not href or "/product/" not in href:
        return None
    return urljoin(base_url, href) if base_url else href


def find_product_cards(soup: BeautifulSoup) -> list[Tag]:
    """Outermost elements matching a product-card selector."""
    cards = soup.select(CARD_SELECTOR)
    matched = set(id(c) for c in cards)
    outermost = []
    for card in cards:
        if any(id(parent) in matched for parent in card.parents):
            continue
        outermost.append(card)
    return outermost


def parse_card(card: Tag, base_url: Optional[str] = None) -> Optional[MenuCard]:
    """Turn one card into a MenuCard, or None when it has no usable name."""
    name_el = card.select_one(_NAME_SELECTOR)
    if name_el is None:
        return None
    # Concatenated like textContent; the normalizer expects the dense form
    name = _collapse(name_el.get_text())
    if len(name) < 3:
        return None

    card_text = _collapse(card.get_text(" "))
    img = card.find("img")
    item = RawScrapedItem(
        name=name,
        brand=_select_text(card, _BRAND_SELECTOR),
        category=_select_text(card, _CATEGORY_SELECTOR),
        thc=_select_text(card, _THC_SELECTOR),
        cbd=_select_text(card, _CBD_SELECTOR),
        price=_card_price(card, card_text),
        product_url=_card_url(card, base_url),
        image_url=img.get("src") if img is not None else None,
    )
    return MenuCard(
        item=item,
        text=card_text,
        sold_out=card.select_one(_SOLD_OUT_SELECTOR) is not None,
    )


def parse_menu(html: str, base_url: Optional[str] = None) -> list[MenuCard]:
    """Parse every product card of a rendered menu page.

    Cards without a usable name are logged and skipped; they never fail
    the page.
    """
    soup = BeautifulSoup(html, "lxml")
    cards = []
    skipped = 0
    for tag in find_product_cards(soup):
        card = parse_card(tag, base_url)
        if card is None:
            skipped += 1
            continue
        cards.append(card)

    if skipped:
        logger.warning("Skipped %d product card(s) without a usable name", skipped)
    logger.debug("Parsed %d product cards", len(cards))
    return cards


async def prepare_menu(
    session: RenderingSession,
    url: str,
    navigation_timeout_ms: int = 30000,
    render_timeout_ms: int = 15000,
) -> str:
    """Navigate to a menu and wait until product cards are rendered.

    Args:
        session: Session owned by the calling job.
        url: Menu page URL.
        navigation_timeout_ms: Timeout for the initial page load.
        render_timeout_ms: How long to wait for the first product card.

    Returns:
        Rendered HTML of the menu page.

    Raises:
        HttpStatusError: The site answered with a 4xx/5xx status.
        ParseError: The page never rendered any product cards.
    """
    status = await session.navigate(url, navigation_timeout_ms)
    if status is not None and status >= 400:
        raise HttpStatusError(status, url)

    if await session.evaluate(AGE_GATE_SCRIPT):
        logger.debug("Dismissed age gate on %s", url)

    try:
        await session.wait_for_selector(CARD_SELECTOR, render_timeout_ms)
    except SessionTimeoutError as e:
        raise ParseError(f"no product cards rendered on {url} within {render_timeout_ms}ms") from e

    return await session.content()
