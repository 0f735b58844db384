"""Inventory extraction strategies.

Each strategy inspects a live rendering session positioned at one product
and returns an InventoryResult, or None when it has nothing to say. Session
failures and malformed script payloads propagate as SessionError /
ValidationError; the resolver treats both as "not applicable".
"""

import logging
from typing import Optional

from harvester.inventory.cart import scoped_cart
from harvester.inventory.readings import BadgeReading, DropdownReading, TextReading
from harvester.matching.quantity import QuantityMatcher, is_out_of_stock_text
from harvester.models import Confidence, InventoryResult, InventorySource
from harvester.session.base import RenderingSession

logger = logging.getLogger(__name__)

PAGE_TEXT_SCRIPT = """
(selector) => {
  const container = selector ? document.querySelector(selector) : document.body;
  if (!container) return { found: false, text: '' };
  return { found: true, text: container.innerText || container.textContent || '' };
}
"""

DROPDOWN_SCRIPT = """
(selector) => {
  const container = selector ? document.querySelector(selector) : document.body;
  if (!container) return null;
  const select = container.querySelector('select');
  const options = select ? Array.from(select.options).map((o) => o.value) : [];
  const input = container.querySelector('input[type="number"]');
  return { options, inputMax: input ? input.getAttribute('max') : null };
}
"""

BADGE_SCRIPT = """
(selector) => {
  const container = selector ? document.querySelector(selector) : document.body;
  if (!container) return { found: false };
  const markers = [
    '[class*="outOfStock"]', '[class*="OutOfStock"]',
    '[class*="soldOut"]', '[class*="SoldOut"]',
    '[data-testid*="out-of-stock"]', '[data-testid*="sold-out"]',
  ];
  const badge = markers.some((m) => container.querySelector(m) !== null);
  return { found: true, badge, text: container.innerText || container.textContent || '' };
}
"""


class Strategy:
    source: InventorySource
    slow = False

    async def extract(self, session: RenderingSession,
                      selector: Optional[str] = None) -> Optional[InventoryResult]:
        raise NotImplementedError


class PageTextStrategy(Strategy):
    """Visible stock copy such as "3 left in stock"."""

    source = InventorySource.PAGE_TEXT

    def __init__(self, matcher: QuantityMatcher):
        self.matcher = matcher

    async def extract(self, session, selector=None):
        reading = TextReading.model_validate(await session.evaluate(PAGE_TEXT_SCRIPT, selector))
        if not reading.found:
            return None
        found = self.matcher.match(reading.text)
        if found is None:
            return None
        return InventoryResult(
            quantity=found.quantity,
            quantity_warning=found.phrase,
            in_stock=found.quantity > 0,
            source=self.source,
            confidence=Confidence.EXACT,
        )


class DropdownStrategy(Strategy):
    """Largest selectable quantity. Sites cap it at stock, but not always."""

    source = InventorySource.QUANTITY_DROPDOWN

    async def extract(self, session, selector=None):
        raw = await session.evaluate(DROPDOWN_SCRIPT, selector)
        if raw is None:
            return None
        max_quantity = DropdownReading.model_validate(raw).max_quantity
        if max_quantity is None:
            return None
        return InventoryResult(
            quantity=max_quantity,
            quantity_warning=f"Max qty: {max_quantity}",
            in_stock=True,
            source=self.source,
            confidence=Confidence.ESTIMATED,
        )


class OutOfStockBadgeStrategy(Strategy):
    source = InventorySource.OUT_OF_STOCK_BADGE

    async def extract(self, session, selector=None):
        reading = BadgeReading.model_validate(await session.evaluate(BADGE_SCRIPT, selector))
        if not reading.found:
            return None
        if not (reading.badge or is_out_of_stock_text(reading.text)):
            return None
        return InventoryResult(
            quantity=0,
            quantity_warning="Out of stock",
            in_stock=False,
            source=self.source,
            confidence=Confidence.EXACT,
        )


class CartOverflowStrategy(Strategy):
    """Request far more units than exist and read the validation message.

    Sites commonly answer with the true remaining count ("Only 7
    available"). The cart is emptied again on every exit path.
    """

    source = InventorySource.CART_OVERFLOW
    slow = True

    def __init__(self, matcher: QuantityMatcher, target_quantity: int = 99,
                 settle_ms: int = 500, action_timeout_ms: Optional[int] = None):
        self.matcher = matcher
        self.target_quantity = target_quantity
        self.settle_ms = settle_ms
        self.action_timeout_ms = action_timeout_ms

    async def extract(self, session, selector=None):
        async with scoped_cart(session, self.settle_ms, self.action_timeout_ms) as cart:
            if not await cart.add_product(selector):
                logger.debug("No add-to-cart control found")
                return None
            if not await cart.request_quantity(self.target_quantity):
                logger.debug("Could not raise cart quantity")
                return None
            await cart.submit()
            reading = await cart.read_messages()

        found = self.matcher.match_any([*reading.messages, reading.page_text])
        if found is None:
            return None
        return InventoryResult(
            quantity=found.quantity,
            quantity_warning=found.phrase,
            in_stock=found.quantity > 0,
            source=self.source,
            confidence=Confidence.EXACT,
        )
