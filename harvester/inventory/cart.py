"""Scoped access to the session's shopping cart.

The cart-overflow strategy mutates the cart, which outlives the strategy:
a reused session would carry leftover line items into the next product.
``scoped_cart`` guarantees the cart is cleared on every exit path,
including exceptions and cancellation by the resolver's time budget.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

from harvester.inventory.readings import CartMessages
from harvester.session.base import ElementNotFoundError, RenderingSession, SessionError

logger = logging.getLogger(__name__)

ADD_TO_CART_SELECTORS = (
    'button:has-text("Add to Cart")',
    'button:has-text("Add to Bag")',
    '[data-testid*="add-to-cart"]',
    'button[aria-label*="add to cart" i]',
    'button[class*="AddToCart"]',
    'button[class*="add-to-cart"]',
)

QUANTITY_INPUT_SELECTORS = (
    'input[type="number"]',
    'input[aria-label*="quantity" i]',
    'input[name*="quantity"]',
)

INCREMENT_SELECTORS = (
    'button[aria-label*="increase" i]',
    'button[aria-label*="increment" i]',
    'button:has-text("+")',
)

REMOVE_SELECTORS = (
    'button:has-text("Remove")',
    'button:has-text("Clear")',
    'button[aria-label*="remove" i]',
    'button[aria-label*="delete" i]',
    '[data-testid*="remove"]',
)

CART_MESSAGES_SCRIPT = """
() => {
  const selectors = [
    '[role="alert"]', '[aria-live="polite"]', '[aria-live="assertive"]',
    '[class*="error"]', '[class*="Error"]', '[class*="warning"]', '[class*="Warning"]',
    '[class*="toast"]', '[class*="Toast"]', '[class*="notification"]',
  ];
  const messages = [];
  for (const sel of selectors) {
    document.querySelectorAll(sel).forEach((el) => {
      const text = (el.textContent || '').trim();
      if (text.length > 5 && text.length < 500) messages.push(text);
    });
  }
  return { messages, pageText: document.body ? document.body.innerText : '' };
}
"""

_MAX_INCREMENT_CLICKS = 50
_MAX_REMOVE_CLICKS = 5


class CartHandle:
    """Cart operations available inside a ``scoped_cart`` block."""

    def __init__(self, session: RenderingSession, settle_ms: int = 500,
                 action_timeout_ms: Optional[int] = None):
        self.session = session
        self.settle_ms = settle_ms
        self.action_timeout_ms = action_timeout_ms
        self.touched = False

    async def _settle(self, factor: float = 1.0) -> None:
        if self.settle_ms > 0:
            await asyncio.sleep(self.settle_ms * factor / 1000)

    async def _click_first(self, selectors: Sequence[str]) -> bool:
        for selector in selectors:
            try:
                await self.session.click(selector, self.action_timeout_ms)
                return True
            except ElementNotFoundError:
                continue
        return False

    async def add_product(self, product_selector: Optional[str] = None) -> bool:
        """Click the product's add-to-cart control. False if there is none."""
        selectors = ADD_TO_CART_SELECTORS
        if product_selector:
            selectors = tuple(f"{product_selector} {s}" for s in ADD_TO_CART_SELECTORS)
        added = await self._click_first(selectors)
        if added:
            self.touched = True
            await self._settle()
        return added

    async def request_quantity(self, quantity: int) -> bool:
        """Ask for ``quantity`` units via the quantity input, or the + button."""
        for selector in QUANTITY_INPUT_SELECTORS:
            try:
                await self.session.fill(selector, str(quantity), self.action_timeout_ms)
                await self._settle()
                return True
            except ElementNotFoundError:
                continue

        for selector in INCREMENT_SELECTORS:
            clicks = 0
            try:
                while clicks < min(quantity, _MAX_INCREMENT_CLICKS):
                    await self.session.click(selector, self.action_timeout_ms)
                    clicks += 1
            except ElementNotFoundError:
                if clicks == 0:
                    continue
            await self._settle()
            return clicks > 0
        return False

    async def submit(self) -> None:
        await self._click_first(ADD_TO_CART_SELECTORS)
        await self._settle(factor=3)

    async def read_messages(self) -> CartMessages:
        raw = await self.session.evaluate(CART_MESSAGES_SCRIPT)
        if raw is None:
            return CartMessages()
        return CartMessages.model_validate(raw)

    async def clear(self) -> int:
        """Remove line items until no remove control is left."""
        removed = 0
        while removed < _MAX_REMOVE_CLICKS:
            if not await self._click_first(REMOVE_SELECTORS):
                break
            removed += 1
            await self._settle()
        return removed


@asynccontextmanager
async def scoped_cart(
    session: RenderingSession,
    settle_ms: int = 500,
    action_timeout_ms: Optional[int] = None,
) -> AsyncIterator[CartHandle]:
    """Yield a CartHandle; empty the cart on exit if anything was added."""
    cart = CartHandle(session, settle_ms=settle_ms, action_timeout_ms=action_timeout_ms)
    try:
        yield cart
    finally:
        if cart.touched:
            try:
                removed = await cart.clear()
                logger.debug("Cart cleanup removed %d line item(s)", removed)
            except SessionError as e:
                logger.warning("Cart cleanup failed, session cart may be dirty: %s", e)
