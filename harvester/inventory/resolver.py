"""Inventory resolver: ordered fallback chain over extraction strategies.

Strategies run strictly in sequence against one session:

    page-text -> quantity-dropdown -> out-of-stock-badge -> cart-overflow

The chain returns on the first exact result, otherwise keeps the best
estimate seen so far and falls back to "in stock, count unknown". The
whole chain runs under a time budget; on expiry the best partial result
is raised inside a ResolverTimeoutError so callers can keep it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Optional

from pydantic import ValidationError

from harvester.crawler.menu import MenuCard
from harvester.errors import ResolverTimeoutError
from harvester.inventory.strategies import (
    CartOverflowStrategy,
    DropdownStrategy,
    OutOfStockBadgeStrategy,
    PageTextStrategy,
    Strategy,
)
from harvester.matching.quantity import (
    CART_ERROR_PATTERNS,
    PAGE_TEXT_PATTERNS,
    QuantityMatcher,
    is_out_of_stock_text,
)
from harvester.models import Confidence, InventoryResult, InventorySource
from harvester.session.base import RenderingSession, SessionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolverConfig:
    fast_mode: bool = False
    max_total_time_ms: int = 15000
    dropdown_signal_threshold: int = 20
    max_plausible_quantity: int = 1000
    cart_target_quantity: int = 99
    operation_timeout_ms: int = 5000
    settle_ms: int = 500


def pick_best_result(a: InventoryResult, b: InventoryResult) -> InventoryResult:
    """Return the more trustworthy of two results.

    Higher confidence wins. On equal confidence the one carrying a
    quantity wins; if both or neither do, ``a`` is kept.
    """
    if a.confidence.rank != b.confidence.rank:
        return a if a.confidence.rank > b.confidence.rank else b
    if a.quantity is None and b.quantity is not None:
        return b
    return a


@dataclass
class _ChainProgress:
    started: float
    attempted: list[InventorySource] = field(default_factory=list)
    best: Optional[InventoryResult] = None

    def offer(self, result: InventoryResult) -> None:
        self.best = result if self.best is None else pick_best_result(self.best, result)

    def finish(self, result: Optional[InventoryResult] = None,
               raw_error: Optional[str] = None) -> InventoryResult:
        final = result or self.best or InventoryResult.unknown(raw_error)
        return replace(
            final,
            methods_attempted=tuple(self.attempted),
            elapsed_ms=int((time.monotonic() - self.started) * 1000),
        )


class InventoryResolver:
    """Runs the fallback chain for one product at a time.

    A resolver holds no per-product state and can be shared by concurrent
    jobs; each call works only on the session it is given.
    """

    def __init__(self, config: Optional[ResolverConfig] = None):
        self.config = config or ResolverConfig()
        cfg = self.config
        self.page_text = PageTextStrategy(QuantityMatcher(PAGE_TEXT_PATTERNS, cfg.max_plausible_quantity))
        self.dropdown = DropdownStrategy()
        self.badge = OutOfStockBadgeStrategy()
        self.cart = CartOverflowStrategy(
            QuantityMatcher(CART_ERROR_PATTERNS, cfg.max_plausible_quantity),
            target_quantity=cfg.cart_target_quantity,
            settle_ms=cfg.settle_ms,
            action_timeout_ms=cfg.operation_timeout_ms,
        )

    async def resolve(
        self,
        session: RenderingSession,
        selector: Optional[str] = None,
        fast_mode: Optional[bool] = None,
    ) -> InventoryResult:
        """Resolve inventory for the product the session is positioned at.

        Args:
            session: Session owned by the calling job.
            selector: CSS selector of the product container, or None for
                the whole page (detail pages).
            fast_mode: Overrides the configured fast mode for this call.

        Returns:
            The best InventoryResult the chain produced.

        Raises:
            ResolverTimeoutError: The time budget expired. ``partial``
                holds the best result collected before the deadline.
        """
        fast = self.config.fast_mode if fast_mode is None else fast_mode
        budget_ms = self.config.max_total_time_ms
        progress = _ChainProgress(started=time.monotonic())

        try:
            return await asyncio.wait_for(
                self._run_chain(session, selector, fast, progress),
                timeout=budget_ms / 1000,
            )
        except asyncio.TimeoutError:
            partial = progress.finish(raw_error=f"time budget of {budget_ms}ms exceeded")
            logger.warning(
                "Inventory resolution exceeded %dms after %s; keeping %s result",
                budget_ms, [s.value for s in progress.attempted], partial.confidence.value,
            )
            raise ResolverTimeoutError(partial, budget_ms) from None

    async def _run_chain(self, session, selector, fast, progress: _ChainProgress) -> InventoryResult:
        result = await self._attempt(self.page_text, session, selector, progress)
        if result is not None:
            return progress.finish(result)

        result = await self._attempt(self.dropdown, session, selector, progress)
        if result is not None:
            if result.quantity < self.config.dropdown_signal_threshold:
                progress.offer(result)
            else:
                logger.debug("Dropdown max %d is not informative", result.quantity)

        result = await self._attempt(self.badge, session, selector, progress)
        if result is not None:
            return progress.finish(result)

        if fast:
            logger.debug("Fast mode: skipping cart-overflow")
        else:
            result = await self._attempt(self.cart, session, selector, progress)
            if result is not None:
                return progress.finish(result)

        return progress.finish()

    async def _attempt(self, strategy: Strategy, session, selector,
                       progress: _ChainProgress) -> Optional[InventoryResult]:
        progress.attempted.append(strategy.source)
        try:
            result = await strategy.extract(session, selector)
        except (SessionError, ValidationError) as e:
            logger.debug("Strategy %s not applicable: %s", strategy.source.value, e)
            return None
        if result is not None:
            logger.debug(
                "Strategy %s -> quantity=%s confidence=%s",
                strategy.source.value, result.quantity, result.confidence.value,
            )
        return result

    # ── Listing pass ───────────────────────────────────────────────

    def resolve_cards(self, cards: list[MenuCard]) -> list[InventoryResult]:
        """Apply the page-text and out-of-stock checks to every listing card.

        Works from the already parsed cards, so the whole listing costs a
        single pass over the rendered DOM.

        Returns:
            One InventoryResult per card, in card order. Cards with no
            signal get the boolean fallback.
        """
        return [self._resolve_card(card) for card in cards]

    def _resolve_card(self, card: MenuCard) -> InventoryResult:
        # Same precedence as the chain: page-text, then sold-out markers
        found = self.page_text.matcher.match(card.text)
        if found is not None:
            return InventoryResult(
                quantity=found.quantity,
                quantity_warning=found.phrase,
                in_stock=found.quantity > 0,
                source=InventorySource.PAGE_TEXT,
                confidence=Confidence.EXACT,
            )
        if card.sold_out or is_out_of_stock_text(card.text):
            return InventoryResult(
                quantity=0,
                quantity_warning="Out of stock",
                in_stock=False,
                source=InventorySource.OUT_OF_STOCK_BADGE,
                confidence=Confidence.EXACT,
            )
        return InventoryResult.unknown()
