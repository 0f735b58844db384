"""Tests for the inventory fallback chain."""

import unittest

from harvester.crawler.menu import parse_menu
from harvester.errors import ResolverTimeoutError
from harvester.inventory.cart import CART_MESSAGES_SCRIPT
from harvester.inventory.resolver import InventoryResolver, ResolverConfig, pick_best_result
from harvester.inventory.strategies import BADGE_SCRIPT, DROPDOWN_SCRIPT, PAGE_TEXT_SCRIPT
from harvester.models import Confidence, InventoryResult, InventorySource
from harvester.session.base import SessionTimeoutError

from fakes import FakeSession

ADD = 'button:has-text("Add to Cart")'
REMOVE = 'button:has-text("Remove")'
QTY_INPUT = 'input[type="number"]'

NO_TEXT = {"found": True, "text": "Blue Dream 3.5g $35.00"}
NO_BADGE = {"found": True, "badge": False, "text": "Blue Dream 3.5g $35.00"}


def _result(confidence, quantity, source=InventorySource.PAGE_TEXT):
    return InventoryResult(
        quantity=quantity, quantity_warning=None, in_stock=True,
        source=source, confidence=confidence,
    )


class TestPickBestResult(unittest.TestCase):

    def test_higher_confidence_wins(self):
        exact = _result(Confidence.EXACT, 3)
        estimated = _result(Confidence.ESTIMATED, 5, InventorySource.QUANTITY_DROPDOWN)
        self.assertIs(pick_best_result(exact, estimated), exact)
        self.assertIs(pick_best_result(estimated, exact), exact)

    def test_estimated_beats_boolean(self):
        boolean = InventoryResult.unknown()
        estimated = _result(Confidence.ESTIMATED, 5, InventorySource.QUANTITY_DROPDOWN)
        self.assertIs(pick_best_result(boolean, estimated), estimated)

    def test_tie_prefers_quantity(self):
        without = _result(Confidence.ESTIMATED, None, InventorySource.QUANTITY_DROPDOWN)
        with_qty = _result(Confidence.ESTIMATED, 4, InventorySource.QUANTITY_DROPDOWN)
        self.assertIs(pick_best_result(without, with_qty), with_qty)
        self.assertIs(pick_best_result(with_qty, without), with_qty)

    def test_tie_defaults_to_first(self):
        a = _result(Confidence.EXACT, 1)
        b = _result(Confidence.EXACT, 2)
        self.assertIs(pick_best_result(a, b), a)
        first, second = InventoryResult.unknown(), InventoryResult.unknown("no signal")
        self.assertIs(pick_best_result(first, second), first)


class TestResolverChain(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.resolver = InventoryResolver(ResolverConfig(settle_ms=0))

    async def test_page_text_short_circuits(self):
        session = FakeSession(
            evaluate_results={PAGE_TEXT_SCRIPT: {"found": True, "text": "Only 3 left in stock"}},
            clickable={ADD, REMOVE}, fillable={QTY_INPUT},
        )
        result = await self.resolver.resolve(session)

        self.assertEqual(result.source, InventorySource.PAGE_TEXT)
        self.assertEqual(result.confidence, Confidence.EXACT)
        self.assertEqual(result.quantity, 3)
        self.assertTrue(result.in_stock)
        self.assertEqual(result.methods_attempted, (InventorySource.PAGE_TEXT,))
        # The cart was never touched
        self.assertEqual(session.count("click"), 0)
        self.assertEqual(session.count("fill"), 0)
        self.assertFalse(session.evaluated(CART_MESSAGES_SCRIPT))

    async def test_out_of_stock_badge_wins(self):
        session = FakeSession(
            evaluate_results={
                PAGE_TEXT_SCRIPT: NO_TEXT,
                DROPDOWN_SCRIPT: None,
                BADGE_SCRIPT: {"found": True, "badge": True, "text": ""},
            },
            clickable={ADD, REMOVE}, fillable={QTY_INPUT},
        )
        result = await self.resolver.resolve(session)

        self.assertEqual(result.quantity, 0)
        self.assertEqual(result.confidence, Confidence.EXACT)
        self.assertEqual(result.source, InventorySource.OUT_OF_STOCK_BADGE)
        self.assertFalse(result.in_stock)
        self.assertEqual(session.count("click"), 0)

    async def test_sold_out_text_without_badge(self):
        session = FakeSession(evaluate_results={
            PAGE_TEXT_SCRIPT: NO_TEXT,
            BADGE_SCRIPT: {"found": True, "badge": False, "text": "Sold Out"},
        })
        result = await self.resolver.resolve(session, fast_mode=True)
        self.assertEqual(result.quantity, 0)
        self.assertFalse(result.in_stock)

    async def test_low_dropdown_kept_as_estimate(self):
        session = FakeSession(evaluate_results={
            PAGE_TEXT_SCRIPT: NO_TEXT,
            DROPDOWN_SCRIPT: {"options": ["1", "2", "3", "4", "5"], "inputMax": None},
            BADGE_SCRIPT: NO_BADGE,
        })
        result = await self.resolver.resolve(session, fast_mode=True)

        self.assertEqual(result.source, InventorySource.QUANTITY_DROPDOWN)
        self.assertEqual(result.confidence, Confidence.ESTIMATED)
        self.assertEqual(result.quantity, 5)
        self.assertEqual(result.quantity_warning, "Max qty: 5")

    async def test_high_dropdown_not_informative(self):
        session = FakeSession(evaluate_results={
            PAGE_TEXT_SCRIPT: NO_TEXT,
            DROPDOWN_SCRIPT: {"options": [str(i) for i in range(1, 31)]},
            BADGE_SCRIPT: NO_BADGE,
        })
        result = await self.resolver.resolve(session, fast_mode=True)

        self.assertEqual(result.confidence, Confidence.BOOLEAN)
        self.assertIsNone(result.quantity)
        self.assertTrue(result.in_stock)

    async def test_input_max_used_without_options(self):
        session = FakeSession(evaluate_results={
            PAGE_TEXT_SCRIPT: NO_TEXT,
            DROPDOWN_SCRIPT: {"options": [], "inputMax": "8"},
            BADGE_SCRIPT: NO_BADGE,
        })
        result = await self.resolver.resolve(session, fast_mode=True)
        self.assertEqual(result.quantity, 8)

    async def test_fast_mode_skips_cart(self):
        session = FakeSession(
            evaluate_results={PAGE_TEXT_SCRIPT: NO_TEXT, BADGE_SCRIPT: NO_BADGE},
            clickable={ADD, REMOVE}, fillable={QTY_INPUT},
        )
        resolver = InventoryResolver(ResolverConfig(fast_mode=True, settle_ms=0))
        result = await resolver.resolve(session)

        self.assertEqual(session.count("click"), 0)
        self.assertNotIn(InventorySource.CART_OVERFLOW, result.methods_attempted)
        self.assertEqual(result.source, InventorySource.UNKNOWN)

    async def test_cart_overflow_reads_error_and_clears_cart(self):
        session = FakeSession(
            evaluate_results={
                PAGE_TEXT_SCRIPT: NO_TEXT,
                DROPDOWN_SCRIPT: None,
                BADGE_SCRIPT: NO_BADGE,
                CART_MESSAGES_SCRIPT: {"messages": ["Only 7 available"], "pageText": ""},
            },
            clickable={ADD, REMOVE}, fillable={QTY_INPUT},
        )
        result = await self.resolver.resolve(session)

        self.assertEqual(result.source, InventorySource.CART_OVERFLOW)
        self.assertEqual(result.confidence, Confidence.EXACT)
        self.assertEqual(result.quantity, 7)
        self.assertEqual(session.filled[QTY_INPUT], "99")
        self.assertEqual(session.cart_items, 0)

    async def test_cart_cleared_when_no_message_parsed(self):
        session = FakeSession(
            evaluate_results={
                PAGE_TEXT_SCRIPT: NO_TEXT,
                BADGE_SCRIPT: NO_BADGE,
                CART_MESSAGES_SCRIPT: {"messages": ["Added to cart!"], "pageText": "Your cart"},
            },
            clickable={ADD, REMOVE}, fillable={QTY_INPUT},
        )
        result = await self.resolver.resolve(session)

        self.assertEqual(result.confidence, Confidence.BOOLEAN)
        self.assertEqual(session.cart_items, 0)
        self.assertEqual(
            result.methods_attempted,
            (InventorySource.PAGE_TEXT, InventorySource.QUANTITY_DROPDOWN,
             InventorySource.OUT_OF_STOCK_BADGE, InventorySource.CART_OVERFLOW),
        )

    async def test_session_errors_are_inapplicable(self):
        session = FakeSession(evaluate_results={
            PAGE_TEXT_SCRIPT: SessionTimeoutError("evaluate timed out"),
            DROPDOWN_SCRIPT: "not a payload",
            BADGE_SCRIPT: {"found": True, "badge": True},
        })
        result = await self.resolver.resolve(session, fast_mode=True)
        self.assertEqual(result.source, InventorySource.OUT_OF_STOCK_BADGE)

    async def test_malformed_payload_is_inapplicable(self):
        session = FakeSession(evaluate_results={
            PAGE_TEXT_SCRIPT: ["unexpected"],
            BADGE_SCRIPT: NO_BADGE,
        })
        result = await self.resolver.resolve(session, fast_mode=True)
        self.assertEqual(result.confidence, Confidence.BOOLEAN)
        self.assertTrue(result.in_stock)

    async def test_records_elapsed_time(self):
        session = FakeSession(evaluate_results={PAGE_TEXT_SCRIPT: {"found": True, "text": "2 remaining"}})
        result = await self.resolver.resolve(session)
        self.assertIsNotNone(result.elapsed_ms)
        self.assertGreaterEqual(result.elapsed_ms, 0)


class TestResolverBudget(unittest.IsolatedAsyncioTestCase):

    async def test_timeout_returns_best_partial_and_clears_cart(self):
        session = FakeSession(
            evaluate_results={
                PAGE_TEXT_SCRIPT: NO_TEXT,
                DROPDOWN_SCRIPT: {"options": ["1", "2", "3", "4"]},
                BADGE_SCRIPT: NO_BADGE,
                CART_MESSAGES_SCRIPT: {"messages": ["Only 7 available"]},
            },
            clickable={ADD, REMOVE}, fillable={QTY_INPUT},
            delays={CART_MESSAGES_SCRIPT: 5},
        )
        resolver = InventoryResolver(ResolverConfig(max_total_time_ms=100, settle_ms=0))

        with self.assertRaises(ResolverTimeoutError) as ctx:
            await resolver.resolve(session)

        partial = ctx.exception.partial
        self.assertEqual(partial.quantity, 4)
        self.assertEqual(partial.confidence, Confidence.ESTIMATED)
        self.assertIn(InventorySource.CART_OVERFLOW, partial.methods_attempted)
        self.assertEqual(ctx.exception.budget_ms, 100)
        # Cart cleanup ran despite the cancellation
        self.assertEqual(session.cart_items, 0)

    async def test_timeout_without_any_result(self):
        session = FakeSession(
            evaluate_results={PAGE_TEXT_SCRIPT: NO_TEXT},
            delays={PAGE_TEXT_SCRIPT: 5},
        )
        resolver = InventoryResolver(ResolverConfig(max_total_time_ms=50, settle_ms=0))

        with self.assertRaises(ResolverTimeoutError) as ctx:
            await resolver.resolve(session)

        partial = ctx.exception.partial
        self.assertEqual(partial.confidence, Confidence.BOOLEAN)
        self.assertTrue(partial.in_stock)
        self.assertIn("50ms", partial.raw_error)


class TestListingPass(unittest.TestCase):

    HTML = """
    <html><body>
      <div data-testid="product-card"><h3>Blue Dream</h3><span>Only 2 left</span></div>
      <div data-testid="product-card"><h3>Gelato Cake</h3><div class="soldOutBadge">Sold out</div></div>
      <div data-testid="product-card"><h3>Sour Diesel</h3><span>$35.00</span></div>
    </body></html>
    """

    def test_one_result_per_card(self):
        blue_dream, gelato, sour_diesel = InventoryResolver().resolve_cards(parse_menu(self.HTML))

        self.assertEqual(blue_dream.quantity, 2)
        self.assertEqual(blue_dream.source, InventorySource.PAGE_TEXT)
        self.assertEqual(gelato.quantity, 0)
        self.assertFalse(gelato.in_stock)
        self.assertEqual(sour_diesel.confidence, Confidence.BOOLEAN)

    def test_cards_sharing_a_name_keep_their_own_result(self):
        html = """
        <html><body>
          <div data-testid="product-card"><h3>Blue Dream</h3><span>Only 3 left</span></div>
          <div data-testid="product-card"><h3>Blue Dream</h3><div class="soldOutBadge">Sold out</div></div>
        </body></html>
        """
        first, second = InventoryResolver().resolve_cards(parse_menu(html))

        self.assertEqual(first.quantity, 3)
        self.assertTrue(first.in_stock)
        self.assertEqual(second.quantity, 0)
        self.assertFalse(second.in_stock)


if __name__ == "__main__":
    unittest.main()
