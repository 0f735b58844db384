"""Stock-count phrase matcher.

Menu pages never publish inventory as data, but they leak it in copy:
"3 left in stock", "Only 7 available". A QuantityMatcher scans text with an
ordered list of patterns; the first pattern that yields a plausible count
wins.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

PAGE_TEXT_PATTERNS = (
    r"(\d+)\s*left\s*in\s*stock",
    r"only\s*(\d+)\s*(?:available|left|remaining)",
    r"(\d+)\s*(?:available|remaining)",
)

# Validation messages shown after requesting more units than exist
CART_ERROR_PATTERNS = (
    r"only\s*(\d+)\s*(?:available|in\s*stock|left)",
    r"max(?:imum)?\s*(?:quantity\s*)?(?:is|of|:)?\s*(\d+)",
    r"can(?:'t|not)\s*add\s*more\s*than\s*(\d+)",
    r"exceeds?\s*(?:available|inventory)[:\s]*(\d+)",
    r"(?:adjusted|changed|limit(?:ed)?)\s*to\s*(\d+)",
)

OUT_OF_STOCK_PATTERN = re.compile(r"out\s*of\s*stock|sold\s*out", re.I)


@dataclass(frozen=True)
class QuantityMatch:
    quantity: int
    phrase: str


class QuantityMatcher:
    """Case-insensitive matcher for stock-count phrases."""

    def __init__(self, patterns: Sequence[str], max_plausible: Optional[int] = None):
        """Initialize with regex patterns whose first group is the count.

        Args:
            patterns: Patterns tried in order.
            max_plausible: Counts above this are treated as unrelated page
                numbers and skipped. None disables the check.
        """
        self.patterns = [re.compile(p, re.I) for p in patterns]
        self.max_plausible = max_plausible

    def match(self, text: str) -> Optional[QuantityMatch]:
        """Return the first plausible count in the text, or None."""
        if not text:
            return None

        for pattern in self.patterns:
            for found in pattern.finditer(text):
                quantity = int(found.group(1))
                if self.max_plausible is not None and quantity > self.max_plausible:
                    logger.debug("Ignoring implausible count %d in %r", quantity, found.group(0))
                    continue
                return QuantityMatch(quantity=quantity, phrase=found.group(0).strip())

        return None

    def match_any(self, texts: Sequence[str]) -> Optional[QuantityMatch]:
        """Match against several texts in order; first hit wins."""
        for text in texts:
            found = self.match(text)
            if found:
                return found
        return None


def is_out_of_stock_text(text: str) -> bool:
    return bool(text and OUT_OF_STOCK_PATTERN.search(text))
