"""Exception types shared across the harvesting pipeline."""

from typing import Optional

from harvester.models import InventoryResult


class HarvestError(Exception):
    """Base class for failures raised by harvesting code."""


class HttpStatusError(HarvestError):
    """The target site answered with a non-success HTTP status."""

    def __init__(self, status_code: int, url: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        where = f" for {url}" if url else ""
        super().__init__(f"HTTP {status_code}{where}")


class ParseError(HarvestError):
    """The page rendered but could not be turned into product rows.

    Parse failures are permanent unless the raiser flags them retryable.
    """

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class ResolverTimeoutError(HarvestError):
    """The inventory chain exceeded its time budget.

    Attributes:
        partial: Best result collected before the deadline.
        budget_ms: The budget that was exceeded.
    """

    def __init__(self, partial: InventoryResult, budget_ms: int):
        self.partial = partial
        self.budget_ms = budget_ms
        super().__init__(f"inventory resolution exceeded {budget_ms}ms")


class DeadLetterNotFoundError(HarvestError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"dead letter entry {entry_id} not found")


class AlreadyResolvedError(HarvestError):
    """Resolution is terminal; an entry cannot be resolved twice."""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"dead letter entry {entry_id} is already resolved")
