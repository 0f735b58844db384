"""Shared data models for the menu harvester pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse


class Category(str, Enum):
    FLOWER = "flower"
    PRE_ROLL = "pre_roll"
    VAPE = "vape"
    EDIBLE = "edible"
    CONCENTRATE = "concentrate"
    TINCTURE = "tincture"
    TOPICAL = "topical"
    OTHER = "other"


class Strain(str, Enum):
    SATIVA = "sativa"
    INDICA = "indica"
    HYBRID = "hybrid"


class InventorySource(str, Enum):
    PAGE_TEXT = "page-text"
    QUANTITY_DROPDOWN = "quantity-dropdown"
    OUT_OF_STOCK_BADGE = "out-of-stock-badge"
    CART_OVERFLOW = "cart-overflow"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    """How trustworthy an inventory figure is. Ordered exact > estimated > boolean."""

    EXACT = "exact"
    ESTIMATED = "estimated"
    BOOLEAN = "boolean"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    Confidence.EXACT: 3,
    Confidence.ESTIMATED: 2,
    Confidence.BOOLEAN: 1,
}

# Sources allowed to report an exact count
EXACT_SOURCES = frozenset({
    InventorySource.PAGE_TEXT,
    InventorySource.OUT_OF_STOCK_BADGE,
    InventorySource.CART_OVERFLOW,
})


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ErrorType(str, Enum):
    HTTP_ERROR = "http_error"
    PARSE_ERROR = "parse_error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class Resolution(str, Enum):
    RETRY_SUCCESS = "retry_success"
    SKIPPED = "skipped"
    FIXED = "fixed"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class SourceConfig:
    """A retailer menu page to harvest."""

    url: str
    name: Optional[str] = None
    id: Optional[str] = None

    @property
    def source_id(self) -> str:
        """Explicit id if configured, else the domain plus path without www."""
        if self.id:
            return self.id
        parsed = urlparse(self.url)
        domain = parsed.netloc.lower()
        if domain.startswith("www."):
            domain = domain[4:]
        path = parsed.path.rstrip("/")
        return f"{domain}{path}"


@dataclass
class RawScrapedItem:
    """Unparsed product row as produced by the rendering layer."""

    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    thc: Optional[str] = None
    cbd: Optional[str] = None
    price: Optional[str] = None
    product_url: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class Weight:
    amount: float
    unit: str

    def to_dict(self) -> dict[str, Any]:
        return {"amount": self.amount, "unit": self.unit}


@dataclass(frozen=True)
class NormalizedProduct:
    """Structured product record produced by the normalizer."""

    name: str
    brand: Optional[str]
    category: Category
    subcategory: Optional[str] = None
    strain: Optional[Strain] = None
    thc: Optional[float] = None
    cbd: Optional[float] = None
    tac: Optional[float] = None
    weight: Optional[Weight] = None
    price: Optional[float] = None
    tags: tuple[str, ...] = ()
    confidence: float = 1.0

    @property
    def is_complete(self) -> bool:
        """True when every expected field resolved."""
        return all((
            self.name,
            self.brand,
            self.category is not Category.OTHER,
            self.strain is not None,
            self.thc is not None,
            self.weight is not None,
        ))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "brand": self.brand,
            "category": self.category.value,
            "subcategory": self.subcategory,
            "strain": self.strain.value if self.strain else None,
            "thc": self.thc,
            "cbd": self.cbd,
            "tac": self.tac,
            "weight": self.weight.to_dict() if self.weight else None,
            "price": self.price,
            "tags": list(self.tags),
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class InventoryResult:
    """One inventory reading. Never mutated; a better reading replaces it."""

    quantity: Optional[int]
    quantity_warning: Optional[str]
    in_stock: bool
    source: InventorySource
    confidence: Confidence
    raw_error: Optional[str] = None
    methods_attempted: tuple[InventorySource, ...] = ()
    elapsed_ms: Optional[int] = None

    def __post_init__(self):
        if self.confidence is Confidence.EXACT and self.source not in EXACT_SOURCES:
            raise ValueError(f"source {self.source.value} cannot report an exact count")

    @classmethod
    def unknown(cls, raw_error: Optional[str] = None) -> "InventoryResult":
        """In stock, count unknown."""
        return cls(
            quantity=None,
            quantity_warning=None,
            in_stock=True,
            source=InventorySource.UNKNOWN,
            confidence=Confidence.BOOLEAN,
            raw_error=raw_error,
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "quantity": self.quantity,
            "quantityWarning": self.quantity_warning,
            "inStock": self.in_stock,
            "source": self.source.value,
            "confidence": self.confidence.value,
        }
        if self.raw_error:
            data["rawError"] = self.raw_error
        return data


@dataclass(frozen=True)
class ProductRecord:
    """A normalized product with the inventory reading attached, if any."""

    product: NormalizedProduct
    inventory: Optional[InventoryResult] = None
    product_url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = self.product.to_dict()
        if self.inventory is not None:
            data["inventory"] = self.inventory.to_dict()
        return data


@dataclass
class ScrapeJob:
    """One unit of work: harvest one source within a batch."""

    source_id: str
    source_url: str
    batch_id: str
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    items_scraped: int = 0
    items_failed: int = 0


@dataclass
class AttemptMeta:
    """Context attached to a failure report."""

    attempts: int = 1
    first_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    status_code: Optional[int] = None
    batch_id: Optional[str] = None


@dataclass
class DeadLetterEntry:
    """Unresolved (or resolved, for audit) failure class of one source."""

    id: str
    source: str
    error_type: ErrorType
    error_message: str
    total_retries: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    status_code: Optional[int] = None
    batch_id: Optional[str] = None
    resolution: Optional[Resolution] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass
class DeadLetterStats:
    unresolved_count: int
    resolved_last_24h: int
    by_error_type: dict[str, int]
    oldest_unresolved: Optional[datetime] = None


@dataclass(frozen=True)
class FailureDescriptor:
    """Structured terminal failure returned instead of raising."""

    error_type: ErrorType
    message: str
    attempts: int
    retryable: bool
    status_code: Optional[int] = None
    dead_letter_id: Optional[str] = None


@dataclass
class RetryOutcome:
    """Either a value or a failure descriptor, never both."""

    value: Any = None
    failure: Optional[FailureDescriptor] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class SourceResult:
    source_id: str
    items: list[ProductRecord] = field(default_factory=list)
    status: str = "ok"  # ok | error
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sourceId": self.source_id,
            "items": [item.to_dict() for item in self.items],
            "status": self.status,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class BatchPayload:
    """The single output contract to the ingestion collaborator."""

    batch_id: str
    results: list[SourceResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class BatchSummary:
    """Summary of one coordinated batch run."""

    batch_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    succeeded: int = 0
    failed: int = 0
    items_scraped: int = 0
    dead_lettered: int = 0
    ingested: bool = False
    jobs: list[ScrapeJob] = field(default_factory=list)
    payload: Optional[BatchPayload] = None
