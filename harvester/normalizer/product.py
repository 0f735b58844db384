"""Product text normalizer.

Turns densely concatenated menu rows such as

    "Splash | 3.5g Flower | Chem 91SplashHybridTAC: 33.23%THC: 25.9%"

into a structured NormalizedProduct. Menu widgets render brand, strain and
cannabinoid badges as adjacent text nodes, so scraped names arrive with that
metadata glued onto the end. The normalizer peels the metadata off, then
reads the remaining pipe- or dash-delimited description.

Pure functions only: no I/O, never raises on odd input. Fields that cannot
be recognized are left as None.
"""

import logging
import re
from typing import Iterable, Optional

from harvester.models import Category, NormalizedProduct, RawScrapedItem, Strain, Weight

logger = logging.getLogger(__name__)

# Promotional labels rendered inline with the product name
_TAG_PATTERNS = (
    ("Staff Pick", re.compile(r"staff\s*pick", re.I)),
    ("Best Seller", re.compile(r"best\s*seller", re.I)),
    ("New Arrival", re.compile(r"new\s*arrival", re.I)),
    ("Limited Edition", re.compile(r"limited\s*edition", re.I)),
    ("On Sale", re.compile(r"\bon\s*sale\b", re.I)),
    ("Popular", re.compile(r"popular\b", re.I)),
    ("Featured", re.compile(r"featured\b", re.I)),
)

# Numeric value is always the first float; unit suffix ("%", "mg") is noise
_CANNABINOID_PATTERNS = {
    "thc": re.compile(r"THC\s*:\s*(\d+(?:\.\d+)?)\s*(?:%|mg\b)?", re.I),
    "tac": re.compile(r"TAC\s*:\s*(\d+(?:\.\d+)?)\s*(?:%|mg\b)?", re.I),
    "cbd": re.compile(r"CBD\s*:\s*(\d+(?:\.\d+)?)\s*(?:%|mg\b)?", re.I),
}
_FIRST_FLOAT = re.compile(r"(\d+(?:\.\d+)?)")

_STRAIN_SYNONYMS = {
    "sativa": Strain.SATIVA,
    "indica": Strain.INDICA,
    "hybrid": Strain.HYBRID,
    "sativa-hybrid": Strain.SATIVA,
    "indica-hybrid": Strain.INDICA,
    "sativa-dominant": Strain.SATIVA,
    "indica-dominant": Strain.INDICA,
}
_STRAIN_WORDS = r"(?:sativa|indica)[-\s]?(?:hybrid|dominant)|sativa|indica|hybrid"
_TRAILING_STRAIN = re.compile(rf"({_STRAIN_WORDS})\s*$", re.I)
_STANDALONE_STRAIN = re.compile(rf"\b({_STRAIN_WORDS})\b", re.I)

# (pattern, fixed amount, multiplier, unit); fractional ounces before plain "oz"
_WEIGHT_PATTERNS = (
    (re.compile(r"\b1/8\s*(?:oz|ounce)\b|\beighth\b", re.I), 3.5, None, "g"),
    (re.compile(r"\b1/4\s*(?:oz|ounce)\b|\bquarter(?:\s*ounce)?\b", re.I), 7.0, None, "g"),
    (re.compile(r"\b1/2\s*(?:oz|ounce)\b|\bhalf\s*(?:oz|ounce)\b", re.I), 14.0, None, "g"),
    (re.compile(r"(\d+(?:\.\d+)?)\s*(?:g|grams?)\b", re.I), None, 1.0, "g"),
    (re.compile(r"(\d+(?:\.\d+)?)\s*oz\b", re.I), None, 28.0, "g"),
    (re.compile(r"(\d+(?:\.\d+)?)\s*mg\b", re.I), None, 1.0, "mg"),
    (re.compile(r"(\d+)\s*(?:pk|pack)\b", re.I), None, 1.0, "pack"),
    (re.compile(r"(\d+)\s*(?:pc|pcs|pieces?)\b", re.I), None, 1.0, "piece"),
)

# Pre-rolls first: "Flower Pre-Roll" is a pre-roll, not flower
_CATEGORY_KEYWORDS = (
    (Category.PRE_ROLL, ("pre-roll", "pre-rolls", "preroll", "prerolls", "joint", "joints",
                         "blunt", "blunts", "cone", "cones")),
    (Category.FLOWER, ("whole flower", "flower", "bud", "buds", "nug", "nugs", "smalls",
                       "pre-ground", "preground", "ground")),
    (Category.VAPE, ("vape", "vapes", "cartridge", "cart", "carts", "pod", "pods", "510",
                     "disposable")),
    (Category.EDIBLE, ("edible", "edibles", "gummy", "gummies", "chocolate", "brownie",
                       "cookie", "candy", "lozenge", "mints")),
    (Category.CONCENTRATE, ("concentrate", "wax", "shatter", "rosin", "resin", "badder",
                            "budder", "sauce", "diamonds", "crumble", "hash")),
    (Category.TINCTURE, ("tincture", "oil", "drops", "sublingual")),
    (Category.TOPICAL, ("topical", "cream", "balm", "lotion", "salve")),
)

_SUBCATEGORY_KEYWORDS = (
    ("whole flower", "whole_flower"),
    ("pre-ground", "pre_ground"),
    ("preground", "pre_ground"),
    ("smalls", "smalls"),
    ("infused", "infused"),
    ("ground", "ground"),
    ("live resin", "live_resin"),
    ("live rosin", "live_rosin"),
    ("rosin", "rosin"),
    ("cartridge", "cartridge"),
    ("disposable", "disposable"),
    ("gummies", "gummy"),
    ("gummy", "gummy"),
    ("chocolate", "chocolate"),
    ("shatter", "shatter"),
    ("wax", "wax"),
    ("badder", "badder"),
    ("budder", "badder"),
    ("diamonds", "diamonds"),
)

# A last pipe segment that is only a size, e.g. "La Bomba | Quarter Ounce"
_WEIGHT_LIKE = re.compile(r"^(?:quarter|half|eighth|1/[248]|\d+(?:\.\d+)?\s*(?:g|oz)\b)", re.I)
_METADATA_PREFIX = re.compile(r"^(?:FLWR|THC|CBD|TAC)", re.I)
_DASH_SPLIT = re.compile(r"\s+[-–]\s+")
_DESCRIPTOR_WORDS = frozenset({
    "premium", "smalls", "small", "whole", "ground", "infused", "indoor", "outdoor",
})
_PRICE = re.compile(r"\$?\s*(\d+(?:,\d{3})*(?:\.\d{1,2})?)")

_MAX_CLEAN_NAME = 40


def _keyword_regex(keywords: Iterable[str]) -> re.Pattern:
    ordered = sorted(keywords, key=len, reverse=True)
    alternation = "|".join(re.escape(k) for k in ordered)
    return re.compile(rf"(?<![a-z0-9])(?:{alternation})(?![a-z0-9])", re.I)


_CATEGORY_REGEXES = tuple((cat, _keyword_regex(words)) for cat, words in _CATEGORY_KEYWORDS)
_SUBCATEGORY_REGEXES = tuple(
    (_keyword_regex([word]), label) for word, label in _SUBCATEGORY_KEYWORDS
)


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _normalize_strain(word: str) -> Optional[Strain]:
    key = re.sub(r"[\s-]+", "-", word.strip().lower())
    return _STRAIN_SYNONYMS.get(key)


def _first_float(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = _FIRST_FLOAT.search(text)
    return float(match.group(1)) if match else None


def _extract_tags(text: str) -> tuple[str, list[str]]:
    tags = []
    for label, pattern in _TAG_PATTERNS:
        if pattern.search(text):
            tags.append(label)
            text = pattern.sub(" ", text)
    return _collapse(text), tags


def _extract_cannabinoids(text: str) -> tuple[str, dict[str, Optional[float]]]:
    values: dict[str, Optional[float]] = {}
    for key, pattern in _CANNABINOID_PATTERNS.items():
        match = pattern.search(text)
        if match:
            values[key] = float(match.group(1))
            text = text[:match.start()] + text[match.end():]
        else:
            values[key] = None
    return text.strip(), values


def _strip_trailing_strain(text: str) -> tuple[str, Optional[Strain]]:
    match = _TRAILING_STRAIN.search(text)
    if not match:
        return text, None
    return text[:match.start()].rstrip(), _normalize_strain(match.group(1))


def _strain_is_name(remainder: str, brand: Optional[str]) -> bool:
    """True when only brand and size segments would be left without the strain word."""
    for segment in remainder.split("|"):
        segment = segment.strip()
        if not segment:
            continue
        if brand and segment.lower() == brand.lower():
            continue
        if segment[0].isdigit() or _WEIGHT_LIKE.match(segment):
            continue
        return False
    return True


def _strip_trailing_brand(text: str, brand: str) -> str:
    """Drop a brand echoed at the end of the string, once.

    Left in place when the brand is the whole final segment, since then it
    is the only thing naming the product.
    """
    variants = {brand, brand.replace(" ", ""), re.sub(r"\s+", "-", brand)}
    lowered = text.lower()
    for variant in sorted(variants, key=len, reverse=True):
        if variant and lowered.endswith(variant.lower()):
            remainder = text[:len(text) - len(variant)].rstrip()
            if remainder.split("|")[-1].strip():
                return remainder
            break
    return text


def _strip_leading_brand(text: str, brand: str) -> str:
    if not text.lower().startswith(brand.lower()):
        return text
    after = text[len(brand):].strip()
    if after[:1] in ("-", "–"):
        return after[1:].strip()
    if len(after) > 3:
        return after
    return text


def _extract_weight(text: str) -> Optional[Weight]:
    for pattern, fixed, multiplier, unit in _WEIGHT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        if fixed is not None:
            return Weight(amount=fixed, unit=unit)
        return Weight(amount=float(match.group(1)) * multiplier, unit=unit)
    return None


def _detect_category(text: str) -> Optional[Category]:
    for category, regex in _CATEGORY_REGEXES:
        if regex.search(text):
            return category
    return None


def _detect_subcategory(text: str) -> Optional[str]:
    for regex, label in _SUBCATEGORY_REGEXES:
        if regex.search(text):
            return label
    return None


def _looks_like_name(part: str) -> bool:
    lowered = part.lower().strip()
    if len(lowered) < 3 or lowered[0].isdigit():
        return False
    return not set(lowered.split()) <= _DESCRIPTOR_WORDS


def _pick_name(text: str) -> tuple[str, list[str], bool]:
    """Choose the product name from the cleaned description.

    Returns (name, hint segments, name_from_first_segment).
    """
    segments = [s.strip() for s in text.split("|") if s.strip()]
    if len(segments) >= 2:
        name = segments[-1]
        if _WEIGHT_LIKE.match(name):
            first = segments[0]
            if len(first) > 2 and not _METADATA_PREFIX.match(first):
                return first, segments[1:], True
        return name, segments[:-1], False

    parts = [p.strip() for p in _DASH_SPLIT.split(text) if p.strip()]
    if len(parts) >= 2:
        name = next((p for p in parts if _looks_like_name(p)), parts[-1])
        return name, [p for p in parts if p is not name], False

    return text, [], False


def _clean_name(name: str) -> str:
    name = _collapse(name)
    return re.sub(r"^\W+|\W+$", "", name).strip()


def _strip_strain_words(name: str) -> str:
    """Remove strain words from the name unless the strain is the name."""
    stripped = _clean_name(_STANDALONE_STRAIN.sub(" ", name))
    return stripped or name


def _parse_price(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = _PRICE.search(text)
    if not match:
        return None
    return float(match.group(1).replace(",", ""))


def _score(name: str, thc: Optional[float], weight: Optional[Weight],
           strain: Optional[Strain]) -> float:
    confidence = 1.0
    if len(name) > _MAX_CLEAN_NAME:
        confidence -= 0.2
    if thc is None and weight is None:
        confidence -= 0.1
    if strain is None:
        confidence -= 0.1
    if len(name) < 3:
        confidence -= 0.3
    if re.search(r"\d{3,}", name):
        confidence -= 0.2
    return round(max(0.0, min(1.0, confidence)), 2)


def normalize_product(raw: RawScrapedItem) -> NormalizedProduct:
    """Normalize one scraped row into a NormalizedProduct.

    Args:
        raw: Raw item; only ``name`` is required, other fields are hints.

    Returns:
        NormalizedProduct. Unrecognized fields are None.
    """
    brand_hint = (raw.brand or "").strip() or None
    text = _collapse(raw.name or "")
    if not text:
        return NormalizedProduct(
            name="", brand=brand_hint, category=Category.OTHER,
            price=_parse_price(raw.price), confidence=0.0,
        )

    # Trailing metadata run: tags, cannabinoids, strain, echoed brand
    text, tags = _extract_tags(text)
    text, cannabinoids = _extract_cannabinoids(text)
    thc = cannabinoids["thc"] if cannabinoids["thc"] is not None else _first_float(raw.thc)
    cbd = cannabinoids["cbd"] if cannabinoids["cbd"] is not None else _first_float(raw.cbd)
    tac = cannabinoids["tac"]

    stripped, strain = _strip_trailing_strain(text)
    # "Acme | 3.5g Flower | Sativa": the strain word is the product name
    if strain is None or not _strain_is_name(stripped, brand_hint):
        text = stripped

    brand = brand_hint
    if brand is None and "|" in text:
        first_segment = text.split("|", 1)[0].strip()
        brand = first_segment or None
    if brand:
        text = _strip_trailing_brand(text, brand)
        if "|" not in text:
            text = _strip_leading_brand(text, brand)

    name, hint_segments, name_from_first = _pick_name(text)
    if brand_hint is None and name_from_first:
        brand = None

    if strain is None:
        for segment in hint_segments:
            match = _STANDALONE_STRAIN.search(segment)
            if match:
                strain = _normalize_strain(match.group(1))
                break
    if strain is None:
        match = _STANDALONE_STRAIN.search(name)
        if match:
            strain = _normalize_strain(match.group(1))

    weight = _extract_weight(text)

    category = _detect_category(raw.category) if raw.category else None
    if category is None:
        category = _detect_category(text)
    if category is None and not raw.category and weight is not None:
        if weight.unit == "g" and 1 <= weight.amount <= 28:
            category = Category.FLOWER
    subcategory = _detect_subcategory(" ".join(filter(None, (raw.category, text))))

    name = _clean_name(name)
    if strain is not None:
        name = _strip_strain_words(name)

    return NormalizedProduct(
        name=name,
        brand=brand,
        category=category or Category.OTHER,
        subcategory=subcategory,
        strain=strain,
        thc=thc,
        cbd=cbd,
        tac=tac,
        weight=weight,
        price=_parse_price(raw.price),
        tags=tuple(tags),
        confidence=_score(name, thc, weight, strain),
    )


def normalize_batch(items: Iterable[RawScrapedItem]) -> list[tuple[RawScrapedItem, NormalizedProduct]]:
    """Normalize many rows, skipping rows that yield no usable name.

    Returns:
        (raw, normalized) pairs for every row that produced a name.
    """
    results = []
    skipped = 0
    for raw in items:
        product = normalize_product(raw)
        if not product.name:
            skipped += 1
            logger.warning("Skipping row with no recoverable name: %r", raw.name)
            continue
        results.append((raw, product))
    if skipped:
        logger.info("Normalized %d rows, skipped %d", len(results), skipped)
    return results


def extract_strain_name(product: NormalizedProduct) -> str:
    """Reduce a normalized name to the bare cultivar name.

    Strips weights, product-form words and grower descriptors; falls back to
    the full name if nothing is left.
    """
    name = product.name
    name = re.sub(r"\b\d+(?:\.\d+)?\s*g(?:rams?)?\b", "", name, flags=re.I)
    name = re.sub(r"\b(?:1/[248]|eighth|quarter|half|ounce)\b", "", name, flags=re.I)
    name = re.sub(r"\b(?:flower|pre-?roll|joint|vape|cart(?:ridge)?|jar|bag|pack)\b", "", name,
                  flags=re.I)
    name = re.sub(r"\b(?:premium|indoor|outdoor|smalls|whole|ground|infused)\b", "", name,
                  flags=re.I)
    name = _clean_name(name)
    return name or product.name
