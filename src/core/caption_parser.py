"""Caption parsing (core domain).

Turns free-text captions such as ``"Blue Widget #AB022524 x5 (fragile)"``
into an AnalyzedContent with a confidence score. Parsing never raises for
malformed input: a stage that cannot extract its field leaves it absent and
records a fallback reason instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from core.config import ParserConfig
from core.models import AnalyzedContent, ParsingMetadata
from core.ports import Clock

LOGGER = logging.getLogger(__name__)

PARSE_METHOD = "manual"

# Fallback reason codes.
NO_PRODUCT_CODE = "no_product_code"
MALFORMED_PRODUCT_CODE = "malformed_product_code"
INVALID_DATE = "invalid_date"
NO_QUANTITY = "no_quantity"
NO_PRODUCT_NAME_MARKER = "no_product_name_marker"

CRITICAL_FALLBACKS = frozenset({NO_PRODUCT_CODE, NO_QUANTITY})

PRODUCT_CODE_RE = re.compile(r"#([A-Za-z]{1,4})(\d{5,6})(?![A-Za-z0-9])")
STRICT_CODE_RE = re.compile(r"^[A-Za-z]{1,4}\d{5,6}$")
HASH_TOKEN_RE = re.compile(r"#[A-Za-z0-9-]+")
QUANTITY_RE = re.compile(r"(?<![\w#])x\s*(\d+)|(?<![\w#])(\d+)\s*x\b", re.IGNORECASE)
NOTES_RE = re.compile(r"\((.*?)\)", re.DOTALL)

# Scoring-only patterns, deliberately looser than the extraction stages.
EXPECTED_SHAPE_RE = re.compile(r"^[^#\n]+#[A-Za-z]{1,4}\d{5,6}")
QUANTITY_HINT_RE = re.compile(
    r"\d+\s*(?:x|pcs|pieces|kg|g|meters|m|boxes)\b|\bx\s*\d+",
    re.IGNORECASE,
)
PARENTHETICAL_RE = re.compile(r"\(.*\)", re.DOTALL)


@dataclass(frozen=True)
class _QuantityToken:
    value: Optional[int]
    start: int
    end: int


def _extract_product_code(caption: str, fallbacks: list[str]) -> tuple[Optional[str], Optional[str], Optional[str], bool]:
    """Return (product_code, vendor_letters, date_digits, malformed_token_seen)."""

    match = PRODUCT_CODE_RE.search(caption)
    if match:
        letters, digits = match.group(1).upper(), match.group(2)
        return f"{letters}{digits}", letters, digits, False

    # A hash token that is not a valid code is still evidence of intent.
    if HASH_TOKEN_RE.search(caption):
        fallbacks.append(MALFORMED_PRODUCT_CODE)
        return None, None, None, True

    fallbacks.append(NO_PRODUCT_CODE)
    return None, None, None, False


def _derive_purchase_date(digits: str, today: date, fallbacks: list[str]) -> Optional[date]:
    """Interpret code digits as MMDDYY, left-padding 5-digit runs with a zero."""

    padded = digits.zfill(6)
    month, day, year = int(padded[0:2]), int(padded[2:4]), 2000 + int(padded[4:6])
    try:
        purchase_date = date(year, month, day)
    except ValueError:
        fallbacks.append(INVALID_DATE)
        return None
    if purchase_date > today:
        fallbacks.append(INVALID_DATE)
        return None
    return purchase_date


def _find_quantity(caption: str) -> Optional[_QuantityToken]:
    match = QUANTITY_RE.search(caption)
    if not match:
        return None
    raw = match.group(1) or match.group(2)
    value = int(raw)
    return _QuantityToken(value=value if value > 0 else None, start=match.start(), end=match.end())


def _extract_product_name(caption: str, quantity: Optional[_QuantityToken], fallbacks: list[str]) -> Optional[str]:
    """Return the text before the first name marker (#, quantity, newline, dash)."""

    markers = [caption.find(ch) for ch in ("#", "\n", "-")]
    if quantity is not None:
        markers.append(quantity.start)
    present = [index for index in markers if index >= 0]

    if present:
        name = caption[: min(present)].strip()
        if name:
            return name

    fallbacks.append(NO_PRODUCT_NAME_MARKER)
    return caption.strip() or None


def _extract_notes(
    caption: str,
    product_name: Optional[str],
    quantity: Optional[_QuantityToken],
) -> Optional[str]:
    match = NOTES_RE.search(caption)
    if match:
        return match.group(1).strip() or None

    remaining = caption
    if quantity is not None:
        remaining = remaining[: quantity.start] + " " + remaining[quantity.end :]
    remaining = HASH_TOKEN_RE.sub(" ", remaining, count=1)
    if product_name:
        remaining = remaining.replace(product_name, " ", 1)
    remaining = remaining.strip().strip("-, \n\t").strip()
    return remaining or None


def score_confidence(
    content: AnalyzedContent,
    fallbacks: list[str],
    caption: str,
    malformed_code: bool,
    config: ParserConfig,
) -> float:
    """Score how structurally trustworthy a parse is, clamped to [0.1, 1.0]."""

    score = 1.0

    # Caption structure.
    if EXPECTED_SHAPE_RE.search(caption):
        score += 0.2
    if not QUANTITY_HINT_RE.search(caption):
        score -= 0.3
    if "\n" in caption and PARENTHETICAL_RE.search(caption):
        score += 0.1

    # Code quality.
    if content.product_code:
        score += 0.2 if STRICT_CODE_RE.match(content.product_code) else -0.2
        if content.vendor_uid and content.purchase_date:
            score += 0.2
    elif malformed_code:
        score -= 0.2
    else:
        score -= 0.4

    # Quantity quality.
    if content.quantity is not None:
        score += 0.2 if 0 < content.quantity < config.reasonable_quantity_max else -0.1
    else:
        score -= 0.3

    # Product name quality.
    name = content.product_name
    if name and name != caption and 3 < len(name) < 100:
        score += 0.1
    else:
        score -= 0.1

    if any(reason in CRITICAL_FALLBACKS for reason in fallbacks):
        score -= 0.3
    else:
        score -= 0.1 * len(fallbacks)

    return round(max(0.1, min(1.0, score)), 4)


def parse_caption(
    caption: Optional[str],
    config: Optional[ParserConfig] = None,
    now: Optional[datetime] = None,
) -> AnalyzedContent:
    """Parse a caption into structured product data.

    Stages run in order (code, vendor, date, quantity, notes, name) and each
    degrades to an absent field plus a fallback reason. The result is always
    complete and self-consistent.
    """

    config = config or ParserConfig()
    now = now or datetime.now(timezone.utc)
    text = caption or ""
    fallbacks: list[str] = []

    product_code, vendor_uid, digits, malformed_code = _extract_product_code(text, fallbacks)
    purchase_date = _derive_purchase_date(digits, now.date(), fallbacks) if digits else None

    quantity_token = _find_quantity(text)
    quantity = quantity_token.value if quantity_token else None
    if quantity is None:
        fallbacks.append(NO_QUANTITY)

    product_name = _extract_product_name(text, quantity_token, fallbacks)
    notes = _extract_notes(text, product_name, quantity_token) if text.strip() else None

    draft = AnalyzedContent(
        product_name=product_name,
        product_code=product_code,
        vendor_uid=vendor_uid,
        purchase_date=purchase_date,
        quantity=quantity,
        notes=notes,
        parsing_metadata=ParsingMetadata(
            method=PARSE_METHOD,
            confidence=0.1,
            fallbacks_used=(),
            timestamp=now,
        ),
    )
    confidence = score_confidence(draft, fallbacks, text, malformed_code, config)
    needs_escalation = bool(product_name and len(product_name) > config.escalation_name_length)

    LOGGER.debug(
        "Parsed caption (%s chars): confidence=%s fallbacks=%s escalate=%s",
        len(text),
        confidence,
        fallbacks,
        needs_escalation,
    )

    return AnalyzedContent(
        product_name=product_name,
        product_code=product_code,
        vendor_uid=vendor_uid,
        purchase_date=purchase_date,
        quantity=quantity,
        notes=notes,
        parsing_metadata=ParsingMetadata(
            method=PARSE_METHOD,
            confidence=confidence,
            fallbacks_used=tuple(fallbacks),
            timestamp=now,
            needs_escalation=needs_escalation,
        ),
    )


class CaptionParser:
    """Caption parser bound to a config and a clock."""

    def __init__(self, config: Optional[ParserConfig] = None, clock: Optional[Clock] = None) -> None:
        self._config = config or ParserConfig()
        self._clock = clock

    def parse(self, caption: Optional[str]) -> AnalyzedContent:
        now = self._clock.now() if self._clock is not None else None
        return parse_caption(caption, self._config, now)
