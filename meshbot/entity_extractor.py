"""Entity extraction for inbound customer messages.

Role:
    Turns raw Spanish (and some English) free text into structured quantities:
    panel dimensions, linear lengths, area, shade percentage, color, quantity and
    locality. Nothing here raises to callers; a parse miss is an empty result.

Dimension precedence (first non-null wins):
    1. Labeled axes ("6 de largo por 4 de ancho"), labels decide the axis.
    2. Explicit glyph separators (x, ×, *).
    3. Soft separators (por, de, by, of), which overmatch when tried first.
    4. Single value assumed square, follow-up turns only, within 2..10 m.

Pre-normalization:
    Accent folding, spoken numbers, decimal commas, "k" typed for "x", and the
    three-digit heuristic (420 -> 4.20 unless the integer is a multiple of 50).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from .locations import LocalityMatch, LocationGazetteer
from .spoken_numbers import convert_spoken_numbers
from .utils import format_meters, normalize_text

logger = logging.getLogger("meshbot.extractor")

FEET_TO_METERS = 0.3048
MAX_DIMENSION_M = 200.0
SQUARE_MIN_M = 2.0
SQUARE_MAX_M = 10.0

NUM = r"(\d+(?:\.\d+)?)(?!\d)"
UNIT = r"(?:\s*(?:metros?|mts?|mtrs?|m|pies|pie|ft|feet|foot)(?![a-wyz])\.?)?"
NOT_PERCENT = r"(?!\s*(?:%|por\s*ciento|porciento))"
LONG_LABEL = r"(?:largo|long|length|alto|altura|fondo)"
WIDE_LABEL = r"(?:ancho|wide|width|frente)"
JOINER = r"\s*(?:,|y|por|x|\*|by|and)?\s*"

LABEL_AFTER_LONG_FIRST_RE = re.compile(
    NUM + UNIT + r"\s*(?:de\s+)?" + LONG_LABEL + JOINER + NUM + UNIT + r"\s*(?:de\s+)?" + WIDE_LABEL
)
LABEL_AFTER_WIDE_FIRST_RE = re.compile(
    NUM + UNIT + r"\s*(?:de\s+)?" + WIDE_LABEL + JOINER + NUM + UNIT + r"\s*(?:de\s+)?" + LONG_LABEL
)
LABEL_BEFORE_LONG_FIRST_RE = re.compile(
    LONG_LABEL + r"\s*(?:de|:)?\s*" + NUM + UNIT + r".{0,12}?" + WIDE_LABEL + r"\s*(?:de|:)?\s*" + NUM
)
LABEL_BEFORE_WIDE_FIRST_RE = re.compile(
    WIDE_LABEL + r"\s*(?:de|:)?\s*" + NUM + UNIT + r".{0,12}?" + LONG_LABEL + r"\s*(?:de|:)?\s*" + NUM
)
EXPLICIT_RE = re.compile(NUM + UNIT + r"\s*[x*]\s*" + NUM + UNIT + NOT_PERCENT)
SOFT_RE = re.compile(NUM + UNIT + r"\s+(?:por|by)\s+" + NUM + UNIT + NOT_PERCENT)
# "de"/"of" also introduce quantities ("2 de 4 por 6"), so they are tried last.
SOFT_WEAK_RE = re.compile(NUM + UNIT + r"\s+(?:de|of)\s+" + NUM + UNIT + NOT_PERCENT)
SINGLE_RE = re.compile(r"^(?:(?:de|como|unos?|mide|son)\s+)?" + NUM + UNIT + r"\s*(?:cada\s+lado|por\s+lado)?$")
LENGTH_RE = re.compile(NUM + r"\s*(?:metros?|mts?|mtrs?|m)\b(?!\s*(?:2|cuadrados?))")
AREA_RE = re.compile(NUM + r"\s*(?:m2|mts2|mt2|metros?\s+cuadrados?|mts?\s+cuadrados?)\b")
FEET_RE = re.compile(r"\b(?:pies|pie|ft|feet|foot)\b|\d\s*'")

PERCENT_RE = re.compile(r"(?<![\d.])(\d{2,3})\s*(?:%|por\s*ciento|porciento)")
PERCENT_CONTEXT_RE = re.compile(r"\b(?:al|de)\s+(\d{2})\s*(?:de\s+sombra|sombra)\b")
QUANTITY_RE = re.compile(
    r"(?<![\d.x*])(\d{1,4})\s+(?:piezas?|pzas?|pz|unidades|rollos?|mallas?|lonas?|paneles?|juegos?)\b"
)
QUANTITY_CUE_RE = re.compile(r"\b(?:cantidad|necesito|ocupo|quiero)\s*:?\s*(\d{1,4})\s+(?:de\s+)?(?=\d+(?:\.\d+)?\s*[x*])")
COLOR_WORDS = {
    "beige": "beige",
    "arena": "beige",
    "negro": "negro",
    "negra": "negro",
    "verde": "verde",
    "blanco": "blanco",
    "blanca": "blanco",
    "azul": "azul",
    "gris": "gris",
    "cafe": "café",
}
COLOR_RE = re.compile(r"\b(" + "|".join(COLOR_WORDS) + r")\b")

DECIMAL_COMMA_RE = re.compile(r"(?<=\d),(?=\d{1,2}\b)")
K_SEPARATOR_RE = re.compile(r"(?<=\d)\s*k\s*(?=\d)")
MAS_AS_METERS_RE = re.compile(r"(?<=\d)\s*mas\b(?=\s*(?:x|por|\*))")
THREE_DIGIT_RE = re.compile(r"(?<![\d.,$])(\d{3})(?![\d.,])(?!\s*(?:%|por\s*ciento|pesos|mxn|rollos?|piezas?|m2|mts2|metros?\b|mts?\b|mtrs?\b|m\b))")


@dataclass(frozen=True)
class Dimensions:
    """Normalized panel dimensions; width is always the shorter side."""
    width: float
    height: float
    user_order: str
    converted_from_feet: bool = False
    original_text: str = ""
    assumed_square: bool = False

    @property
    def area(self) -> float:
        return round(self.width * self.height, 4)

    @property
    def normalized(self) -> str:
        return f"{format_meters(self.width)}x{format_meters(self.height)}"

    @property
    def fractional(self) -> bool:
        return not float(self.width).is_integer() or not float(self.height).is_integer()


@dataclass
class ExtractedEntities:
    """Per-message entity set; never persisted as is."""
    dimensions: Optional[Dimensions] = None
    all_dimensions: List[Dimensions] = field(default_factory=list)
    length_m: Optional[float] = None
    area_m2: Optional[float] = None
    percentage: Optional[int] = None
    color: Optional[str] = None
    quantity: Optional[int] = None
    location: Optional[LocalityMatch] = None

    def is_empty(self) -> bool:
        return not any(
            [
                self.dimensions,
                self.length_m,
                self.area_m2,
                self.percentage,
                self.color,
                self.quantity,
                self.location,
            ]
        )


def prepare_text(text: str) -> str:
    """Purpose: Apply every pre-normalization rewrite before pattern matching.
    Inputs/Outputs: Input is a raw message; output is normalized text with digits.
    Side Effects / State: None; pure function.
    Dependencies: normalize_text, convert_spoken_numbers, module regex constants.
    Failure Modes: Returns an empty string for falsy input.
    If Removed: Spoken numbers, decimal commas and 420-style widths never parse.
    Testing Notes: "cuatro veinte por seis" -> "4.20 por 6"; "420x100" -> "4.20x100".
    """
    # Fold accents, convert words to digits, then fix numeric spellings.
    if not text:
        return ""
    prepared = convert_spoken_numbers(normalize_text(text))
    prepared = DECIMAL_COMMA_RE.sub(".", prepared)
    prepared = K_SEPARATOR_RE.sub("x", prepared)
    prepared = MAS_AS_METERS_RE.sub("m", prepared)
    return THREE_DIGIT_RE.sub(_three_digit_meters, prepared)


def _three_digit_meters(match: re.Match) -> str:
    # Multiples of 50 are genuine lengths (100 m rolls, 150 m).
    value = int(match.group(1))
    if value % 50 == 0:
        return match.group(1)
    return f"{value / 100:.2f}"


def _build(first: str, second: str, prepared: str) -> Optional[Dimensions]:
    """Build Dimensions from two captured numbers, keeping their order for display."""
    try:
        a = float(first)
        b = float(second)
    except ValueError:
        return None
    converted = bool(FEET_RE.search(prepared))
    if converted:
        a = round(a * FEET_TO_METERS, 1)
        b = round(b * FEET_TO_METERS, 1)
    if a <= 0 or b <= 0 or a > MAX_DIMENSION_M or b > MAX_DIMENSION_M:
        return None
    user_order = f"{format_meters(a)}x{format_meters(b)}"
    return Dimensions(
        width=min(a, b),
        height=max(a, b),
        user_order=user_order,
        converted_from_feet=converted,
        original_text=f"{first}x{second}",
    )


def parse_dimensions(text: str, allow_single: bool = False) -> Optional[Dimensions]:
    """Purpose: Parse one dimension pair following the fixed precedence order.
    Inputs/Outputs: Input is raw text and whether a bare number may mean a square;
        output is Dimensions or None.
    Side Effects / State: None.
    Dependencies: prepare_text and the labeled/explicit/soft/single patterns.
    Failure Modes: Out-of-range values yield None, never a clamped guess.
    If Removed: No flow can quote a size.
    Testing Notes: "4 por 6" and "6 por 4" must normalize identically.
    """
    # Labeled axes first; labels, not order, decide which side is the width.
    prepared = prepare_text(text)
    if not prepared:
        return None
    match = LABEL_AFTER_LONG_FIRST_RE.search(prepared)
    if match:
        return _build(match.group(2), match.group(1), prepared)
    match = LABEL_AFTER_WIDE_FIRST_RE.search(prepared)
    if match:
        return _build(match.group(1), match.group(2), prepared)
    match = LABEL_BEFORE_LONG_FIRST_RE.search(prepared)
    if match:
        return _build(match.group(2), match.group(1), prepared)
    match = LABEL_BEFORE_WIDE_FIRST_RE.search(prepared)
    if match:
        return _build(match.group(1), match.group(2), prepared)

    match = EXPLICIT_RE.search(prepared)
    if match:
        return _build(match.group(1), match.group(2), prepared)
    for pattern in (SOFT_RE, SOFT_WEAK_RE):
        match = pattern.search(prepared)
        if match:
            return _build(match.group(1), match.group(2), prepared)

    if allow_single:
        return parse_square(prepared)
    return None


def parse_square(prepared: str) -> Optional[Dimensions]:
    """Single-value reply read as a square side, accepted only within 2..10 m."""
    match = SINGLE_RE.match(prepared.strip(" .!?"))
    if not match:
        return None
    side = float(match.group(1))
    converted = bool(FEET_RE.search(prepared))
    if converted:
        side = round(side * FEET_TO_METERS, 1)
    if side < SQUARE_MIN_M or side > SQUARE_MAX_M:
        return None
    label = format_meters(side)
    return Dimensions(
        width=side,
        height=side,
        user_order=f"{label}x{label}",
        converted_from_feet=converted,
        original_text=match.group(1),
        assumed_square=True,
    )


def extract_all_dimensions(text: str) -> List[Dimensions]:
    """Purpose: Find every explicit or "por" dimension pair in one message.
    Inputs/Outputs: Input is raw text; output is a de-duplicated list in message order.
    Side Effects / State: None.
    Dependencies: prepare_text, EXPLICIT_RE, SOFT_RE.
    Failure Modes: Invalid pairs are skipped individually.
    If Removed: Batched requests like "6x5 o 5x5" only quote the first size.
    Testing Notes: "6x5 o 5x5" -> two entries; "4x6 y 6x4" -> one entry.
    """
    # Scan with both patterns and keep the message order of first appearance.
    prepared = prepare_text(text)
    found = []
    for pattern in (EXPLICIT_RE, SOFT_RE):
        for match in pattern.finditer(prepared):
            dims = _build(match.group(1), match.group(2), prepared)
            if dims:
                found.append((match.start(), dims))
    found.sort(key=lambda item: item[0])
    results: List[Dimensions] = []
    seen = set()
    for _, dims in found:
        if dims.normalized in seen:
            continue
        seen.add(dims.normalized)
        results.append(dims)
    return results


def parse_single_value(text: str, low: float, high: float) -> Optional[float]:
    """First standalone number in [low, high] that is not a percentage."""
    prepared = prepare_text(text)
    for match in re.finditer(r"(?<![\d.])" + NUM + NOT_PERCENT, prepared):
        value = float(match.group(1))
        if low <= value <= high:
            return value
    return None


def extract_length(text: str) -> Optional[float]:
    """Linear length with an explicit meter unit ("rollo de 18 metros")."""
    prepared = prepare_text(text)
    if EXPLICIT_RE.search(prepared):
        return None
    match = LENGTH_RE.search(prepared)
    if not match:
        return None
    value = float(match.group(1))
    if value <= 0 or value > MAX_DIMENSION_M:
        return None
    return value


def extract_area(text: str) -> Optional[float]:
    match = AREA_RE.search(prepare_text(text))
    if not match:
        return None
    value = float(match.group(1))
    if value <= 0 or value > MAX_DIMENSION_M * MAX_DIMENSION_M:
        return None
    return value


def extract_percentage(text: str) -> Optional[int]:
    prepared = prepare_text(text)
    match = PERCENT_RE.search(prepared) or PERCENT_CONTEXT_RE.search(prepared)
    if not match:
        return None
    value = int(match.group(1))
    if value <= 0 or value > 100:
        return None
    return value


def extract_color(text: str) -> Optional[str]:
    match = COLOR_RE.search(normalize_text(text))
    if not match:
        return None
    return COLOR_WORDS[match.group(1)]


def extract_quantity(text: str) -> Optional[int]:
    prepared = prepare_text(text)
    match = QUANTITY_RE.search(prepared) or QUANTITY_CUE_RE.search(prepared)
    if not match:
        return None
    value = int(match.group(1))
    return value if value > 0 else None


class EntityExtractor:
    """Facade bundling the pure parsers with the locality gazetteer."""

    def __init__(self, gazetteer: LocationGazetteer) -> None:
        self._gazetteer = gazetteer

    @property
    def gazetteer(self) -> LocationGazetteer:
        return self._gazetteer

    def extract(self, text: str, allow_single: bool = False) -> ExtractedEntities:
        """Purpose: Extract every supported entity from one message.
        Inputs/Outputs: Input is raw text and the follow-up flag for square sides;
            output is ExtractedEntities (empty on no match).
        Side Effects / State: None.
        Dependencies: Module-level parsers and LocationGazetteer.detect.
        Failure Modes: Any internal error is logged and yields an empty result.
        If Removed: Flows and the router receive no structured input.
        Testing Notes: "2 mallas de 4x6 al 80% beige" fills dims, quantity,
            percentage and color in one pass.
        """
        # Each parser is independent; a failure in one must not leak to callers.
        if not text or not text.strip():
            return ExtractedEntities()
        try:
            all_dims = extract_all_dimensions(text)
            dims = parse_dimensions(text, allow_single=allow_single)
            return ExtractedEntities(
                dimensions=dims,
                all_dimensions=all_dims if len(all_dims) > 1 else ([dims] if dims else []),
                length_m=extract_length(text),
                area_m2=extract_area(text),
                percentage=extract_percentage(text),
                color=extract_color(text),
                quantity=extract_quantity(text),
                location=self._gazetteer.detect(text),
            )
        except Exception as exc:
            logger.warning("extract=failed error=%s", exc)
            return ExtractedEntities()
