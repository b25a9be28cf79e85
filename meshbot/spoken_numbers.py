"""Spoken Spanish number conversion used before dimension parsing.

Input is expected to be accent-stripped lowercase text (see utils.normalize_text).
"""

from __future__ import annotations

import re

NUMBER_WORDS = {
    "cero": 0,
    "uno": 1,
    "una": 1,
    "un": 1,
    "dos": 2,
    "tres": 3,
    "cuatro": 4,
    "cinco": 5,
    "seis": 6,
    "siete": 7,
    "ocho": 8,
    "nueve": 9,
    "diez": 10,
    "once": 11,
    "doce": 12,
    "trece": 13,
    "catorce": 14,
    "quince": 15,
    "dieciseis": 16,
    "diecisiete": 17,
    "dieciocho": 18,
    "diecinueve": 19,
    "veinte": 20,
    "veintiuno": 21,
    "veintidos": 22,
    "veintitres": 23,
    "veinticuatro": 24,
    "veinticinco": 25,
    "treinta": 30,
    "cuarenta": 40,
    "cincuenta": 50,
    "sesenta": 60,
    "setenta": 70,
    "ochenta": 80,
    "noventa": 90,
    "cien": 100,
}

_SMALL = r"(uno|una|dos|tres|cuatro|cinco|seis|siete|ocho|nueve|diez|once|doce)"
_TENS = r"(veinte|treinta|cuarenta|cincuenta|sesenta|setenta|ochenta|noventa)"
_ONES = r"(uno|una|dos|tres|cuatro|cinco|seis|siete|ocho|nueve)"
_DECIMAL_TAIL = r"(diez|veinte|treinta|cuarenta|cincuenta|sesenta|setenta|ochenta|noventa|cero|uno|dos|tres|cuatro|cinco|seis|siete|ocho|nueve)"

WORD_METERS_AND_HALF_RE = re.compile(rf"\b{_SMALL}\s+(?:metros?|mts?)\s+y\s+medio\b")
WORD_AND_HALF_RE = re.compile(rf"\b{_SMALL}\s+y\s+medio\b")
DIGIT_METERS_AND_HALF_RE = re.compile(r"\b(\d+)\s*(?:metros?|mts?)\s+y\s+medio\b")
DIGIT_AND_HALF_RE = re.compile(r"\b(\d+)\s+y\s+medio\b")
SPOKEN_DECIMAL_RE = re.compile(
    r"\b(uno|dos|tres|cuatro|cinco|seis|siete|ocho|nueve|diez)\s+" + _DECIMAL_TAIL + r"\b(?!\s+y\s)"
)
COMPOUND_RE = re.compile(rf"\b{_TENS}\s+y\s+{_ONES}\b")
POINT_RE = re.compile(r"\b(\d+)\s+punto\s+(\d+)\b")
# Articles "un"/"una" only count as numbers inside the half and decimal forms above.
SIMPLE_WORD_RE = re.compile(
    r"\b(" + "|".join(sorted((w for w in NUMBER_WORDS if w not in ("un", "una")), key=len, reverse=True)) + r")\b"
)


def convert_spoken_numbers(text: str) -> str:
    """Purpose: Replace a closed vocabulary of Spanish number words with digits.
    Inputs/Outputs: Input is normalized text; output is the same text with number
        words converted ("seis por cuatro" -> "6 por 4", "tres y medio" -> "3.5",
        "treinta y cinco" -> "35", "uno treinta" -> "1.30").
    Side Effects / State: None; pure function.
    Dependencies: Regex constants in this module; called by the entity extractor.
    Failure Modes: Unknown words are left untouched.
    If Removed: Spoken measurements never reach the dimension patterns.
    Testing Notes: Check the half, compound and spoken-decimal forms separately.
    """
    # Order matters: halves and decimals consume pairs before single words are replaced.
    if not text:
        return text
    converted = WORD_METERS_AND_HALF_RE.sub(lambda m: f"{NUMBER_WORDS[m.group(1)]}.5", text)
    converted = WORD_AND_HALF_RE.sub(lambda m: f"{NUMBER_WORDS[m.group(1)]}.5", converted)
    converted = COMPOUND_RE.sub(
        lambda m: str(NUMBER_WORDS[m.group(1)] + NUMBER_WORDS[m.group(2)]), converted
    )
    converted = SPOKEN_DECIMAL_RE.sub(_spoken_decimal, converted)
    converted = SIMPLE_WORD_RE.sub(lambda m: str(NUMBER_WORDS[m.group(1)]), converted)
    converted = DIGIT_METERS_AND_HALF_RE.sub(lambda m: f"{m.group(1)}.5", converted)
    converted = DIGIT_AND_HALF_RE.sub(lambda m: f"{m.group(1)}.5", converted)
    return POINT_RE.sub(lambda m: f"{m.group(1)}.{m.group(2)}", converted)


def _spoken_decimal(match: re.Match) -> str:
    # "cuatro veinte" -> 4.20, "dos cinco" -> 2.5
    ones = NUMBER_WORDS[match.group(1)]
    tail = NUMBER_WORDS[match.group(2)]
    if tail >= 10:
        return f"{ones}.{tail:02d}"
    return f"{ones}.{tail}"
