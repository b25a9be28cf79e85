import json
import re
import unicodedata
from typing import Any, Dict, Optional


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form Spanish text for stable pattern matching.
    Inputs/Outputs: Input is a raw string; output is lowercase ASCII with diacritics
        removed and whitespace collapsed. Decimal points, "x", "×" and "*" survive so
        dimension patterns still match.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by the extractor, router and flows.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Accented spellings ("cuánto", "envío") stop matching router patterns.
    Testing Notes: "¿Cuánto cuesta el envío?" -> "cuanto cuesta el envio".
    """
    # Lowercase, strip combining marks, keep the glyphs the dimension parser needs.
    if not text:
        return ""
    lowered = text.lower().replace("×", " x ").replace("²", "2")
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9\s\-_/.,*%]+", " ", stripped)
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_key(text: str) -> str:
    """Space-free normalized key, so "4 x 6 m" and "4x6m" compare equal."""
    return normalize_text(text).replace(" ", "")


JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Pull the JSON object out of an LLM reply.
    Inputs/Outputs: Raw reply text; returns the object substring or None.
    Side Effects / State: None.
    Dependencies: JSON_FENCE_RE; used by safe_json_loads.
    Failure Modes: None when no balanced braces are present.
    If Removed: Replies wrapped in prose or ```json fences fail to parse.
    Testing Notes: Fenced, bare and prose-wrapped objects all yield the object text.
    """
    if not text:
        return None
    fenced = JSON_FENCE_RE.search(text)
    if fenced:
        return fenced.group(1)
    start, end = text.find("{"), text.rfind("}")
    return text[start : end + 1] if 0 <= start < end else None


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Parse a JSON object from a model output string safely.
    Inputs/Outputs: Input is raw text; output is a dict or None if parsing fails.
    Side Effects / State: None; pure function.
    Dependencies: Uses extract_json_block and json.loads; called by the AI fallback.
    Failure Modes: Returns None on JSONDecodeError, missing block, or non-object JSON.
    If Removed: Fallback parsing becomes brittle and crashes on malformed model output.
    Testing Notes: Validate valid JSON parses and malformed JSON returns None.
    """
    # Parse only the extracted JSON block to avoid non-JSON prefixes/suffixes.
    block = extract_json_block(text)
    if not block:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def format_money(amount: Optional[float]) -> str:
    """Format a peso amount the way customers see it in the store: $1,250."""
    if amount is None:
        return ""
    if float(amount).is_integer():
        return f"${int(amount):,}"
    return f"${amount:,.2f}"


def format_meters(value: float) -> str:
    """Render a meter value without a trailing .0 (4.0 -> "4", 4.2 -> "4.2")."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def mask_contact_value(value: object) -> str:
    """Purpose: Mask contact-like values (postal codes, phones) for safe logging.
    Inputs/Outputs: Input is any value; output keeps only the last digits.
    Side Effects / State: None.
    Dependencies: Uses regex digit extraction.
    Failure Modes: Short or non-numeric inputs yield a generic mask.
    If Removed: Logs may expose customer locality data.
    Testing Notes: "76137" -> "***137".
    """
    # Keep only the last digits while hiding the rest.
    if value is None:
        return ""
    digits = re.findall(r"\d", str(value))
    if len(digits) < 4:
        return "***"
    return "***" + "".join(digits[-3:])
