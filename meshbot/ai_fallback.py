"""Bounded LLM interpretation of ambiguous replies to a quote.

Role:
    Called only when a flow quoted products on the previous turn and the current
    reply produced nothing actionable. The model may only pick among quoted items,
    restate dimensions, or answer from a fixed list of company facts.

Contract:
    resolve() always returns a ResolverResult; acceptance requires a known action,
    confidence >= threshold and indices inside the quoted list. Everything else is
    a ResolverFailure and must be treated as "nothing matched".
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import QuotedProduct, StoredMessage
from .prompt_loader import render_prompt
from .utils import format_money, safe_json_loads

logger = logging.getLogger("meshbot.fallback")

ACTIONS = {"select_one", "select_products", "provide_dimensions", "answer_question", "none"}
MAX_ANSWER_CHARS = 400


class JsonCompletionClient(Protocol):
    def generate_json(self, prompt: str, system_instruction: Optional[str] = None) -> str:
        ...


@dataclass(frozen=True)
class FallbackAction:
    """Accepted interpretation of the customer's reply."""
    action: str
    confidence: float
    indices: Tuple[int, ...] = ()
    width: Optional[float] = None
    height: Optional[float] = None
    text: str = ""


@dataclass(frozen=True)
class ResolverFailure:
    """Rejected or failed interpretation; callers treat it as no match."""
    reason: str
    confidence: float = 0.0
    detail: str = ""

    @property
    def action(self) -> str:
        return "none"


@dataclass(frozen=True)
class ResolverResult:
    action: Optional[FallbackAction] = None
    failure: Optional[ResolverFailure] = None

    @property
    def ok(self) -> bool:
        return self.action is not None

    @classmethod
    def accepted(cls, action: FallbackAction) -> "ResolverResult":
        return cls(action=action)

    @classmethod
    def failed(cls, reason: str, confidence: float = 0.0, detail: str = "") -> "ResolverResult":
        return cls(failure=ResolverFailure(reason=reason, confidence=confidence, detail=detail))


def validate_payload(payload: Dict[str, Any], quoted_count: int, min_confidence: float) -> ResolverResult:
    """Purpose: Apply the acceptance contract to a decoded model answer.
    Inputs/Outputs: Decoded JSON object, number of quoted products and the
        confidence threshold; returns an accepted action or a failure.
    Side Effects / State: None; pure function.
    Dependencies: ACTIONS.
    Failure Modes: unknown_action, no_action, low_confidence, invalid_index and
        invalid_payload failures; never raises.
    If Removed: Low-confidence or out-of-range selections would mutate state.
    Testing Notes: confidence 0.69 is rejected; index == quoted_count is rejected.
    """
    # Order matters: action, confidence, then payload shape.
    action = str(payload.get("action") or "").strip()
    if action not in ACTIONS:
        return ResolverResult.failed("unknown_action", detail=action[:40])
    try:
        confidence = float(payload.get("confidence", 0))
    except (TypeError, ValueError):
        return ResolverResult.failed("parse", detail="confidence")
    if not math.isfinite(confidence):
        return ResolverResult.failed("parse", detail="confidence")
    if action == "none":
        return ResolverResult.failed("no_action", confidence=confidence)
    if confidence < min_confidence:
        return ResolverResult.failed("low_confidence", confidence=confidence)

    if action == "select_one":
        index = _as_index(payload.get("selectedIndex"))
        if index is None or not 0 <= index < quoted_count:
            return ResolverResult.failed("invalid_index", confidence=confidence, detail=str(payload.get("selectedIndex")))
        return ResolverResult.accepted(FallbackAction(action=action, confidence=confidence, indices=(index,)))

    if action == "select_products":
        raw = payload.get("selectedIndices")
        if not isinstance(raw, list) or not raw:
            return ResolverResult.failed("invalid_index", confidence=confidence, detail=str(raw))
        indices: List[int] = []
        for item in raw:
            index = _as_index(item)
            if index is None or not 0 <= index < quoted_count:
                return ResolverResult.failed("invalid_index", confidence=confidence, detail=str(raw))
            if index not in indices:
                indices.append(index)
        return ResolverResult.accepted(FallbackAction(action=action, confidence=confidence, indices=tuple(indices)))

    if action == "provide_dimensions":
        dims = payload.get("dimensions")
        if not isinstance(dims, dict):
            return ResolverResult.failed("invalid_payload", confidence=confidence, detail="dimensions")
        try:
            width = float(dims.get("width"))
            height = float(dims.get("height"))
        except (TypeError, ValueError):
            return ResolverResult.failed("invalid_payload", confidence=confidence, detail="dimensions")
        if not (math.isfinite(width) and math.isfinite(height)) or width <= 0 or height <= 0:
            return ResolverResult.failed("invalid_payload", confidence=confidence, detail="dimensions")
        return ResolverResult.accepted(
            FallbackAction(action=action, confidence=confidence, width=min(width, height), height=max(width, height))
        )

    text = str(payload.get("text") or "").strip()
    if not text:
        return ResolverResult.failed("invalid_payload", confidence=confidence, detail="text")
    return ResolverResult.accepted(FallbackAction(action=action, confidence=confidence, text=text[:MAX_ANSWER_CHARS]))


def _as_index(value: Any) -> Optional[int]:
    # Booleans are ints in Python; reject them explicitly.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class FallbackResolver:
    """Single bounded LLM call per stalled turn."""

    def __init__(
        self,
        client: Optional[JsonCompletionClient],
        prompt_template: str,
        min_confidence: float = 0.7,
    ) -> None:
        self._client = client
        self._template = prompt_template
        self._min_confidence = min_confidence

    @property
    def available(self) -> bool:
        return self._client is not None

    def build_prompt(
        self,
        flow_type: str,
        stage: str,
        spec: Optional[Dict[str, Any]],
        quoted: Sequence[QuotedProduct],
        history: Sequence[StoredMessage],
    ) -> str:
        """Render the instruction block with flow context, quoted list and recent chat."""
        if quoted:
            lines = ["- Productos cotizados en el último mensaje:"]
            for index, product in enumerate(quoted):
                price = f" - {format_money(product.price)}" if product.price is not None else ""
                lines.append(f"  [{index}] {product.display_text}{price}")
            quoted_block = "\n".join(lines)
        else:
            quoted_block = "- No hay productos cotizados recientes"
        chat_lines = []
        for message in list(history)[-6:]:
            role = "Cliente" if message.role == "user" else "Asistente"
            chat_lines.append(f"{role}: {message.content}")
        return render_prompt(
            self._template,
            {
                "FLOW": flow_type,
                "STAGE": stage,
                "SPECS": json.dumps(spec or {}, ensure_ascii=False),
                "QUOTED": quoted_block,
                "HISTORY": "\n".join(chat_lines) or "(sin mensajes previos)",
            },
        )

    def resolve(
        self,
        message: str,
        flow_type: str,
        stage: str,
        spec: Optional[Dict[str, Any]],
        quoted: Sequence[QuotedProduct],
        history: Sequence[StoredMessage] = (),
    ) -> ResolverResult:
        """Purpose: Interpret an ambiguous reply against the quoted options.
        Inputs/Outputs: Raw reply, flow/stage names, accumulated spec, quoted
            products and recent history; returns a ResolverResult.
        Side Effects / State: One network call through the completion client.
        Dependencies: build_prompt, safe_json_loads, validate_payload.
        Failure Modes: Missing client -> "unavailable"; any client exception ->
            "transport"; non-JSON output -> "parse". Never raises.
        If Removed: "las dos" or "la primera" after a quote falls to the generic reply.
        Testing Notes: Use a fake client returning canned JSON strings.
        """
        # The model sees only the customer message as user content.
        if self._client is None:
            return ResolverResult.failed("unavailable")
        system_instruction = self.build_prompt(flow_type, stage, spec, quoted, history)
        try:
            raw = self._client.generate_json(f'Mensaje del cliente: "{message}"', system_instruction=system_instruction)
        except Exception as exc:
            logger.warning("fallback=transport_failed flow=%s stage=%s error=%s", flow_type, stage, exc)
            return ResolverResult.failed("transport", detail=str(exc)[:200])
        payload = safe_json_loads(raw)
        if payload is None:
            logger.warning("fallback=parse_failed flow=%s stage=%s", flow_type, stage)
            return ResolverResult.failed("parse", detail=(raw or "")[:200])
        result = validate_payload(payload, len(quoted), self._min_confidence)
        if result.ok:
            logger.info(
                "fallback=accepted flow=%s stage=%s action=%s confidence=%.2f",
                flow_type,
                stage,
                result.action.action,
                result.action.confidence,
            )
        else:
            logger.info(
                "fallback=rejected flow=%s stage=%s reason=%s confidence=%.2f",
                flow_type,
                stage,
                result.failure.reason,
                result.failure.confidence,
            )
        return result
