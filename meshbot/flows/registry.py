"""Family detection and flow selection."""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Optional

from ..entity_extractor import ExtractedEntities
from ..models import Conversation
from ..utils import normalize_text
from .base import FlowDeps, FlowMachine
from .panel_flow import PanelFlow
from .roll_flow import RollFlow
from .tape_flow import TapeFlow

logger = logging.getLogger("meshbot.flows.registry")

TAPE_RE = re.compile(r"\b(?:borde|bordes|separador|separadores|cinta\s+(?:de\s+)?jardin)\b")
ROLL_RE = re.compile(r"\b(?:rol+[oy]s?|x\s*100\b)")
PANEL_RE = re.compile(r"\b(?:confeccionad[ao]s?|malla\s+sombra|lona|toldo)\b")


def detect_family(message: str, entities: Optional[ExtractedEntities] = None) -> Optional[str]:
    """Explicit family named in the message; dimensions alone suggest a panel."""
    normalized = normalize_text(message)
    if TAPE_RE.search(normalized):
        return "tape"
    if ROLL_RE.search(normalized):
        return "roll"
    if PANEL_RE.search(normalized):
        return "panel"
    if entities is not None and entities.dimensions is not None:
        return "panel"
    return None


class FlowRegistry:
    """Holds one state machine per family and picks the one for a turn."""

    def __init__(self, deps: FlowDeps, flows: Optional[Iterable[FlowMachine]] = None) -> None:
        machines = list(flows) if flows is not None else [PanelFlow(deps), RollFlow(deps), TapeFlow(deps)]
        self._flows: Dict[str, FlowMachine] = {flow.family: flow for flow in machines}

    @property
    def families(self) -> list:
        return list(self._flows)

    def get(self, family: Optional[str]) -> Optional[FlowMachine]:
        if not family:
            return None
        return self._flows.get(family)

    def select(self, conversation: Conversation, message: str, entities: ExtractedEntities) -> Optional[FlowMachine]:
        """Purpose: Choose the flow for this turn.
        Inputs/Outputs: Conversation, raw message and extracted entities; returns
            a FlowMachine or None when no family is active or mentioned.
        Side Effects / State: None; switching resets the spec inside the flow.
        Dependencies: detect_family.
        Failure Modes: Unknown family names map to None.
        If Removed: Every message would need an explicit product word.
        Testing Notes: "y de borde?" during a panel conversation selects tape;
            a bare "4x6" during a roll conversation stays on roll.
        """
        # An explicitly named family wins; dimensions only pick a family at cold start.
        explicit = detect_family(message)
        current = conversation.current_flow
        if explicit and explicit != current:
            if current:
                logger.info(
                    "flow=switch conversation=%s from=%s to=%s", conversation.conversation_id, current, explicit
                )
            return self.get(explicit)
        if current:
            return self.get(current)
        return self.get(detect_family(message, entities))
