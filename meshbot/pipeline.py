"""Dialogue pipeline orchestration for one inbound message.

Role:
    Owns the per-turn contract between the layers and is the only place that
    applies their state changes to the conversation store (handoffs write through
    the orchestrator).

Step order:
    extract -> resume_handoff -> unintelligible -> router -> flow -> ai_fallback
    followed by the always-run tail: counters -> assets -> finalize.

Turn data contract (TurnContext):
    - conversation: latest stored snapshot, refreshed after each write.
    - started: snapshot at turn start; the AI fallback reads its quote context.
    - entities: ExtractedEntities for the message.
    - response / handled_by: the reply and which layer produced it.
    - stalled: the flow answered with its default text; the fallback may still
      replace it. A stalled turn counts as unhandled.
    - handoff: the turn escalated (assets are not appended to handoff replies).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .ai_fallback import FallbackResolver
from .asset_selector import AssetSelector, insert_asset
from .conversation_store import ConversationStore
from .entity_extractor import EntityExtractor, ExtractedEntities
from .flows.base import FlowContext, FlowMachine, FlowOutcome
from .flows.registry import FlowRegistry
from .handoff import GENERIC_SPECIALIST_TEXT, HandoffOptions, HandoffOrchestrator
from .intent_gaps import IntentGapLog
from .intent_router import PRODUCT_MENU_TEXT, IntentRouter
from .models import BotResponse, ChatResponse, Conversation, Location
from .turn_runner import TurnRunner, TurnStep
from .utils import normalize_text

logger = logging.getLogger("meshbot.pipeline")

MAX_UNINTELLIGIBLE = 2
MAX_UNKNOWN = 3
CLARIFY_TEXT = (
    "Disculpa, no logré entender tu mensaje 😅\n¿Podrías escribirlo de otra forma? Por ejemplo:\n"
    "• \"¿Tienes malla sombra de 4x6?\"\n• \"¿Cuánto cuesta el rollo?\"\n• \"¿Hacen envíos?\""
)
GIBBERISH_RE = re.compile(r"[bcdfghjklmnpqrstvwxz]{5,}|(\w)\1{3,}")


def is_unintelligible(message: str) -> bool:
    """Purpose: Detect messages nobody could act on (keyboard mash, symbols only).
    Inputs/Outputs: Raw message; returns True when every token is gibberish or the
        message has no letters or digits at all.
    Side Effects / State: None.
    Dependencies: normalize_text, GIBBERISH_RE.
    Failure Modes: Empty input is not unintelligible (nothing to answer).
    If Removed: Mashed keys would fall to the flow's default text forever.
    Testing Notes: "asdfghjk" -> True; "4x6" -> False; "si" -> False.
    """
    # Digits always carry meaning (sizes, postal codes).
    if not message or not message.strip():
        return False
    normalized = normalize_text(message)
    tokens = [token for token in re.split(r"[\s.,/*%_-]+", normalized) if token]
    if not tokens:
        return True
    if any(ch.isdigit() for ch in normalized):
        return False
    return all(GIBBERISH_RE.search(token) for token in tokens)


@dataclass
class TurnContext:
    """Mutable context passed through each pipeline step."""
    conversation: Conversation
    message: str
    classifier_entities: Dict[str, Any] = field(default_factory=dict)
    turn: int = 1
    entities: ExtractedEntities = field(default_factory=ExtractedEntities)
    response: Optional[BotResponse] = None
    handled_by: str = ""
    intent: Optional[str] = None
    stalled: bool = False
    handoff: bool = False
    flow: Optional[FlowMachine] = None
    flow_ctx: Optional[FlowContext] = None
    outcome: Optional[FlowOutcome] = None

    def __post_init__(self) -> None:
        self.started = self.conversation

    @property
    def conversation_id(self) -> str:
        return self.conversation.conversation_id

    @property
    def resolved(self) -> bool:
        return self.response is not None and not self.stalled


class DialoguePipeline:
    """Runs one customer message through router, flow, fallback and handoff layers."""

    def __init__(
        self,
        store: ConversationStore,
        extractor: EntityExtractor,
        router: IntentRouter,
        registry: FlowRegistry,
        resolver: FallbackResolver,
        handoff: HandoffOrchestrator,
        assets: Optional[AssetSelector] = None,
        gap_log: Optional[IntentGapLog] = None,
    ) -> None:
        """Purpose: Wire the layers and the ordered step list.
        Inputs/Outputs: Store, extractor, router, flow registry, fallback resolver,
            handoff orchestrator and optional asset selector and gap log.
        Side Effects / State: Builds the TurnRunner step table.
        Dependencies: TurnRunner/TurnStep.
        Failure Modes: None at construction.
        If Removed: No component can be reached from the HTTP layer.
        Testing Notes: Build with an in-memory catalog and a fake LLM client.
        """
        # Step order is the precedence between layers.
        self._store = store
        self._extractor = extractor
        self._router = router
        self._registry = registry
        self._resolver = resolver
        self._handoff = handoff
        self._assets = assets or AssetSelector()
        self._gap_log = gap_log
        self._runner = TurnRunner(
            [
                TurnStep("extract", self._step_extract),
                TurnStep("resume_handoff", self._step_resume_handoff),
                TurnStep("unintelligible", self._step_unintelligible),
                TurnStep("router", self._step_router),
                TurnStep("flow", self._step_flow),
                TurnStep("ai_fallback", self._step_ai_fallback, skip_if=lambda turn: not turn.stalled),
                TurnStep("counters", self._step_counters, always_run=True),
                TurnStep("assets", self._step_assets, always_run=True),
                TurnStep("finalize", self._step_finalize, always_run=True),
            ],
            resolved=lambda turn: turn.resolved,
        )

    def handle_message(
        self,
        conversation_id: str,
        message: str,
        classifier_entities: Optional[Dict[str, Any]] = None,
    ) -> ChatResponse:
        """Purpose: Produce the reply for one inbound message.
        Inputs/Outputs: Conversation id, raw text and optional classifier entities;
            returns a ChatResponse with the layer that answered.
        Side Effects / State: Conversation fields, history, gap log, notifications.
        Dependencies: TurnRunner and every layer passed at construction.
        Failure Modes: Any unexpected exception is logged and answered with the
            generic specialist message; internal errors never reach the customer.
        If Removed: Nothing answers the customer.
        Testing Notes: Assert handled_by to see which layer resolved the turn.
        """
        # The whole turn either completes or degrades to the generic reply.
        conversation = self._store.get_conversation(conversation_id)
        turn = TurnContext(
            conversation=conversation,
            message=message or "",
            classifier_entities=dict(classifier_entities or {}),
            turn=conversation.turn_count + 1,
        )
        try:
            self._runner.run(turn)
        except Exception:
            logger.exception("pipeline=failed conversation=%s", conversation_id)
            return ChatResponse(
                text=GENERIC_SPECIALIST_TEXT,
                conversation_id=conversation_id,
                handled_by="error",
            )
        response = turn.response or BotResponse(text=GENERIC_SPECIALIST_TEXT)
        logger.info(
            "pipeline=done conversation=%s handled_by=%s intent=%s handoff=%s",
            conversation_id,
            turn.handled_by,
            turn.intent,
            turn.handoff,
        )
        return ChatResponse(
            text=response.text,
            follow_up=response.follow_up,
            conversation_id=conversation_id,
            handled_by=turn.handled_by or "none",
        )

    # Helpers ----------------------------------------------------------------------------

    def _update(self, turn: TurnContext, fields: Dict[str, Any]) -> None:
        if fields:
            turn.conversation = self._store.update_conversation(turn.conversation_id, fields)

    def _refresh(self, turn: TurnContext) -> None:
        turn.conversation = self._store.get_conversation(turn.conversation_id)

    def _escalate(self, turn: TurnContext, options: HandoffOptions, handled_by: str) -> None:
        turn.response = self._handoff.execute(turn.conversation, turn.message, options)
        turn.handoff = True
        turn.stalled = False
        turn.handled_by = handled_by
        turn.intent = options.last_intent
        self._refresh(turn)

    def _record_gap(self, turn: TurnContext, reason: str, detail: str = "") -> None:
        if self._gap_log is None:
            return
        self._gap_log.record(
            turn.conversation_id,
            turn.message,
            reason,
            flow=turn.conversation.current_flow,
            stage=turn.conversation.stage,
            detail=detail,
        )

    def _flush_flow_updates(self, turn: TurnContext) -> None:
        ctx = turn.flow_ctx
        if ctx is None or not ctx.updates:
            return
        updates = dict(ctx.updates)
        ctx.updates.clear()
        self._update(turn, updates)

    # Steps --------------------------------------------------------------------------------

    def _step_extract(self, turn: TurnContext) -> None:
        allow_single = turn.conversation.stage == "awaiting_dimensions"
        turn.entities = self._extractor.extract(turn.message, allow_single=allow_single)

    def _step_resume_handoff(self, turn: TurnContext) -> None:
        if turn.conversation.pending_handoff is None:
            return
        turn.response = self._handoff.resume_pending(turn.conversation, turn.message)
        turn.handoff = True
        turn.handled_by = "handoff_resume"
        turn.intent = "handoff"
        self._refresh(turn)

    def _step_unintelligible(self, turn: TurnContext) -> None:
        conversation = turn.conversation
        if not is_unintelligible(turn.message):
            if conversation.unintelligible_count:
                self._update(turn, {"unintelligible_count": 0})
            return
        count = conversation.unintelligible_count + 1
        logger.info("pipeline=unintelligible conversation=%s count=%s", turn.conversation_id, count)
        if count >= MAX_UNINTELLIGIBLE:
            self._update(turn, {"unintelligible_count": 0})
            self._escalate(
                turn,
                HandoffOptions(
                    reason=f"unintelligible_messages x{count}",
                    response_prefix="Lo siento 😔 sigo sin comprender bien. Te paso con alguien de nuestro equipo. ",
                    skip_checklist=True,
                    last_intent="human_handoff",
                ),
                handled_by="unintelligible",
            )
            return
        self._update(turn, {"unintelligible_count": count, "last_intent": "needs_clarification"})
        turn.response = BotResponse(text=CLARIFY_TEXT)
        turn.handled_by = "unintelligible"
        turn.intent = "needs_clarification"

    def _step_router(self, turn: TurnContext) -> None:
        result = self._router.route(turn.conversation, turn.message, turn.entities)
        if result is None:
            return
        turn.intent = result.intent
        if result.handoff is not None:
            self._update(turn, {key: value for key, value in result.updates.items() if key != "last_intent"})
            self._escalate(turn, result.handoff, handled_by="router")
            turn.intent = result.intent
            return
        self._update(turn, result.updates)
        turn.response = result.response
        turn.handled_by = "router"

    def _step_flow(self, turn: TurnContext) -> None:
        """Purpose: Run the active (or newly detected) family flow.
        Inputs/Outputs: TurnContext; sets response/stalled/handoff.
        Side Effects / State: Applies the flow's collected updates, captures the
            locality mentioned in the message, executes requested handoffs.
        Dependencies: FlowRegistry.select, FlowMachine.handle, HandoffOrchestrator.
        Failure Modes: Flow exceptions propagate to handle_message.
        If Removed: Product conversations are never quoted.
        Testing Notes: A cold-start message without a product hint returns the menu.
        """
        # Locality is captured before a staged handoff checks for it.
        flow = self._registry.select(turn.conversation, turn.message, turn.entities)
        if flow is None:
            turn.response = BotResponse(text=PRODUCT_MENU_TEXT)
            turn.handled_by = "cold_start"
            turn.intent = "product_menu"
            turn.stalled = True
            self._record_gap(turn, "unknown_product")
            return
        ctx = FlowContext(
            conversation=turn.conversation,
            message=turn.message,
            entities=turn.entities,
            classifier_entities=turn.classifier_entities,
            turn=turn.turn,
        )
        match = turn.entities.location
        if match is not None:
            ctx.set(location=Location(city=match.city, state=match.state, zip_code=match.zip_code))
        turn.flow = flow
        turn.flow_ctx = ctx
        outcome = flow.handle(ctx)
        turn.outcome = outcome
        self._flush_flow_updates(turn)
        turn.intent = turn.conversation.last_intent
        if outcome.handoff is not None:
            self._escalate(turn, outcome.handoff, handled_by=f"flow:{flow.family}")
            return
        turn.response = outcome.response
        turn.stalled = outcome.stalled
        turn.handled_by = f"flow:{flow.family}"

    def _step_ai_fallback(self, turn: TurnContext) -> None:
        """Purpose: Let the LLM interpret a stalled reply about the last quote.
        Inputs/Outputs: TurnContext with a stalled flow outcome.
        Side Effects / State: On acceptance applies the flow's updates; on
            rejection records a gap entry and keeps the flow's default text.
        Dependencies: FallbackResolver.resolve, FlowMachine.apply_fallback.
        Failure Modes: Resolver failures never raise; they leave the stall text.
        If Removed: "la segunda" after a list of options is never understood.
        Testing Notes: A quote from two turns ago must not trigger the call.
        """
        # Only quotes shown in the immediately preceding turn qualify.
        flow, ctx = turn.flow, turn.flow_ctx
        if flow is None or ctx is None:
            return
        quote_context = turn.started.quote_context
        if not quote_context.products or quote_context.turn != turn.turn - 1:
            self._record_gap(turn, "fallback_reached", detail="no_recent_quote")
            return
        spec = ctx.spec.model_dump() if ctx.spec is not None else None
        result = self._resolver.resolve(
            turn.message,
            flow.family,
            turn.conversation.stage or "",
            spec,
            quote_context.products,
            turn.started.history,
        )
        if not result.ok:
            reason = "low_confidence" if result.failure.reason == "low_confidence" else "fallback_reached"
            self._record_gap(turn, reason, detail=result.failure.reason)
            return
        outcome = flow.apply_fallback(ctx, result.action)
        if outcome is None:
            self._record_gap(turn, "fallback_reached", detail=f"not_applicable:{result.action.action}")
            return
        ctx.set(product_specs=ctx.spec, poi=ctx.poi, stage=flow.compute_stage(ctx.spec).value)
        self._flush_flow_updates(turn)
        turn.intent = turn.conversation.last_intent
        if outcome.handoff is not None:
            self._escalate(turn, outcome.handoff, handled_by="ai_fallback")
            return
        turn.response = outcome.response
        turn.stalled = False
        turn.handled_by = "ai_fallback"

    def _step_counters(self, turn: TurnContext) -> None:
        # Handoff turns already reset unknown_count inside the orchestrator.
        if turn.handoff:
            return
        if turn.resolved:
            if turn.conversation.unknown_count:
                self._update(turn, {"unknown_count": 0})
            return
        count = turn.conversation.unknown_count + 1
        if count >= MAX_UNKNOWN:
            logger.info("pipeline=unknown_limit conversation=%s count=%s", turn.conversation_id, count)
            self._record_gap(turn, "repetition_detected", detail=f"unknown x{count}")
            self._escalate(
                turn,
                HandoffOptions(
                    reason=f"repeated_unknown_intent x{count}",
                    response_prefix="Parece que no estoy logrando ayudarte como mereces. ",
                    skip_checklist=True,
                    last_intent="human_handoff",
                ),
                handled_by="unknown_limit",
            )
            return
        self._update(turn, {"unknown_count": count})
        if turn.response is None:
            turn.response = BotResponse(text=PRODUCT_MENU_TEXT)
            turn.handled_by = turn.handled_by or "unknown"

    def _step_assets(self, turn: TurnContext) -> None:
        if turn.handoff or turn.response is None or turn.handled_by in ("unintelligible", "cold_start"):
            return
        intent = turn.intent
        if turn.flow_ctx is not None and turn.handled_by.startswith("flow:"):
            quoted_now = turn.conversation.quote_context.turn == turn.turn
            intent = "specific_measure" if quoted_now else "generic_measures"
        mentioned = dict(turn.conversation.mentioned_assets)
        selected = self._assets.select(turn.message, intent, mentioned)
        if selected is None:
            return
        mentioned[selected.key] = mentioned.get(selected.key, 0) + 1
        turn.response = BotResponse(
            text=insert_asset(turn.response.text, selected.text), follow_up=turn.response.follow_up
        )
        self._update(turn, {"mentioned_assets": mentioned})

    def _step_finalize(self, turn: TurnContext) -> None:
        self._update(turn, {"turn_count": turn.turn})
        self._store.add_message(turn.conversation_id, "user", turn.message)
        if turn.response is not None:
            self._store.add_message(turn.conversation_id, "assistant", turn.response.text)
