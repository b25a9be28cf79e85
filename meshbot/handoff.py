"""Handoff Orchestrator: the only way a conversation is passed to a human.

Two entry points share one completion path:
    - execute(): immediate (skip_checklist=True) or staged. The staged path first
      makes sure a shipping locality is known; otherwise it suspends the handoff,
      asks for postal code or city and stores a PendingHandoff.
    - resume_pending(): consumes the customer's next reply for the suspended
      handoff and completes it, whatever that reply contains.

Completion marks the conversation as needs_human, dispatches a best-effort staff
notification and composes the reply from the prefix, a business-hours timing
sentence, a pickup suggestion for home-city customers and an optional video link.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .business_hours import BusinessClock
from .conversation_store import ConversationStore
from .intent_gaps import IntentGapLog
from .locations import LocalityMatch, LocationGazetteer
from .models import BotResponse, Conversation, Location, PendingHandoff
from .outbound import NotificationDispatcher
from .utils import mask_contact_value, normalize_text

logger = logging.getLogger("meshbot.handoff")

ASK_LOCALITY_TEXT = "Para calcular el envío, ¿me compartes tu código postal o ciudad?"
GENERIC_SPECIALIST_TEXT = "Déjame comunicarte con un especialista que te ayudará con tu solicitud."
PICKUP_TEXT = (
    "Como estás en {city}, también puedes recoger en nuestra bodega: "
    "Calle Loma de San Gremal 108, bodega 73, Navex Park, C.P. 76137."
)
VIDEO_LINK = "https://youtube.com/shorts/XLGydjdE7mY"
VIDEO_TEXT = "📽️ Mientras tanto, conoce más sobre nuestra malla sombra:\n" + VIDEO_LINK


@dataclass
class HandoffOptions:
    """Per-escalation options; reason is mandatory and machine-attributable."""
    reason: str
    response_prefix: str = ""
    specs_text: str = ""
    follow_up: Optional[str] = None
    extra_state: Dict[str, Any] = field(default_factory=dict)
    last_intent: str = "handoff"
    skip_checklist: bool = False
    notification_text: Optional[str] = None
    include_pickup: bool = True
    include_video: bool = False
    timing_style: str = "standard"


class HandoffOrchestrator:
    """Staged/immediate escalation with locality pre-collection."""

    def __init__(
        self,
        store: ConversationStore,
        gazetteer: LocationGazetteer,
        clock: BusinessClock,
        dispatcher: NotificationDispatcher,
        gap_log: Optional[IntentGapLog] = None,
        home_city: str = "Querétaro",
    ) -> None:
        self._store = store
        self._gazetteer = gazetteer
        self._clock = clock
        self._dispatcher = dispatcher
        self._gap_log = gap_log
        self._home_city = normalize_text(home_city)

    def execute(self, conversation: Conversation, message: str, options: HandoffOptions) -> BotResponse:
        """Purpose: Escalate the conversation, collecting locality first when staged.
        Inputs/Outputs: Current conversation, the triggering message and options;
            returns the customer-facing BotResponse (either the locality question or
            the completed handoff text).
        Side Effects / State: Writes location/pending_handoff or the needs_human
            fields through the store; dispatches a notification on completion;
            records a human_escalation gap entry.
        Dependencies: LocationGazetteer.detect, BusinessClock, NotificationDispatcher.
        Failure Modes: An empty reason raises ValueError (programming error).
            Notification failures are logged by the dispatcher only.
        If Removed: Escalations would be ad hoc per flow and lose their reasons.
        Testing Notes: Unknown location -> ask text and pending_handoff stored;
            skip_checklist=True -> needs_human immediately.
        """
        # Staged path: locality must be known, learned now, or asked for.
        if not options.reason or not options.reason.strip():
            raise ValueError("handoff reason is required")
        conversation_id = conversation.conversation_id
        location = conversation.location
        if not options.skip_checklist and not location.is_known():
            detected = self._gazetteer.detect(message)
            if detected:
                location = _location_from_match(detected)
                self._store.update_conversation(conversation_id, {"location": location})
            else:
                pending = PendingHandoff(
                    reason=options.reason,
                    specs_text=options.specs_text,
                    response_prefix=options.response_prefix,
                    include_video=options.include_video,
                )
                self._store.update_conversation(
                    conversation_id,
                    {"pending_handoff": pending, "last_intent": "handoff_locality_request"},
                )
                logger.info("handoff=staged conversation=%s reason=%s", conversation_id, options.reason)
                return BotResponse(text=ASK_LOCALITY_TEXT)

        fields: Dict[str, Any] = {
            "handoff_requested": True,
            "handoff_reason": options.reason,
            "handoff_timestamp": time.time(),
            "state": "needs_human",
            "last_intent": options.last_intent,
            "unknown_count": 0,
            "pending_handoff": None,
        }
        fields.update(options.extra_state)
        self._store.update_conversation(conversation_id, fields)
        logger.info("handoff=executed conversation=%s reason=%s", conversation_id, options.reason)
        self._record_gap(conversation, message, options.reason)
        self._notify(conversation_id, options.notification_text or options.reason, location)

        text = options.response_prefix + self._clock.timing_sentence(options.timing_style)
        if options.include_pickup and self._is_home_city(location):
            text += "\n\n" + PICKUP_TEXT.format(city=location.city or location.state)
        if options.include_video:
            text += "\n\n" + VIDEO_TEXT
        return BotResponse(text=text.strip() or GENERIC_SPECIALIST_TEXT, follow_up=options.follow_up)

    def resume_pending(self, conversation: Conversation, message: str) -> Optional[BotResponse]:
        """Purpose: Complete a handoff suspended for locality collection.
        Inputs/Outputs: Conversation and the customer's reply; returns None when no
            handoff is pending, otherwise the completed handoff reply.
        Side Effects / State: Stores the parsed location (if any), clears the
            pending handoff, marks needs_human and dispatches the notification.
        Dependencies: LocationGazetteer.detect, BusinessClock.
        Failure Modes: An unparseable reply still completes the handoff so the
            customer is never trapped in a loop. No new reason is created; the
            suspended reason is reused.
        If Removed: The postal-code reply would be read as a new product request.
        Testing Notes: "76137" resumes with "Perfecto, Querétaro." and the stored reason.
        """
        # The pending reason carries over unchanged.
        pending = conversation.pending_handoff
        if pending is None:
            return None
        conversation_id = conversation.conversation_id
        detected = self._gazetteer.detect(message)
        location = conversation.location
        fields: Dict[str, Any] = {
            "pending_handoff": None,
            "handoff_requested": True,
            "handoff_reason": pending.reason,
            "handoff_timestamp": time.time(),
            "state": "needs_human",
            "last_intent": "handoff",
            "unknown_count": 0,
        }
        if detected:
            location = _location_from_match(detected)
            fields["location"] = location
        self._store.update_conversation(conversation_id, fields)
        logger.info(
            "handoff=resumed conversation=%s reason=%s located=%s zip=%s",
            conversation_id,
            pending.reason,
            bool(detected),
            mask_contact_value(location.zip_code),
        )

        acknowledgment = ""
        if detected:
            acknowledgment = f"Perfecto, {detected.city or detected.state or 'ubicación registrada'}. "
        text = f"{acknowledgment}{pending.specs_text}{self._clock.timing_sentence('standard')}"
        if self._is_home_city(location):
            text += "\n\n" + PICKUP_TEXT.format(city=location.city or location.state)
        if pending.include_video:
            text += "\n\n" + VIDEO_TEXT
        self._notify(conversation_id, pending.reason, location)
        return BotResponse(text=text)

    def _is_home_city(self, location: Location) -> bool:
        if not self._home_city:
            return False
        return any(
            value and normalize_text(value) == self._home_city for value in (location.city, location.state)
        )

    def _notify(self, conversation_id: str, text: str, location: Location) -> None:
        where = ""
        if location.is_known():
            where = f" ({location.city or location.state or 'C.P. ' + str(location.zip_code)})"
        self._dispatcher.dispatch(conversation_id, f"{text}{where}")

    def _record_gap(self, conversation: Conversation, message: str, reason: str) -> None:
        if self._gap_log is None:
            return
        self._gap_log.record(
            conversation.conversation_id,
            message,
            "human_escalation",
            flow=conversation.current_flow,
            stage=conversation.stage,
            detail=reason,
        )


def _location_from_match(match: LocalityMatch) -> Location:
    return Location(city=match.city, state=match.state, zip_code=match.zip_code)
