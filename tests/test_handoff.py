from datetime import datetime

import pytest

from conftest import ImmediateExecutor
from meshbot.business_hours import BusinessClock
from meshbot.handoff import ASK_LOCALITY_TEXT, VIDEO_LINK, HandoffOptions, HandoffOrchestrator
from meshbot.models import Conversation, Location, PendingHandoff
from meshbot.outbound import NotificationDispatcher


def _clock_at(*args):
    return BusinessClock(now_fn=lambda: datetime(*args))


@pytest.mark.parametrize(
    "moment,phrase",
    [
        ((2024, 5, 18, 12, 0), "el lunes a las 9am"),
        ((2024, 5, 17, 19, 0), "el lunes a las 9am"),
        ((2024, 5, 19, 10, 0), "mañana lunes a las 9am"),
        ((2024, 5, 13, 7, 30), "hoy a las 9am"),
        ((2024, 5, 14, 18, 0), "mañana a las 9am"),
    ],
)
def test_next_opening_phrase(moment, phrase):
    assert _clock_at(*moment).next_opening_phrase() == phrase


def test_timing_sentence_styles(clock):
    assert clock.is_open()
    assert clock.timing_sentence() == "En un momento te atiende un especialista."
    assert clock.timing_sentence("none") == ""
    closed = _clock_at(2024, 5, 18, 12, 0)
    assert "lunes a viernes 9am-6pm" in closed.timing_sentence()


def test_staged_handoff_asks_for_locality(handoff, store, notifier, gap_log):
    response = handoff.execute(Conversation(conversation_id="c1"), "12x12", HandoffOptions(reason="custom_size 12x12"))
    assert response.text == ASK_LOCALITY_TEXT
    stored = store.get_conversation("c1")
    assert stored.pending_handoff.reason == "custom_size 12x12"
    assert stored.state == "active"
    assert notifier.sent == []
    assert gap_log.entries() == []


def test_staged_handoff_uses_locality_in_same_message(handoff, store, notifier, gap_log):
    response = handoff.execute(
        Conversation(conversation_id="c1"), "12x12, soy de Monterrey", HandoffOptions(reason="custom_size 12x12")
    )
    assert response.text == "En un momento te atiende un especialista."
    stored = store.get_conversation("c1")
    assert stored.state == "needs_human"
    assert stored.handoff_reason == "custom_size 12x12"
    assert stored.location.city == "Monterrey"
    assert notifier.sent == [("c1", "custom_size 12x12 (Monterrey)")]
    assert [entry["reason"] for entry in gap_log.entries()] == ["human_escalation"]


def test_immediate_handoff_skips_locality(handoff, store, notifier):
    options = HandoffOptions(
        reason="customer_frustrated", response_prefix="Disculpa. ", skip_checklist=True, notification_text="urgente"
    )
    response = handoff.execute(Conversation(conversation_id="c1"), "ya te dije", options)
    assert response.text == "Disculpa. En un momento te atiende un especialista."
    assert store.get_conversation("c1").state == "needs_human"
    assert notifier.sent == [("c1", "urgente")]


def test_home_city_gets_pickup_and_video(handoff):
    conversation = Conversation(conversation_id="c1", location=Location(city="Querétaro", state="Querétaro"))
    response = handoff.execute(conversation, "12x12", HandoffOptions(reason="custom_size 12x12", include_video=True))
    assert "recoger en nuestra bodega" in response.text
    assert VIDEO_LINK in response.text


def test_empty_reason_is_rejected(handoff):
    with pytest.raises(ValueError):
        handoff.execute(Conversation(conversation_id="c1"), "hola", HandoffOptions(reason="  "))


def test_resume_with_postal_code_keeps_reason(handoff, store, notifier, gap_log):
    pending = PendingHandoff(reason="wholesale 10 x 7x10 m", specs_text="10 x 7x10 m. ")
    conversation = store.update_conversation("c1", {"pending_handoff": pending})
    response = handoff.resume_pending(conversation, "76137")
    assert response.text.startswith("Perfecto, Querétaro. 10 x 7x10 m. ")
    stored = store.get_conversation("c1")
    assert stored.pending_handoff is None
    assert stored.handoff_reason == "wholesale 10 x 7x10 m"
    assert stored.state == "needs_human"
    assert stored.location.zip_code == "76137"
    assert notifier.sent == [("c1", "wholesale 10 x 7x10 m (Querétaro)")]
    assert gap_log.entries() == []


def test_resume_without_locality_still_completes(handoff, store):
    conversation = store.update_conversation("c1", {"pending_handoff": PendingHandoff(reason="special_shape")})
    response = handoff.resume_pending(conversation, "no se")
    assert not response.text.startswith("Perfecto")
    assert store.get_conversation("c1").state == "needs_human"


def test_resume_without_pending_returns_none(handoff):
    assert handoff.resume_pending(Conversation(conversation_id="c1"), "76137") is None


def test_notification_failure_does_not_break_handoff(store, gazetteer, clock):
    class FailingNotifier:
        def notify(self, identity, text):
            raise ConnectionError("webhook down")

    orchestrator = HandoffOrchestrator(
        store, gazetteer, clock, NotificationDispatcher(FailingNotifier(), executor=ImmediateExecutor())
    )
    response = orchestrator.execute(
        Conversation(conversation_id="c1"), "hola", HandoffOptions(reason="customer_requested_human", skip_checklist=True)
    )
    assert response.text
    assert store.get_conversation("c1").state == "needs_human"
