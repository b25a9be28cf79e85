import pytest

from meshbot.intent_router import IntentHandler, IntentRouter, is_multi_question
from meshbot.models import Conversation, PendingHandoff, QuoteContext, QuotedProduct, SizeProposal


def _route(router, extractor, message, conversation=None):
    conversation = conversation or Conversation(conversation_id="c1")
    return router.route(conversation, message, extractor.extract(message))


def _quoted_conversation(**fields):
    item = QuotedProduct(
        display_text="4x6 m", price=950, product_id="panel-90-4x6", url="https://tienda.test/4x6", product_name="4x6"
    )
    return Conversation(
        conversation_id="c1",
        current_flow="panel",
        quote_context=QuoteContext(version=1, dimensions_key="4x6", products=[item], turn=1),
        **fields,
    )


def test_multi_question_detection():
    assert is_multi_question("¿Hacen envíos? ¿Y cuánto tarda?")
    assert is_multi_question("hacen envios y forma de pago")
    assert not is_multi_question("¿Hacen envíos?")
    assert not is_multi_question("")


def test_single_shipping_question(router, extractor):
    result = _route(router, extractor, "¿Hacen envíos?")
    assert result.intent == "shipping"
    assert result.updates["last_intent"] == "shipping"
    assert result.updates["unknown_count"] == 0


def test_shipping_with_city_stores_location(router, extractor):
    result = _route(router, extractor, "¿hacen envíos a Monterrey?")
    assert "Monterrey" in result.response.text
    assert result.updates["location"].city == "Monterrey"


@pytest.mark.parametrize(
    "message",
    [
        "¿Hacen envío de la malla de 4x6?",
        "¿Cuánto cuesta la malla de 4x6 con envío a Monterrey?",
        "¿Se puede pagar con tarjeta la de 3x4?",
        "¿Cuánto tarda en llegar una de 4x6?",
        "¿La de 4x6 incluye envío?",
        "¿Me llegan 6x5 o 5x5 contra entrega?",
    ],
)
def test_faq_with_a_size_is_left_to_the_flow(router, extractor, message):
    assert _route(router, extractor, message) is None


def test_multi_question_is_answered_together(router, extractor):
    result = _route(router, extractor, "¿Hacen envíos? ¿Y cuánto tarda?")
    assert result.intent == "multi_question"
    assert "Tiempos de entrega" in result.response.text
    assert "Enviamos a todo el país" in result.response.text
    assert result.response.text.endswith("¿Qué medida te interesa?")
    assert result.updates["last_intent"] == "multi_question"


def test_multi_question_with_one_match_is_left_to_the_flow(router, extractor):
    assert _route(router, extractor, "¿Hacen envíos? ¿Me explicas?") is None


def test_frustration_hands_off_immediately(router, extractor):
    result = _route(router, extractor, "ya te dije que es de 4x6")
    assert result.response is None
    assert result.handoff.reason == "customer_frustrated"
    assert result.handoff.skip_checklist is True


def test_human_request_wins_even_in_compound_messages(router, extractor):
    result = _route(router, extractor, "¿Hacen envíos? quiero hablar con un asesor ¿sí?")
    assert result.intent == "human_request"
    assert result.handoff.reason == "customer_requested_human"


def test_repeated_waterproof_question_escalates(router, extractor):
    first = _route(router, extractor, "la malla es impermeable")
    assert first.intent == "rain_waterproof_question"
    conversation = Conversation(conversation_id="c1", last_intent="rain_waterproof_question")
    second = _route(router, extractor, "pero si protege de la lluvia", conversation)
    assert second.handoff.reason == "repeated_waterproof_question"


def test_concrete_percentage_is_left_to_the_flow(router, extractor):
    assert _route(router, extractor, "que sombra tienen en 80%") is None
    general = _route(router, extractor, "que porcentajes de sombra manejan")
    assert general.intent == "shade_percentage_question"


def test_affirmative_repeats_single_quoted_link(router, extractor):
    result = _route(router, extractor, "si", _quoted_conversation())
    assert result.intent == "affirmative_link_provided"
    assert "https://tienda.test/4x6" in result.response.text


def test_affirmative_with_pending_proposal_belongs_to_flow(router, extractor):
    proposal = SizeProposal(kind="cover", width=4, height=6, product_id="panel-90-4x6", requested_key="3.5x5.5")
    assert _route(router, extractor, "si", _quoted_conversation(pending_proposal=proposal)) is None


def test_greeting_at_cold_start_shows_menu(router, extractor):
    result = _route(router, extractor, "hola")
    assert result.intent == "product_menu"
    assert "Borde separador" in result.response.text


def test_greeting_with_family_goes_to_flow(router, extractor):
    assert _route(router, extractor, "hola, busco borde separador") is None


def test_city_reply_after_shipping_question(router, extractor):
    conversation = Conversation(conversation_id="c1", last_intent="shipping")
    result = _route(router, extractor, "Monterrey", conversation)
    assert result.intent == "city_provided"
    assert result.updates["location"].city == "Monterrey"


def test_store_link_is_tracked(extractor, link_tracker):
    router = IntentRouter(link_tracker, store_url="https://tienda.test")
    result = _route(router, extractor, "pasame el link de la tienda")
    assert result.intent == "store_link_requested"
    assert "https://tienda.test" in result.response.text


def test_pending_handoff_owns_the_reply(router, extractor):
    conversation = Conversation(conversation_id="c1", pending_handoff=PendingHandoff(reason="custom_size 12x12"))
    assert _route(router, extractor, "¿Hacen envíos?", conversation) is None


class BrokenFirstRouter(IntentRouter):
    def _build_handlers(self):
        def boom(ctx):
            raise RuntimeError("boom")

        return [IntentHandler("boom", boom)] + super()._build_handlers()


def test_failing_handler_is_skipped(extractor, link_tracker):
    router = BrokenFirstRouter(link_tracker)
    assert _route(router, extractor, "¿Hacen envíos?").intent == "shipping"
