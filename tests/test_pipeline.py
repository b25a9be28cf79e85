from meshbot.catalog import CatalogStore, ProductNode, StoreLink
from meshbot.entity_extractor import EntityExtractor
from meshbot.flows.base import FlowContext, FlowDeps
from meshbot.flows.panel_flow import PanelFlow
from meshbot.handoff import ASK_LOCALITY_TEXT
from meshbot.intent_router import PRODUCT_MENU_TEXT
from meshbot.locations import LocationGazetteer
from meshbot.models import Conversation, PanelSpec, PendingHandoff, ProductOfInterest
from meshbot.pipeline import CLARIFY_TEXT, DialoguePipeline, is_unintelligible
from meshbot.product_tree import CatalogNavigator


def _gap_reasons(gap_log):
    return [entry["reason"] for entry in gap_log.entries()]


def test_unintelligible_detection():
    assert is_unintelligible("asdfghjkl")
    assert is_unintelligible("?!?!")
    assert not is_unintelligible("4x6")
    assert not is_unintelligible("si")
    assert not is_unintelligible("")


def test_greeting_gets_menu_from_router(pipeline):
    reply = pipeline.handle_message("c1", "hola")
    assert reply.handled_by == "router"
    assert reply.text.startswith("¡Hola! Manejamos:")


def test_multiple_sizes_are_quoted_in_one_reply(pipeline, store):
    reply = pipeline.handle_message("c1", "6x5 o 5x5")
    assert reply.handled_by == "flow:panel"
    assert "$1,150" in reply.text and "$990" in reply.text
    stored = store.get_conversation("c1")
    assert len(stored.quote_context.products) == 2
    assert stored.quote_context.turn == 1
    assert stored.turn_count == 1
    assert [message.role for message in stored.history] == ["user", "assistant"]


def test_bundle_proposal_then_acceptance(pipeline, store):
    reply = pipeline.handle_message("c1", "9x9")
    assert "necesitarías 2 piezas" in reply.text
    assert "$4,900" in reply.text
    stored = store.get_conversation("c1")
    assert stored.pending_proposal.kind == "bundle"
    assert stored.state == "active"

    accepted = pipeline.handle_message("c1", "si")
    assert accepted.handled_by == "flow:panel"
    assert "¡Listo!" in accepted.text
    assert store.get_conversation("c1").pending_proposal is None


def test_missing_percentage_lists_what_the_line_carries(link_tracker):
    nodes = [
        ProductNode(id="panel", name="Malla sombra confeccionada"),
        ProductNode(id="panel-80", name="Malla sombra confeccionada 80%", parent_id="panel"),
        ProductNode(
            id="panel-80-4x6",
            name="Malla 4x6 80%",
            parent_id="panel-80",
            sellable=True,
            size="4x6",
            price=880,
            links=[StoreLink(url="https://tienda.test/80-4x6", preferred=True)],
        ),
    ]
    navigator = CatalogNavigator(CatalogStore(nodes))
    flow = PanelFlow(FlowDeps(navigator=navigator, link_tracker=link_tracker))
    conversation = Conversation(
        conversation_id="c1",
        current_flow="panel",
        product_specs=PanelSpec(width=4, height=6, user_order="4x6", percentage=80),
        poi=ProductOfInterest(
            root_id="panel", root_name="Malla sombra confeccionada", node_id="panel-80", node_name="80%"
        ),
        stage="complete",
    )
    entities = EntityExtractor(LocationGazetteer([], [])).extract("90%")
    ctx = FlowContext(conversation=conversation, message="90%", entities=entities, turn=2)
    outcome = flow.handle(ctx)
    assert outcome.response.text.startswith("En esta línea no manejamos 90%")
    assert "https://tienda.test/80-4x6" in outcome.response.text
    assert [item.product_id for item in ctx.updates["quote_context"].products] == ["panel-80-4x6"]
    assert ctx.updates["product_specs"].percentage == 80


def test_postal_code_resumes_pending_handoff(pipeline, store, gap_log, notifier):
    store.update_conversation(
        "c1", {"pending_handoff": PendingHandoff(reason="custom_size 12x12", specs_text="Malla de 12x12 m. ")}
    )
    reply = pipeline.handle_message("c1", "76137")
    assert reply.handled_by == "handoff_resume"
    assert reply.text.startswith("Perfecto, Querétaro.")
    stored = store.get_conversation("c1")
    assert stored.handoff_reason == "custom_size 12x12"
    assert stored.state == "needs_human"
    assert "human_escalation" not in _gap_reasons(gap_log)
    assert len(notifier.sent) == 1


def test_wholesale_request_collects_locality_first(pipeline, store, notifier):
    reply = pipeline.handle_message("c1", "10 piezas de 7x10")
    assert reply.text == ASK_LOCALITY_TEXT
    assert store.get_conversation("c1").pending_handoff.reason.startswith("wholesale 10")
    assert notifier.sent == []

    done = pipeline.handle_message("c1", "soy de Monterrey")
    assert done.text.startswith("Perfecto, Monterrey.")
    assert store.get_conversation("c1").state == "needs_human"


def test_location_in_product_message_is_stored(pipeline, store):
    reply = pipeline.handle_message("c1", "4x6, soy de Monterrey")
    assert "$950" in reply.text
    assert store.get_conversation("c1").location.city == "Monterrey"


def test_size_with_shipping_question_is_quoted(pipeline, store):
    reply = pipeline.handle_message("c1", "¿Cuánto cuesta la malla de 4x6 con envío a Monterrey?")
    assert reply.handled_by == "flow:panel"
    assert "$950" in reply.text
    stored = store.get_conversation("c1")
    assert stored.quote_context.products[0].product_id == "panel-90-4x6"
    assert stored.location.city == "Monterrey"


def test_fallback_selects_both_quoted_products(pipeline, llm):
    llm.responses = ['{"action": "select_products", "selectedIndices": [0, 1], "confidence": 0.9}']
    pipeline.handle_message("c1", "6x5 o 5x5")
    reply = pipeline.handle_message("c1", "las dos")
    assert reply.handled_by == "ai_fallback"
    assert "¡Claro! Aquí tienes los enlaces" in reply.text
    assert len(llm.calls) == 1


def test_stale_quote_skips_fallback_and_unknowns_escalate(pipeline, store, llm, gap_log):
    pipeline.handle_message("c1", "6x5 o 5x5")

    pipeline.handle_message("c1", "hmm no se")
    assert len(llm.calls) == 1
    assert store.get_conversation("c1").unknown_count == 1

    pipeline.handle_message("c1", "pues no se")
    assert len(llm.calls) == 1
    assert store.get_conversation("c1").unknown_count == 2

    reply = pipeline.handle_message("c1", "tampoco se")
    assert reply.handled_by == "unknown_limit"
    stored = store.get_conversation("c1")
    assert stored.state == "needs_human"
    assert stored.unknown_count == 0
    assert "repetition_detected" in _gap_reasons(gap_log)


def test_two_unintelligible_messages_escalate(pipeline, store):
    first = pipeline.handle_message("c1", "asdfghjkl")
    assert first.text == CLARIFY_TEXT
    assert store.get_conversation("c1").unintelligible_count == 1

    second = pipeline.handle_message("c1", "qwrtzxcv")
    assert second.handled_by == "unintelligible"
    stored = store.get_conversation("c1")
    assert stored.state == "needs_human"
    assert stored.handoff_reason == "unintelligible_messages x2"


def test_cold_start_without_product_hint(pipeline, store, gap_log):
    reply = pipeline.handle_message("c1", "necesito algo para mi patio")
    assert reply.handled_by == "cold_start"
    assert reply.text == PRODUCT_MENU_TEXT
    assert store.get_conversation("c1").unknown_count == 1
    assert "unknown_product" in _gap_reasons(gap_log)


def test_internal_error_gets_generic_reply(store, extractor, router, resolver, handoff, gap_log):
    class BrokenRegistry:
        def select(self, conversation, message, entities):
            raise RuntimeError("boom")

    pipeline = DialoguePipeline(
        store=store,
        extractor=extractor,
        router=router,
        registry=BrokenRegistry(),
        resolver=resolver,
        handoff=handoff,
        gap_log=gap_log,
    )
    reply = pipeline.handle_message("c1", "4x6")
    assert reply.handled_by == "error"
    assert "especialista" in reply.text
