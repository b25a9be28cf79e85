import pytest

from meshbot.ai_fallback import FallbackAction
from meshbot.flows.panel_flow import PanelFlow
from meshbot.flows.registry import FlowRegistry, detect_family
from meshbot.flows.roll_flow import RollFlow, normalize_width
from meshbot.flows.tape_flow import TapeFlow
from meshbot.models import Conversation, PanelSpec, TapeSpec


@pytest.fixture
def panel(deps):
    return PanelFlow(deps)


@pytest.fixture
def roll(deps):
    return RollFlow(deps)


@pytest.fixture
def tape(deps):
    return TapeFlow(deps)


def _new():
    return Conversation(conversation_id="c1")


def _apply(store, ctx):
    return store.update_conversation("c1", ctx.updates)


# Panel ------------------------------------------------------------------------------------


def test_panel_exact_size_is_quoted_and_locked(panel, make_ctx):
    ctx = make_ctx(_new(), "4x6")
    outcome = panel.handle(ctx)
    assert outcome.rule == "complete"
    assert "$950" in outcome.response.text
    assert "al 90%" in outcome.response.text
    quoted = ctx.updates["quote_context"].products
    assert [item.product_id for item in quoted] == ["panel-90-4x6"]
    assert ctx.updates["poi"].node_id == "panel-90"
    assert ctx.updates["current_flow"] == "panel"
    assert ctx.updates["stage"] == "complete"


def test_panel_greets_on_entry_without_size(panel, make_ctx):
    outcome = panel.handle(make_ctx(_new(), "malla sombra confeccionada"))
    assert outcome.rule == "greeting"
    assert "¿Qué medida necesitas?" in outcome.response.text


def test_panel_fractional_size_offers_floored_size(panel, make_ctx):
    ctx = make_ctx(_new(), "3.5x4.5")
    outcome = panel.handle(ctx)
    assert "metros completos" in outcome.response.text
    assert "$560" in outcome.response.text
    assert ctx.updates["pending_proposal"].kind == "floored"
    assert ctx.updates["product_specs"].fractional_request == "3.5x4.5"


def test_panel_repeated_fractional_request_escalates(panel, make_ctx):
    spec = PanelSpec(width=3.5, height=4.5, user_order="3.5x4.5", fractional_request="3.5x4.5")
    conversation = Conversation(conversation_id="c1", current_flow="panel", product_specs=spec, stage="complete")
    outcome = panel.handle(make_ctx(conversation, "3.5x4.5"))
    assert outcome.handoff is not None
    assert outcome.handoff.reason == "fractional_insistence 3.5x4.5"


def test_panel_large_custom_size_escalates_with_video(panel, make_ctx):
    outcome = panel.handle(make_ctx(_new(), "12x12"))
    assert outcome.handoff.reason == "custom_size 12x12"
    assert outcome.handoff.include_video is True


def test_panel_bundle_of_largest_size(panel, make_ctx):
    ctx = make_ctx(_new(), "9x9")
    outcome = panel.handle(ctx)
    assert outcome.handoff is None
    assert "2 piezas" in outcome.response.text
    assert "$4,900" in outcome.response.text
    proposal = ctx.updates["pending_proposal"]
    assert proposal.kind == "bundle"
    assert proposal.pieces == 2


def test_panel_accepting_proposal_quotes_it(panel, make_ctx, store):
    first = make_ctx(_new(), "9x9")
    panel.handle(first)
    conversation = _apply(store, first)
    ctx = make_ctx(conversation, "si", turn=2)
    outcome = panel.handle(ctx)
    assert outcome.rule == "proposal_accepted"
    assert "¡Listo!" in outcome.response.text
    assert "$4,900" in outcome.response.text
    assert ctx.updates["pending_proposal"] is None


def test_panel_declining_proposal_clears_it(panel, make_ctx, store):
    first = make_ctx(_new(), "9x9")
    panel.handle(first)
    conversation = _apply(store, first)
    ctx = make_ctx(conversation, "no gracias", turn=2)
    outcome = panel.handle(ctx)
    assert outcome.rule == "proposal_declined"
    assert ctx.updates["pending_proposal"] is None


def test_panel_multiple_sizes_are_quoted_together(panel, make_ctx):
    ctx = make_ctx(_new(), "6x5 o 5x5")
    outcome = panel.handle(ctx)
    assert outcome.rule == "multi_size"
    assert "$1,150" in outcome.response.text
    assert "$990" in outcome.response.text
    assert len(ctx.updates["quote_context"].products) == 2


def test_panel_percentage_switch_moves_lock_to_sibling(panel, make_ctx, store):
    first = make_ctx(_new(), "4x6")
    panel.handle(first)
    conversation = _apply(store, first)
    ctx = make_ctx(conversation, "y en 80%?", turn=2)
    outcome = panel.handle(ctx)
    assert "$880" in outcome.response.text
    assert ctx.updates["poi"].node_id == "panel-80"


def test_panel_nonstandard_percentage_escalates(panel, make_ctx):
    outcome = panel.handle(make_ctx(_new(), "4x6 al 60%"))
    assert outcome.handoff.reason == "non_standard_percentage 60%"


def test_panel_special_shape_escalates(panel, make_ctx):
    outcome = panel.handle(make_ctx(_new(), "la necesito triangular de 4x4"))
    assert outcome.rule == "special_shape"
    assert outcome.handoff is not None


def test_panel_photo_request_uses_store_link(panel, make_ctx):
    outcome = panel.handle(make_ctx(_new(), "tienen fotos de la malla?"))
    assert outcome.rule == "photo_request"
    assert "https://tienda.test" in outcome.response.text


def test_panel_repeated_price_question_confirms_quote(panel, make_ctx, store):
    first = make_ctx(_new(), "4x6")
    panel.handle(first)
    conversation = _apply(store, first)
    outcome = panel.handle(make_ctx(conversation, "cuanto cuesta?", turn=2))
    assert outcome.rule == "duplicate_quote"
    assert "$950" in outcome.response.text


def test_panel_wholesale_quantity_escalates(panel, make_ctx):
    ctx = make_ctx(_new(), "10 piezas de 7x10")
    outcome = panel.handle(ctx)
    assert outcome.handoff.reason.startswith("wholesale 10")
    assert outcome.handoff.last_intent == "wholesale_request"


def test_panel_area_suggests_nearest_size(panel, make_ctx):
    ctx = make_ctx(_new(), "quiero cubrir 25 m2")
    outcome = panel.handle(ctx)
    assert outcome.rule == "area_suggestion"
    assert "$990" in outcome.response.text
    assert ctx.updates["pending_proposal"].kind == "nearest"


def test_panel_fallback_selection_uses_snapshot(panel, make_ctx, store):
    first = make_ctx(_new(), "6x5 o 5x5")
    panel.handle(first)
    conversation = _apply(store, first)
    ctx = make_ctx(conversation, "las dos", turn=2)
    outcome = panel.apply_fallback(ctx, FallbackAction(action="select_products", confidence=0.9, indices=(0, 1)))
    assert outcome.rule == "fallback_select_products"
    for item in conversation.quote_context.products:
        assert item.url in outcome.response.text


# Roll -------------------------------------------------------------------------------------


def test_roll_width_snapping():
    assert normalize_width(2.0) == 2.10
    assert normalize_width(4) == 4.20
    assert normalize_width(3) is None
    assert normalize_width(None) is None


def test_roll_greets_on_entry(roll, make_ctx):
    outcome = roll.handle(make_ctx(_new(), "rollo"))
    assert outcome.rule == "greeting"


def test_roll_asks_percentage_after_width(roll, make_ctx):
    ctx = make_ctx(_new(), "rollo de 2.10")
    outcome = roll.handle(ctx)
    assert outcome.rule == "ask_percentage"
    assert ctx.updates["stage"] == "awaiting_percentage"


def test_roll_complete_quote(roll, make_ctx):
    ctx = make_ctx(_new(), "rollo de 4.20 al 80%")
    outcome = roll.handle(ctx)
    assert outcome.rule == "complete"
    assert "$6,100" in outcome.response.text
    assert ctx.updates["poi"].node_id == "roll-80"


def test_roll_missing_percentage_lists_unfiltered_options(roll, make_ctx):
    ctx = make_ctx(_new(), "rollo de 2.10 al 35%")
    outcome = roll.handle(ctx)
    assert "no lo manejamos al 35%" in outcome.response.text
    assert len(ctx.updates["quote_context"].products) == 3


def test_roll_wholesale_quantity_escalates(roll, make_ctx):
    outcome = roll.handle(make_ctx(_new(), "5 rollos de 4.20 al 90%"))
    assert outcome.handoff is not None
    assert outcome.handoff.reason.startswith("wholesale 5")


# Tape -------------------------------------------------------------------------------------


def test_tape_exact_length(tape, make_ctx):
    outcome = tape.handle(make_ctx(_new(), "borde separador de 18 metros"))
    assert outcome.rule == "complete"
    assert "$459" in outcome.response.text


def test_tape_greets_without_length(tape, make_ctx):
    outcome = tape.handle(make_ctx(_new(), "borde separador"))
    assert outcome.rule == "greeting"
    assert "6m, 9m, 18m y 54m" in outcome.response.text


def test_tape_shorter_request_proposes_covering_roll(tape, make_ctx):
    ctx = make_ctx(_new(), "borde de 12 metros")
    outcome = tape.handle(ctx)
    assert "18 m" in outcome.response.text
    assert ctx.updates["pending_proposal"].kind == "cover"


def test_tape_long_request_proposes_bundle(tape, make_ctx):
    ctx = make_ctx(_new(), "borde de 100 metros")
    outcome = tape.handle(ctx)
    assert "2 rollos de 54 m" in outcome.response.text
    assert "$2,580" in outcome.response.text
    assert ctx.updates["pending_proposal"].pieces == 2


def test_tape_bare_number_while_awaiting_length(tape, make_ctx):
    conversation = Conversation(
        conversation_id="c1", current_flow="tape", product_specs=TapeSpec(), stage="awaiting_length"
    )
    outcome = tape.handle(make_ctx(conversation, "9"))
    assert "$259" in outcome.response.text


# Registry ---------------------------------------------------------------------------------


@pytest.mark.parametrize(
    "message,family",
    [
        ("borde separador", "tape"),
        ("cinta de jardin", "tape"),
        ("rollo de malla", "roll"),
        ("malla sombra confeccionada", "panel"),
        ("hola", None),
    ],
)
def test_detect_family(message, family):
    assert detect_family(message) == family


def test_registry_switches_on_explicit_family(deps, extractor):
    registry = FlowRegistry(deps)
    conversation = Conversation(conversation_id="c1", current_flow="panel")
    assert registry.select(conversation, "y de borde?", extractor.extract("y de borde?")).family == "tape"


def test_registry_keeps_current_flow_for_bare_sizes(deps, extractor):
    registry = FlowRegistry(deps)
    conversation = Conversation(conversation_id="c1", current_flow="roll")
    assert registry.select(conversation, "4x6", extractor.extract("4x6")).family == "roll"


def test_registry_dimensions_start_panel_flow(deps, extractor):
    registry = FlowRegistry(deps)
    conversation = Conversation(conversation_id="c1")
    assert registry.select(conversation, "4x6", extractor.extract("4x6")).family == "panel"
    assert registry.select(conversation, "hola", extractor.extract("hola")) is None
