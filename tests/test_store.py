from meshbot.conversation_store import ConversationStore, merge_product_specs
from meshbot.intent_gaps import IntentGapLog
from meshbot.models import Location, PanelSpec, TapeSpec


def test_merge_keeps_earlier_fields():
    spec = PanelSpec(width=4, height=6, user_order="4x6")
    merged = merge_product_specs(spec, "panel", {"percentage": 80, "color": None})
    assert (merged.width, merged.height, merged.percentage) == (4, 6, 80)


def test_merge_clear_and_family_switch():
    spec = PanelSpec(width=4, height=6, percentage=90)
    cleared = merge_product_specs(spec, "panel", {"_clear": ["percentage"]})
    assert cleared.percentage is None and cleared.width == 4
    switched = merge_product_specs(spec, "tape", {"length": 18})
    assert isinstance(switched, TapeSpec)
    assert switched.length == 18


def test_unknown_conversation_is_fresh_and_not_persisted(tmp_path):
    store = ConversationStore(tmp_path / "conversations.json")
    conversation = store.get_conversation("nuevo")
    assert conversation.state == "active"
    assert not (tmp_path / "conversations.json").exists()


def test_updates_survive_reload(tmp_path):
    path = tmp_path / "conversations.json"
    store = ConversationStore(path)
    store.update_conversation("c1", {"product_specs": PanelSpec(width=4, height=6), "current_flow": "panel"})
    reloaded = ConversationStore(path).get_conversation("c1")
    assert reloaded.current_flow == "panel"
    assert isinstance(reloaded.product_specs, PanelSpec)
    assert reloaded.product_specs.width == 4


def test_nested_location_is_replaced_wholesale(store):
    store.update_conversation("c1", {"location": Location(city="Monterrey", zip_code="64000")})
    updated = store.update_conversation("c1", {"location": Location(city="Toluca")})
    assert updated.location.city == "Toluca"
    assert updated.location.zip_code is None


def test_returned_conversation_is_a_copy(store):
    store.update_conversation("c1", {"unknown_count": 1})
    copy = store.get_conversation("c1")
    copy.unknown_count = 5
    assert store.get_conversation("c1").unknown_count == 1


def test_history_is_capped(tmp_path):
    store = ConversationStore(tmp_path / "conversations.json", max_history=3)
    for index in range(5):
        store.add_message("c1", "user", f"mensaje {index}")
    history = store.get_conversation("c1").history
    assert [message.content for message in history] == ["mensaje 2", "mensaje 3", "mensaje 4"]


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "conversations.json"
    path.write_text("{no es json", encoding="utf-8")
    assert ConversationStore(path).get_conversation("c1").turn_count == 0


def test_gap_log_persists_known_reasons(tmp_path):
    path = tmp_path / "intent_gaps.json"
    log = IntentGapLog(path)
    assert log.record("c1", "asdf", "fallback_reached", flow="panel", stage="complete")
    assert not log.record("c1", "asdf", "algo_inventado")
    entries = IntentGapLog(path).entries()
    assert len(entries) == 1
    assert entries[0]["reason"] == "fallback_reached"
    assert entries[0]["flow"] == "panel"
