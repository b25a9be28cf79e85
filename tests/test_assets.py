from meshbot.asset_selector import AssetSelector, insert_asset


def test_intent_and_trigger_pick_shipping_asset():
    selected = AssetSelector().select("¿Hacen envíos?", "shipping", {})
    assert selected.key == "nationalShipping"
    assert selected.text == "Enviamos a todo México"
    assert selected.score == 33


def test_variation_rotates_with_mention_count():
    selected = AssetSelector().select("¿Hacen envíos?", "shipping", {"nationalShipping": 1})
    assert selected.text == "Hacemos envíos a todo el país"


def test_capped_asset_is_never_selected_again():
    selected = AssetSelector().select("¿Hacen envíos?", "shipping", {"nationalShipping": 2})
    assert selected.key == "immediateStock"


def test_zero_score_selects_nothing():
    assert AssetSelector().select("hola", None, {}) is None


def test_excluded_asset_is_skipped():
    selected = AssetSelector().select("¿Hacen envíos?", "shipping", {}, exclude=("nationalShipping",))
    assert selected.key != "nationalShipping"


def test_asset_goes_before_trailing_question():
    text = insert_asset("Enviamos a todo el país.\n\n¿Qué medida te interesa?", "Somos fabricantes directos")
    assert text == "Enviamos a todo el país.\n\n✨ Somos fabricantes directos.\n\n¿Qué medida te interesa?"


def test_asset_is_appended_without_question():
    assert insert_asset("Listo", "Enviamos a todo México") == "Listo\n\n✨ Enviamos a todo México."
    assert insert_asset("Listo", "") == "Listo"
