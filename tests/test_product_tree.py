from meshbot.catalog import CatalogStore, ProductNode
from meshbot.models import ProductOfInterest
from meshbot.product_tree import dimensions_match
from meshbot.size_matcher import find_alternative, find_exact, find_nearest_by_area


def _poi(navigator, node_id):
    return navigator.lock_poi(node_id)


def test_catalog_file_loads_with_meta(catalog):
    assert catalog.meta is not None
    assert catalog.meta.file_name == "catalog.json"
    assert {root.id for root in catalog.roots()} == {"panel", "roll", "tape"}


def test_node_parsing_helpers(catalog):
    panel = catalog.find_by_id("panel-90-4x6")
    assert panel.dimensions == (4.0, 6.0)
    assert panel.area == 24.0
    assert panel.preferred_link.endswith("malla-sombra-4x6")
    tape = catalog.find_by_id("tape-18")
    assert tape.length == 18.0
    assert tape.dimensions is None


def test_find_by_size_key_is_order_insensitive(catalog):
    found = catalog.find(sellable=True, size_key="6x4")
    assert {node.id for node in found} == {"panel-90-4x6", "panel-80-4x6"}


def test_duplicate_ids_keep_last():
    store = CatalogStore([ProductNode(id="a", name="uno"), ProductNode(id="a", name="dos")])
    assert store.find_by_id("a").name == "dos"


def test_ancestry_is_root_first(navigator):
    assert [node.id for node in navigator.ancestry("panel-90-4x6")] == ["panel", "panel-90", "panel-90-4x6"]
    assert navigator.ancestry("missing") == []


def test_lineage_percentage_comes_from_ancestor(navigator):
    assert navigator.lineage_percentage("roll-80-420") == 80
    assert navigator.lineage_percentage("tape-18") is None


def test_inactive_branches_are_pruned(navigator):
    ids = {node.id for node in navigator.descendants("panel-80", sellable_only=True)}
    assert "panel-80-5x5" not in ids
    assert ids == {"panel-80-3x4", "panel-80-4x6"}


def test_lineage_filter_falls_back_to_unfiltered(navigator):
    candidates = navigator.descendants("panel", sellable_only=True)
    result = navigator.filter_by_lineage(candidates, "35%")
    assert result.applied is False
    assert result.products == candidates


def test_lineage_filter_applies_percentage(navigator):
    candidates = navigator.descendants("roll", sellable_only=True)
    result = navigator.filter_by_lineage(candidates, "80%")
    assert result.applied is True
    assert {node.id for node in result.products} == {"roll-80-420", "roll-80-210"}


def test_lock_poi_scopes_to_percentage_branch(navigator):
    poi = _poi(navigator, "panel-90-4x6")
    assert poi.root_id == "panel"
    assert poi.node_id == "panel-90"


def test_variant_check_under_lock(navigator):
    poi = _poi(navigator, "panel-90-4x6")
    check = navigator.check_variant_exists(poi, 6, 4)
    assert check.exists and check.product.id == "panel-90-4x6"

    narrow = ProductOfInterest(root_id="panel", root_name="x", node_id="panel-80", node_name="80%")
    assert navigator.check_variant_exists(narrow, 2, 2).reason == "not_in_tree"
    assert navigator.check_variant_exists(narrow, 5, 5).reason == "not_in_tree"
    assert navigator.check_variant_exists(None, 4, 6).reason == "no_poi"
    gone = ProductOfInterest(root_id="panel", root_name="x", node_id="deleted", node_name="x")
    assert navigator.check_variant_exists(gone, 4, 6).reason == "poi_not_found"


def test_navigate_for_attribute_stays_in_family(navigator):
    poi = _poi(navigator, "panel-90-4x6")
    assert navigator.navigate_for_attribute(poi, 80).id == "panel-80"
    assert navigator.navigate_for_attribute(poi, 35) is None


def test_dimensions_match_ignores_order():
    assert dimensions_match(4, 6, 6, 4)
    assert not dimensions_match(4, 6, 4, 7)


def test_size_matcher_exact_cover_bundle_nearest(navigator):
    candidates = navigator.descendants("panel-90", sellable_only=True)
    assert find_exact(candidates, 6, 4).id == "panel-90-4x6"

    cover = find_alternative(candidates, 3.5, 5.5, 10)
    assert cover.kind == "cover"
    assert cover.product.id == "panel-90-4x6"

    bundle = find_alternative(candidates, 9, 9, 10)
    assert bundle.kind == "bundle"
    assert bundle.product.id == "panel-90-7x10"
    assert bundle.pieces == 2
    assert bundle.total_price == 4900


def test_size_matcher_none_when_too_far(navigator):
    candidates = navigator.descendants("panel-90", sellable_only=True)
    strip = find_alternative(candidates, 1, 400, 10)
    assert strip.kind == "none"
    assert find_nearest_by_area(candidates, 25).id == "panel-90-5x5"
