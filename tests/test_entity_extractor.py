import pytest

from meshbot.entity_extractor import (
    extract_all_dimensions,
    extract_area,
    extract_length,
    extract_percentage,
    extract_quantity,
    parse_dimensions,
    parse_single_value,
    prepare_text,
)
from meshbot.spoken_numbers import convert_spoken_numbers
from meshbot.utils import format_meters, format_money, mask_contact_value, normalize_text, safe_json_loads


@pytest.mark.parametrize("text", ["4 por 6", "6 por 4", "4x6", "6 x 4 metros", "4*6"])
def test_dimension_order_does_not_change_normalized_size(text):
    dims = parse_dimensions(text)
    assert dims is not None
    assert dims.normalized == "4x6"
    assert dims.width == 4 and dims.height == 6


def test_user_order_is_kept_for_display():
    assert parse_dimensions("6x4").user_order == "6x4"


def test_labeled_axes_decide_width():
    dims = parse_dimensions("6 de largo por 4 de ancho")
    assert (dims.width, dims.height) == (4, 6)
    assert dims.user_order == "4x6"


def test_spoken_decimal_dimensions():
    assert prepare_text("cuatro veinte por seis") == "4.20 por 6"
    dims = parse_dimensions("cuatro veinte por seis")
    assert dims.width == pytest.approx(4.2)
    assert dims.height == 6


def test_three_digit_width_heuristic():
    dims = parse_dimensions("420x100")
    assert dims.width == pytest.approx(4.2)
    assert dims.height == 100


@pytest.mark.parametrize(
    "text,expected",
    [
        ("necesito 120 metros de borde", "necesito 120 metros de borde"),
        ("borde de 135 m", "borde de 135 m"),
        ("rollo de 250", "rollo de 250"),
        ("rollo de 420", "rollo de 4.20"),
    ],
)
def test_three_digit_rewrite_only_for_bare_numbers(text, expected):
    assert prepare_text(text) == expected


def test_three_digit_length_with_unit_is_kept():
    assert extract_length("necesito 120 metros de borde") == 120


def test_feet_are_converted_to_meters():
    dims = parse_dimensions("10x12 pies")
    assert dims.converted_from_feet is True
    assert dims.width == pytest.approx(3.0)
    assert dims.height == pytest.approx(3.7)


def test_decimal_comma_is_read_as_point():
    dims = parse_dimensions("3,5 x 4")
    assert dims.width == pytest.approx(3.5)
    assert dims.fractional


def test_percentage_is_not_a_dimension():
    assert parse_dimensions("4x80%") is None


def test_single_value_square_only_on_follow_up():
    assert parse_dimensions("3") is None
    square = parse_dimensions("3", allow_single=True)
    assert square.assumed_square
    assert square.normalized == "3x3"
    assert parse_dimensions("15", allow_single=True) is None


def test_multiple_sizes_in_message_order():
    found = extract_all_dimensions("6x5 o 5x5")
    assert [dims.normalized for dims in found] == ["5x6", "5x5"]


def test_same_size_written_twice_is_deduplicated():
    assert len(extract_all_dimensions("4x6 y 6x4")) == 1


def test_spoken_number_forms():
    assert convert_spoken_numbers("tres y medio") == "3.5"
    assert convert_spoken_numbers("treinta y cinco") == "35"
    assert convert_spoken_numbers("uno treinta") == "1.30"
    assert convert_spoken_numbers("seis por cuatro") == "6 por 4"


def test_percentage_quantity_length_area():
    assert extract_percentage("la quiero al 80%") == 80
    assert extract_percentage("90 por ciento") == 90
    assert extract_quantity("2 mallas de 4x6") == 2
    assert extract_length("borde de 18 metros") == 18
    assert extract_length("4x6 metros") is None
    assert extract_area("quiero cubrir 30 m2") == 30
    assert extract_length("30 m2") is None


def test_single_value_skips_percentages():
    assert parse_single_value("al 80% de 4.20", 1.5, 4.5) == pytest.approx(4.2)
    assert parse_single_value("al 80%", 1.5, 4.5) is None


def test_extractor_fills_every_entity(extractor):
    entities = extractor.extract("2 mallas de 4x6 al 80% beige, soy de Monterrey")
    assert entities.dimensions.normalized == "4x6"
    assert entities.quantity == 2
    assert entities.percentage == 80
    assert entities.color == "beige"
    assert entities.location.city == "Monterrey"


def test_extractor_postal_code(extractor):
    entities = extractor.extract("CP 76137")
    assert entities.location.zip_code == "76137"
    assert entities.location.state == "Querétaro"


def test_empty_message_yields_empty_entities(extractor):
    assert extractor.extract("   ").is_empty()


def test_text_helpers():
    assert normalize_text("¿Cuánto cuesta el envío?") == "cuanto cuesta el envio"
    assert format_money(1250) == "$1,250"
    assert format_money(None) == ""
    assert format_meters(4.0) == "4"
    assert format_meters(4.2) == "4.2"
    assert mask_contact_value("76137") == "***137"
    assert safe_json_loads('claro: {"action": "none"} listo') == {"action": "none"}
    assert safe_json_loads("sin json") is None
    assert safe_json_loads("```json\n{\"action\": \"select_one\"}\n```") == {"action": "select_one"}
