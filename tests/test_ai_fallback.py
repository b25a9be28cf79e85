import pytest

from conftest import PROMPT_PATH, FakeLLMClient
from meshbot.ai_fallback import FallbackResolver, validate_payload
from meshbot.models import QuotedProduct, StoredMessage
from meshbot.prompt_loader import load_prompt


def _quoted(count=2):
    return [
        QuotedProduct(
            display_text=f"{index + 4}x6 m",
            price=900 + index * 100,
            product_id=f"p{index}",
            url=f"https://tienda.test/{index}",
            product_name=f"p{index}",
        )
        for index in range(count)
    ]


def test_select_products_is_accepted():
    result = validate_payload({"action": "select_products", "selectedIndices": [0, 1, 1], "confidence": 0.9}, 2, 0.7)
    assert result.ok
    assert result.action.indices == (0, 1)


def test_confidence_below_threshold_is_rejected():
    result = validate_payload({"action": "select_one", "selectedIndex": 0, "confidence": 0.69}, 2, 0.7)
    assert result.failure.reason == "low_confidence"


@pytest.mark.parametrize(
    "payload,reason",
    [
        ({"action": "select_one", "selectedIndex": 2, "confidence": 0.9}, "invalid_index"),
        ({"action": "select_one", "selectedIndex": True, "confidence": 0.9}, "invalid_index"),
        ({"action": "select_products", "selectedIndices": [], "confidence": 0.9}, "invalid_index"),
        ({"action": "buy_everything", "confidence": 0.9}, "unknown_action"),
        ({"action": "none", "confidence": 0.9}, "no_action"),
        ({"action": "select_one", "selectedIndex": 0, "confidence": "alta"}, "parse"),
        ({"action": "provide_dimensions", "dimensions": {"width": 0, "height": 4}, "confidence": 0.9}, "invalid_payload"),
        ({"action": "answer_question", "text": "  ", "confidence": 0.9}, "invalid_payload"),
        ({"action": "select_one", "selectedIndex": 0, "confidence": float("nan")}, "parse"),
        ({"action": "select_one", "selectedIndex": 0, "confidence": float("inf")}, "parse"),
        ({"action": "provide_dimensions", "dimensions": {"width": float("nan"), "height": 4}, "confidence": 0.9}, "invalid_payload"),
        ({"action": "provide_dimensions", "dimensions": {"width": 4, "height": float("inf")}, "confidence": 0.9}, "invalid_payload"),
    ],
)
def test_rejections(payload, reason):
    result = validate_payload(payload, 2, 0.7)
    assert not result.ok
    assert result.failure.reason == reason


def test_provide_dimensions_orders_sides():
    result = validate_payload(
        {"action": "provide_dimensions", "dimensions": {"width": "7", "height": 5}, "confidence": 0.8}, 0, 0.7
    )
    assert (result.action.width, result.action.height) == (5.0, 7.0)


def test_resolver_without_client_is_unavailable():
    resolver = FallbackResolver(None, "x")
    assert not resolver.available
    assert resolver.resolve("las dos", "panel", "complete", {}, _quoted()).failure.reason == "unavailable"


def test_resolver_prompt_carries_quotes_and_history():
    client = FakeLLMClient(['{"action": "select_one", "selectedIndex": 1, "confidence": 0.85}'])
    resolver = FallbackResolver(client, load_prompt(PROMPT_PATH))
    history = [StoredMessage(role="user", content="4x6 y 5x6", timestamp=1.0)]
    result = resolver.resolve("la segunda", "panel", "complete", {"width": 4}, _quoted(), history)
    assert result.ok and result.action.indices == (1,)
    call = client.calls[0]
    assert call["prompt"] == 'Mensaje del cliente: "la segunda"'
    assert "[1] 5x6 m - $1,000" in call["system_instruction"]
    assert "Cliente: 4x6 y 5x6" in call["system_instruction"]
    assert "<<" not in call["system_instruction"]


def test_resolver_non_json_is_parse_failure():
    resolver = FallbackResolver(FakeLLMClient(["no entiendo"]), "x")
    assert resolver.resolve("mmm", "panel", "complete", None, _quoted()).failure.reason == "parse"


def test_resolver_client_error_is_transport_failure():
    class ExplodingClient:
        def generate_json(self, prompt, system_instruction=None):
            raise TimeoutError("deadline")

    resolver = FallbackResolver(ExplodingClient(), "x")
    result = resolver.resolve("mmm", "panel", "complete", None, _quoted())
    assert result.failure.reason == "transport"
    assert "deadline" in result.failure.detail


def test_resolver_rejects_nan_confidence_from_model():
    llm = FakeLLMClient(['{"action": "select_one", "selectedIndex": 0, "confidence": NaN}'])
    resolver = FallbackResolver(llm, load_prompt(PROMPT_PATH))
    result = resolver.resolve("la primera", "panel", "complete", None, _quoted())
    assert not result.ok
    assert result.failure.reason == "parse"


def test_prompt_loader_strips_byte_order_mark(tmp_path):
    path = tmp_path / "prompt.txt"
    path.write_bytes("\ufeffResponde en JSON".encode("utf-8"))
    assert load_prompt(path) == "Responde en JSON"
