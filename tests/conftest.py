from __future__ import annotations

from concurrent.futures import Future
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pytest

from meshbot.ai_fallback import FallbackResolver
from meshbot.asset_selector import AssetSelector
from meshbot.business_hours import BusinessClock
from meshbot.catalog import CatalogStore
from meshbot.conversation_store import ConversationStore
from meshbot.entity_extractor import EntityExtractor
from meshbot.flows.base import FlowContext, FlowDeps
from meshbot.flows.registry import FlowRegistry
from meshbot.handoff import HandoffOrchestrator
from meshbot.intent_gaps import IntentGapLog
from meshbot.intent_router import IntentRouter
from meshbot.locations import LocationGazetteer
from meshbot.models import Conversation
from meshbot.outbound import LinkTracker, NotificationDispatcher
from meshbot.pipeline import DialoguePipeline
from meshbot.product_tree import CatalogNavigator
from meshbot.prompt_loader import load_prompt

ROOT = Path(__file__).resolve().parents[1]
CATALOG_PATH = ROOT / "resources" / "catalog.json"
LOCATIONS_PATH = ROOT / "resources" / "locations.json"
PROMPT_PATH = ROOT / "meshbot" / "prompts" / "flow_fallback.txt"

# Wednesday 11:00, inside business hours.
OPEN_TIME = datetime(2024, 5, 15, 11, 0)


class ImmediateExecutor:
    """Runs submitted notifications inline so tests can assert on them."""

    def submit(self, fn, *args) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as exc:
            future.set_exception(exc)
        return future


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[tuple] = []

    def notify(self, identity: str, text: str) -> None:
        self.sent.append((identity, text))


class FakeLLMClient:
    """Returns canned JSON strings in order; the last one repeats."""

    def __init__(self, responses: Optional[List[str]] = None) -> None:
        self.responses = list(responses or ['{"action": "none", "confidence": 0.2}'])
        self.calls: List[dict] = []

    def generate_json(self, prompt: str, system_instruction: Optional[str] = None) -> str:
        self.calls.append({"prompt": prompt, "system_instruction": system_instruction})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


@pytest.fixture
def catalog() -> CatalogStore:
    return CatalogStore.from_file(CATALOG_PATH)


@pytest.fixture
def navigator(catalog) -> CatalogNavigator:
    return CatalogNavigator(catalog)


@pytest.fixture
def gazetteer() -> LocationGazetteer:
    return LocationGazetteer.from_file(LOCATIONS_PATH)


@pytest.fixture
def extractor(gazetteer) -> EntityExtractor:
    return EntityExtractor(gazetteer)


@pytest.fixture
def link_tracker() -> LinkTracker:
    return LinkTracker("")


@pytest.fixture
def deps(navigator, link_tracker) -> FlowDeps:
    return FlowDeps(navigator=navigator, link_tracker=link_tracker, area_tolerance_m2=10.0, store_url="https://tienda.test")


@pytest.fixture
def store(tmp_path) -> ConversationStore:
    return ConversationStore(tmp_path / "conversations.json")


@pytest.fixture
def gap_log(tmp_path) -> IntentGapLog:
    return IntentGapLog(tmp_path / "intent_gaps.json")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> BusinessClock:
    return BusinessClock(now_fn=lambda: OPEN_TIME)


@pytest.fixture
def handoff(store, gazetteer, clock, notifier, gap_log) -> HandoffOrchestrator:
    dispatcher = NotificationDispatcher(notifier, executor=ImmediateExecutor())
    return HandoffOrchestrator(store, gazetteer, clock, dispatcher, gap_log=gap_log)


@pytest.fixture
def llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def resolver(llm) -> FallbackResolver:
    return FallbackResolver(llm, load_prompt(PROMPT_PATH), min_confidence=0.7)


@pytest.fixture
def router(link_tracker) -> IntentRouter:
    return IntentRouter(link_tracker, store_url="https://tienda.test")


def build_pipeline(store, extractor, router, deps, resolver, handoff, gap_log) -> DialoguePipeline:
    return DialoguePipeline(
        store=store,
        extractor=extractor,
        router=router,
        registry=FlowRegistry(deps),
        resolver=resolver,
        handoff=handoff,
        assets=AssetSelector(),
        gap_log=gap_log,
    )


@pytest.fixture
def pipeline(store, extractor, router, deps, resolver, handoff, gap_log) -> DialoguePipeline:
    return build_pipeline(store, extractor, router, deps, resolver, handoff, gap_log)


@pytest.fixture
def make_ctx(extractor):
    """Builds a FlowContext the way the pipeline does for one message."""

    def _make(conversation: Conversation, message: str, turn: int = 1, allow_single: bool = False) -> FlowContext:
        entities = extractor.extract(message, allow_single=allow_single)
        return FlowContext(conversation=conversation, message=message, entities=entities, turn=turn)

    return _make
