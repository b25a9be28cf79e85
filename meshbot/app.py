from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

BASE_DIR = Path(__file__).resolve().parent
ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

from .ai_fallback import FallbackResolver
from .asset_selector import AssetSelector
from .business_hours import BusinessClock
from .catalog import CatalogStore
from .config import Settings, load_settings
from .conversation_store import ConversationStore
from .entity_extractor import EntityExtractor
from .flows.base import FlowDeps
from .flows.registry import FlowRegistry
from .gemini_client import GeminiClient
from .handoff import HandoffOrchestrator
from .intent_gaps import IntentGapLog
from .intent_router import IntentRouter
from .locations import LocationGazetteer
from .models import ChatRequest, ChatResponse, Conversation
from .outbound import LinkTracker, LogNotifier, NotificationDispatcher, WebhookNotifier
from .pipeline import DialoguePipeline
from .product_tree import CatalogNavigator
from .prompt_loader import load_prompt

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("meshbot").setLevel(log_level)
logger = logging.getLogger("meshbot.app")


def build_resolver(settings: Settings) -> FallbackResolver:
    """Resolver with a Gemini client, or without one when no API key is configured."""
    template = load_prompt(settings.prompts_dir / "flow_fallback.txt")
    try:
        client = GeminiClient(settings)
    except ValueError as exc:
        logger.warning("fallback=disabled error=%s", exc)
        client = None
    return FallbackResolver(client, template, min_confidence=settings.fallback_confidence)


def build_pipeline(settings: Settings) -> tuple[DialoguePipeline, ConversationStore]:
    """Purpose: Wire every layer of the dialogue pipeline from settings.
    Inputs/Outputs: Settings; returns the pipeline and its conversation store.
    Side Effects / State: Creates the data directory; loads catalog and localities.
    Dependencies: All meshbot components.
    Failure Modes: A missing or malformed catalog file raises at startup.
    If Removed: The HTTP layer has nothing to call.
    Testing Notes: Point CATALOG_PATH and DATA_DIR at temporary files.
    """
    # Files under data_dir are the only mutable state.
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    catalog = CatalogStore.from_file(settings.catalog_path)
    gazetteer = LocationGazetteer.from_file(settings.locations_path)
    store = ConversationStore(settings.data_dir / "conversations.json")
    gap_log = IntentGapLog(settings.data_dir / "intent_gaps.json")
    notifier = WebhookNotifier(settings.notify_webhook_url) if settings.notify_webhook_url else LogNotifier()
    dispatcher = NotificationDispatcher(notifier)
    link_tracker = LinkTracker(settings.tracking_base_url)
    clock = BusinessClock(settings.business_timezone, settings.business_open_hour, settings.business_close_hour)

    deps = FlowDeps(
        navigator=CatalogNavigator(catalog),
        link_tracker=link_tracker,
        area_tolerance_m2=settings.area_tolerance_m2,
        store_url=settings.store_url,
    )
    pipeline = DialoguePipeline(
        store=store,
        extractor=EntityExtractor(gazetteer),
        router=IntentRouter(link_tracker, store_url=settings.store_url, home_city=settings.home_city),
        registry=FlowRegistry(deps),
        resolver=build_resolver(settings),
        handoff=HandoffOrchestrator(store, gazetteer, clock, dispatcher, gap_log=gap_log, home_city=settings.home_city),
        assets=AssetSelector(),
        gap_log=gap_log,
    )
    return pipeline, store


settings = load_settings()
pipeline, conversation_store = build_pipeline(settings)

app = FastAPI(title="Shade Mesh Sales Assistant")


@app.post("/api/chat", response_model=ChatResponse)
def chat(request: ChatRequest) -> ChatResponse:
    """Purpose: Handle one inbound customer message.
    Inputs/Outputs: Input is ChatRequest; output is ChatResponse with the reply
        text, optional follow-up and the layer that answered.
    Side Effects / State: Updates the stored conversation and history.
    Dependencies: DialoguePipeline.handle_message.
    Failure Modes: Invalid payloads are rejected with 422 by FastAPI; pipeline
        errors are answered with the generic specialist message.
    If Removed: Channel adapters cannot reach the assistant.
    Testing Notes: Post "hola" and verify the product menu is returned.
    """
    # The channel adapter serializes messages per conversation id.
    return pipeline.handle_message(request.conversation_id, request.message, request.entities)


@app.get("/api/conversations/{conversation_id}", response_model=Conversation)
def get_conversation(conversation_id: str) -> Conversation:
    if not conversation_id.strip():
        raise HTTPException(status_code=400, detail="conversation_id is required")
    return conversation_store.get_conversation(conversation_id)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
