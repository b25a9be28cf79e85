from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

from .models import Conversation, PanelSpec, RollSpec, StoredMessage, TapeSpec

logger = logging.getLogger("meshbot.store")

SPEC_TYPES = {"panel": PanelSpec, "roll": RollSpec, "tape": TapeSpec}


def merge_product_specs(current: Optional[BaseModel], family: str, updates: Dict[str, Any]) -> BaseModel:
    """Purpose: Field-level merge of a product spec, the only way specs are updated.
    Inputs/Outputs: Inputs are the stored spec (or None), the target family and the
        fields to change; output is a new validated spec of that family.
    Side Effects / State: None; returns a new object.
    Dependencies: PanelSpec/RollSpec/TapeSpec.
    Failure Modes: A family switch discards the old spec; None values in updates
        are ignored unless the key is listed in updates["_clear"].
    If Removed: Callers fall back to update_conversation's wholesale replacement
        and silently drop previously accumulated fields.
    Testing Notes: Merge a percentage onto a spec that already has dimensions and
        verify both survive.
    """
    # Start from the stored fields only when the family matches.
    spec_cls = SPEC_TYPES[family]
    base: Dict[str, Any] = {}
    if current is not None and getattr(current, "product_type", None) == family:
        base = current.model_dump()
    clear = set(updates.get("_clear", ()))
    for key, value in updates.items():
        if key == "_clear":
            continue
        if value is None and key not in clear:
            continue
        base[key] = value
    for key in clear:
        base[key] = None
    base["product_type"] = family
    return spec_cls.model_validate(base)


class ConversationStore:
    """Conversation storage keyed by external customer identity."""

    def __init__(self, path: Optional[Path] = None, max_history: int = 12) -> None:
        """Purpose: Initialize the store and hydrate from disk if available.
        Inputs/Outputs: Inputs are an optional JSON path and history cap; no return.
        Side Effects / State: Loads conversations into memory.
        Dependencies: Calls _load; relies on the Conversation model.
        Failure Modes: Corrupt JSON or invalid records are logged and skipped.
        If Removed: Multi-turn state (specs, quotes, pending handoffs) is lost.
        Testing Notes: Write a conversation, build a new store on the same path,
            and read it back.
        """
        # Keep configuration and preload persisted conversations if present.
        self._path = path
        self._max_history = max_history
        self._conversations: Dict[str, Conversation] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        """Purpose: Load persisted conversations from disk into memory.
        Inputs/Outputs: Reads from self._path; no return value.
        Side Effects / State: Populates _conversations.
        Dependencies: json.loads and Conversation.model_validate.
        Failure Modes: Missing file or JSONDecodeError results in an empty cache.
        If Removed: Conversations restart from scratch after a deploy.
        Testing Notes: Corrupt JSON should not crash; valid JSON should hydrate.
        """
        # Read and decode persisted JSON if present.
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("store=load_failed path=%s error=%s", self._path, exc)
            return
        for conversation_id, record in (data.get("conversations") or {}).items():
            try:
                self._conversations[conversation_id] = Conversation.model_validate(record)
            except ValidationError as exc:
                logger.warning("store=skip_invalid conversation=%s error=%s", conversation_id, exc)

    def _persist(self) -> None:
        """Purpose: Persist in-memory conversations to disk.
        Inputs/Outputs: Writes to self._path; no return value.
        Side Effects / State: Writes a JSON file atomically via a temp file.
        Dependencies: json.dumps, Path.write_text, Path.replace.
        Failure Modes: IO errors raise exceptions (not caught here).
        If Removed: State lives only as long as the process.
        Testing Notes: Ensure the file is created and round-trips through _load.
        """
        # Serialize current cache to disk for persistence.
        if not self._path:
            return
        payload = {
            "conversations": {
                conversation_id: conversation.model_dump(mode="json")
                for conversation_id, conversation in self._conversations.items()
            }
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    def get_conversation(self, conversation_id: str) -> Conversation:
        """Return the stored conversation or a fresh default (not persisted until updated)."""
        with self._lock:
            existing = self._conversations.get(conversation_id)
        if existing is not None:
            return existing.model_copy(deep=True)
        return Conversation(conversation_id=conversation_id)

    def update_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> Conversation:
        """Purpose: Shallow-merge fields into a conversation and persist it.
        Inputs/Outputs: Inputs are the id and a dict of top-level fields; output is
            the validated updated Conversation.
        Side Effects / State: Replaces the cached record and writes to disk.
        Dependencies: Conversation.model_validate, _persist.
        Failure Modes: Invalid values raise pydantic ValidationError and nothing is
            written. Nested objects (product_specs, location, quote_context) are
            replaced wholesale; use merge_product_specs to accumulate spec fields.
        If Removed: No pipeline stage can record its decision.
        Testing Notes: Update location with only a city and confirm the old zip
            code is gone (wholesale replacement is the contract).
        """
        # Top-level keys win; nested models are dumped so validation sees plain data.
        with self._lock:
            current = self._conversations.get(conversation_id) or Conversation(conversation_id=conversation_id)
            data = current.model_dump()
            for key, value in fields.items():
                data[key] = value.model_dump() if isinstance(value, BaseModel) else value
            data["conversation_id"] = conversation_id
            data["updated_at"] = time.time()
            updated = Conversation.model_validate(data)
            self._conversations[conversation_id] = updated
            self._persist()
        return updated.model_copy(deep=True)

    def add_message(self, conversation_id: str, role: str, content: str) -> None:
        """Append a message to the capped history used as fallback context."""
        with self._lock:
            current = self._conversations.get(conversation_id) or Conversation(conversation_id=conversation_id)
            history = list(current.history)
            history.append(StoredMessage(role=role, content=content, timestamp=time.time()))
            self._conversations[conversation_id] = current.model_copy(
                update={"history": history[-self._max_history :], "updated_at": time.time()}
            )
            self._persist()
