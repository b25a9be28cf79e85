from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger("meshbot.gaps")

GAP_REASONS = {
    "fallback_reached",
    "low_confidence",
    "handler_failed",
    "repetition_detected",
    "human_escalation",
    "unknown_product",
    "unhandled_question",
}


class IntentGapLog:
    """Persisted record of turns the deterministic layers could not resolve."""

    def __init__(self, path: Optional[Path], max_entries: int = 500) -> None:
        """Purpose: Initialize the gap log and load prior entries from disk.
        Inputs/Outputs: Input is an optional Path and a cap; no return value.
        Side Effects / State: Loads entries into memory.
        Dependencies: Calls _load; uses a JSON file on disk.
        Failure Modes: JSON decode errors are logged, leaving an empty log.
        If Removed: Nobody can see which phrasings need a new rule.
        Testing Notes: Record an entry, reload from the same path, and count.
        """
        # Keep the backing file path and hydrate cached entries.
        self._path = path
        self._max_entries = max_entries
        self._entries: List[Dict[str, object]] = []
        self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("gaps=load_failed error=%s", exc)
            return
        entries = data.get("entries", [])
        if isinstance(entries, list):
            self._entries = [entry for entry in entries if isinstance(entry, dict)]

    def _persist(self) -> None:
        # Persist the most recent entries for curation.
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"entries": self._entries[-self._max_entries :]}
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def record(
        self,
        conversation_id: str,
        message: str,
        reason: str,
        flow: Optional[str] = None,
        stage: Optional[str] = None,
        detail: str = "",
    ) -> bool:
        """Purpose: Append one unresolved turn with its machine-readable reason.
        Inputs/Outputs: Conversation id, raw message, reason from GAP_REASONS and
            optional flow/stage/detail; returns False for unknown reasons.
        Side Effects / State: Mutates the in-memory list and writes to disk.
        Dependencies: _persist.
        Failure Modes: IO errors on persist are logged, not raised.
        If Removed: Gap analysis for new router rules is lost.
        Testing Notes: Unknown reason returns False and writes nothing.
        """
        # Reject free-form reasons so the log stays aggregatable.
        if reason not in GAP_REASONS:
            logger.warning("gaps=unknown_reason reason=%s", reason)
            return False
        self._entries.append(
            {
                "conversation_id": conversation_id,
                "message": message[:500],
                "reason": reason,
                "flow": flow,
                "stage": stage,
                "detail": detail,
                "timestamp": time.time(),
            }
        )
        logger.info("gap=%s conversation=%s flow=%s stage=%s", reason, conversation_id, flow, stage)
        try:
            self._persist()
        except OSError as exc:
            logger.warning("gaps=persist_failed error=%s", exc)
        return True

    def entries(self) -> List[Dict[str, object]]:
        return list(self._entries)
