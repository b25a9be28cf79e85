
"""Mexican locality gazetteer used to recognize postal codes, cities and states."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .utils import normalize_text

logger = logging.getLogger("meshbot.locations")

ZIP_CUE_RE = re.compile(r"\b(?:c\.?\s*p\.?|cp|codigo\s+postal|postal|al)\s*:?\s*(\d{5})\b")
ZIP_BARE_RE = re.compile(r"(?<![\d.])(\d{5})(?![\d.])")


@dataclass
class LocalityMatch:
    """City/state/postal code recognized in a message."""
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None

    @property
    def label(self) -> str:
        if self.city and self.state and self.city != self.state:
            return f"{self.city}, {self.state}"
        return self.city or self.state or (f"C.P. {self.zip_code}" if self.zip_code else "")


class LocationGazetteer:
    """Alias lookup over states and cities with postal-code prefixes."""

    def __init__(self, states: List[dict], cities: List[dict]) -> None:
        self._zip_prefix_to_state: Dict[str, str] = {}
        self._aliases: List[Tuple[str, str, Optional[str]]] = []
        for state in states:
            name = state["name"]
            for prefix in state.get("zip_prefixes", []):
                self._zip_prefix_to_state[prefix] = name
            for alias in state.get("aliases", []):
                self._aliases.append((normalize_text(alias), "state", name))
        for city in cities:
            for alias in city.get("aliases", []):
                self._aliases.append((normalize_text(alias), city["name"], city.get("state")))
        # Longer aliases first so "baja california sur" wins over "baja california".
        self._aliases.sort(key=lambda entry: len(entry[0]), reverse=True)

    @classmethod
    def from_file(cls, path: Path) -> "LocationGazetteer":
        """Purpose: Build the gazetteer from a JSON resource file.
        Inputs/Outputs: Input is the locations.json path; returns a gazetteer.
        Side Effects / State: Reads the file once.
        Dependencies: json and Path.read_text.
        Failure Modes: Missing or malformed file logs a warning and yields an empty
            gazetteer, so locality detection degrades to postal codes only.
        If Removed: Locality questions before a handoff cannot be answered.
        Testing Notes: Point at a temp file with one state and one city.
        """
        # Load states and cities; tolerate a missing resource.
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("locations=unavailable path=%s error=%s", path, exc)
            return cls([], [])
        return cls(data.get("states", []), data.get("cities", []))

    def state_for_zip(self, zip_code: str) -> Optional[str]:
        return self._zip_prefix_to_state.get(zip_code[:2])

    def find_zip(self, text: str, require_cue: bool = False) -> Optional[str]:
        """Return a five-digit postal code; bare numbers need a known prefix."""
        normalized = normalize_text(text)
        match = ZIP_CUE_RE.search(normalized)
        if match:
            return match.group(1)
        if require_cue:
            return None
        for candidate in ZIP_BARE_RE.findall(normalized):
            if self.state_for_zip(candidate):
                return candidate
        return None

    def find_place(self, text: str) -> Optional[LocalityMatch]:
        """Return the longest city or state alias found as a whole word."""
        normalized = f" {normalize_text(text)} "
        for alias, kind, state in self._aliases:
            if not alias or f" {alias} " not in normalized:
                continue
            if kind == "state":
                return LocalityMatch(state=state)
            return LocalityMatch(city=kind, state=state)
        return None

    def detect(self, text: str) -> Optional[LocalityMatch]:
        """Purpose: Detect a postal code and/or place name in free text.
        Inputs/Outputs: Input is a raw message; output is a LocalityMatch or None.
        Side Effects / State: None.
        Dependencies: find_zip, find_place.
        Failure Modes: Returns None when nothing recognizable is present.
        If Removed: Staged handoffs cannot resume from a locality reply.
        Testing Notes: "CP 76137" -> zip with state Querétaro; "soy de Monterrey" -> city.
        """
        # Postal code first; a place name only fills what the code leaves empty.
        zip_code = self.find_zip(text)
        place = self.find_place(text)
        if not zip_code and not place:
            return None
        match = place or LocalityMatch()
        if zip_code:
            match.zip_code = zip_code
            match.state = match.state or self.state_for_zip(zip_code)
        return match
