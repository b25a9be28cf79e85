from __future__ import annotations

from typing import Dict, Optional

import google.generativeai as genai

from .config import Settings

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

try:  # Prefer typed enums when available
    from google.generativeai import types as genai_types

    DEFAULT_SAFETY_SETTINGS = [
        {
            "category": getattr(genai_types.HarmCategory, category),
            "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
        }
        for category in HARM_CATEGORIES
    ]
except (ImportError, AttributeError):  # pragma: no cover - older SDKs expose plain strings
    DEFAULT_SAFETY_SETTINGS = [{"category": category, "threshold": "BLOCK_ONLY_HIGH"} for category in HARM_CATEGORIES]


class GeminiClient:
    """Thin wrapper around the Gemini SDK with model caching and JSON output."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK API key and caches model instances.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if the API key is missing; the app then runs
            without the AI fallback.
        If Removed: Ambiguous replies after a quote can never be interpreted.
        Testing Notes: Tests use a fake client exposing generate_json instead.
        """
        # Configure API key and seed default model cache.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._timeout = settings.fallback_timeout_sec
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._default_model = _normalize_model_name(settings.gemini_model)

    def _model(self, name: Optional[str], system_instruction: Optional[str]) -> genai.GenerativeModel:
        # System instructions are bound at construction, so they are part of the cache key.
        model_name = _normalize_model_name(name) if name else self._default_model
        if not model_name:
            raise ValueError("Gemini model name is required")
        key = f"{model_name}|{hash(system_instruction or '')}"
        if key not in self._models:
            if system_instruction:
                self._models[key] = genai.GenerativeModel(model_name, system_instruction=system_instruction)
            else:
                self._models[key] = genai.GenerativeModel(model_name)
        return self._models[key]

    def generate_json(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_output_tokens: int = 200,
    ) -> str:
        """Purpose: Single-turn completion constrained to a JSON response body.
        Inputs/Outputs: Prompt, optional system instruction and generation limits;
            returns the raw response text (expected to be a JSON object).
        Side Effects / State: May add a model to the internal cache.
        Dependencies: genai.GenerativeModel.generate_content with
            response_mime_type="application/json" and a request timeout.
        Failure Modes: SDK/transport errors and timeouts propagate; the resolver maps
            them to a "transport" failure.
        If Removed: The AI fallback resolver has no backend.
        Testing Notes: Replace with a fake returning canned JSON strings.
        """
        # JSON mime type keeps the answer machine-readable; timeout bounds the turn.
        response = self._model(model, system_instruction).generate_content(
            prompt,
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
                "response_mime_type": "application/json",
            },
            safety_settings=DEFAULT_SAFETY_SETTINGS,
            request_options={"timeout": self._timeout},
        )
        text: Optional[str] = getattr(response, "text", None)
        return (text or "").strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Purpose: Normalize model names by stripping prefix and whitespace.
    Inputs/Outputs: Input is a model name string; output is normalized name.
    Side Effects / State: None.
    Dependencies: None; used by GeminiClient.
    Failure Modes: Returns empty string for falsy input.
    If Removed: "models/gemini-2.5-flash" style names would create duplicate cache entries.
    Testing Notes: Ensure "models/foo" becomes "foo" and whitespace is trimmed.
    """
    # Strip "models/" prefix and whitespace.
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
