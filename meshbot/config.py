from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for catalog paths, LLM access, and dialogue tunables."""
    gemini_api_key: str
    gemini_model: str
    catalog_path: Path
    locations_path: Path
    prompts_dir: Path
    data_dir: Path
    fallback_confidence: float
    fallback_timeout_sec: float
    area_tolerance_m2: float
    business_timezone: str
    business_open_hour: int
    business_close_hour: int
    home_city: str
    store_url: str
    tracking_base_url: str
    notify_webhook_url: str


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: App cannot locate the catalog or tune escalation thresholds.
    Testing Notes: Verify defaults and overrides via monkeypatched environment.
    """
    # Resolve resource paths relative to the repository root unless overridden.
    root = (BASE_DIR / "..").resolve()
    catalog_path = os.getenv("CATALOG_PATH")
    locations_path = os.getenv("LOCATIONS_PATH")
    data_dir = os.getenv("DATA_DIR")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        catalog_path=Path(catalog_path) if catalog_path else root / "resources" / "catalog.json",
        locations_path=Path(locations_path) if locations_path else root / "resources" / "locations.json",
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        data_dir=Path(data_dir) if data_dir else BASE_DIR / "data",
        fallback_confidence=float(os.getenv("FALLBACK_CONFIDENCE", "0.7")),
        fallback_timeout_sec=float(os.getenv("FALLBACK_TIMEOUT_SEC", "15")),
        area_tolerance_m2=float(os.getenv("AREA_TOLERANCE_M2", "10")),
        business_timezone=os.getenv("BUSINESS_TIMEZONE", "America/Mexico_City"),
        business_open_hour=int(os.getenv("BUSINESS_OPEN_HOUR", "9")),
        business_close_hour=int(os.getenv("BUSINESS_CLOSE_HOUR", "18")),
        home_city=os.getenv("HOME_CITY", "Querétaro"),
        store_url=os.getenv(
            "STORE_URL", "https://www.mercadolibre.com.mx/tienda/distribuidora-hanlob"
        ),
        tracking_base_url=os.getenv("TRACKING_BASE_URL", ""),
        notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL", ""),
    )
