from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .utils import normalize_text

logger = logging.getLogger("meshbot.assets")

TRAILING_QUESTION_RE = re.compile(r"\n\n¿[^?]+\?$")


@dataclass(frozen=True)
class CompanyAsset:
    """Marketing fact that may be appended to a reply."""
    key: str
    variations: Tuple[str, ...]
    triggers: Tuple["re.Pattern[str]", ...]
    intents: Tuple[str, ...]
    priority: int
    max_mentions: int


def _patterns(*sources: str) -> Tuple["re.Pattern[str]", ...]:
    # Triggers run against normalize_text output (no accents).
    return tuple(re.compile(source) for source in sources)


COMPANY_ASSETS: Tuple[CompanyAsset, ...] = (
    CompanyAsset(
        key="directManufacturer",
        variations=(
            "Somos fabricantes directos",
            "Al ser fabricantes directos, te garantizamos los mejores precios",
            "Como fabricantes directos, no hay intermediarios",
        ),
        triggers=_patterns(
            r"\b(precio|costo|caro|barato|descuento|rebaja|economico|ahorro)\b",
            r"\b(mejor precio|precio competitivo|precio justo)\b",
            r"\b(por que|como|cuanto)\b",
        ),
        intents=("specific_measure", "generic_measures", "bulk_discount", "price_by_meter", "catalog_request"),
        priority=8,
        max_mentions=2,
    ),
    CompanyAsset(
        key="reinforcedQuality",
        variations=(
            "Nuestra malla es reforzada con argollas y doble costura",
            "Incluye argollas reforzadas y doble costura para mayor resistencia",
            "Viene con argollas y doble costura para instalación profesional",
        ),
        triggers=_patterns(
            r"\b(calidad|resistencia|duracion|fuerte|resistente|dura|aguanta)\b",
            r"\b(argolla|argollas|costura|reforzad[ao]|instalacion)\b",
            r"\b(como|que tan|es buena)\b",
            r"\b(se rompe|se desgarra|se dana)\b",
        ),
        intents=("specific_measure", "installation", "product_lifespan", "details_request"),
        priority=9,
        max_mentions=2,
    ),
    CompanyAsset(
        key="uvProtection",
        variations=(
            "Incluye protección UV para mayor durabilidad",
            "Con protección UV, resiste años a la intemperie",
            "Tratamiento UV que la protege del sol y clima",
        ),
        triggers=_patterns(
            r"\b(duracion|vida util|cuanto dura|tiempo|resistencia|sol|clima|lluvia|intemperie)\b",
            r"\b(se decolora|se degrada|aguanta|resiste)\b",
            r"\b(garantia|cuantos anos)\b",
        ),
        intents=("product_lifespan", "details_request", "weed_control"),
        priority=7,
        max_mentions=1,
    ),
    CompanyAsset(
        key="nationalShipping",
        variations=(
            "Enviamos a todo México",
            "Hacemos envíos a todo el país",
            "Llegamos a toda la República Mexicana",
        ),
        triggers=_patterns(
            r"\b(envio|envios|entrega|entregan|llega|paquete|domicilio|reparto)\b",
            r"\b(ciudad|estado|vivo en|estoy en|soy de)\b",
            r"\b(cuanto tarda|cuando llega|tiempo de entrega)\b",
            r"\b(pueden enviar|envian a|llegue a)\b",
        ),
        intents=("shipping", "store_location", "city_provided", "asking_if_local", "delivery_time"),
        priority=10,
        max_mentions=2,
    ),
    CompanyAsset(
        key="paymentOptions",
        variations=(
            "Aceptamos tarjeta, efectivo y meses sin intereses",
            "Puedes pagar con tarjeta, efectivo o a meses sin intereses",
            "Aceptamos todas las formas de pago de Mercado Libre",
        ),
        triggers=_patterns(
            r"\b(pago|pagar|forma de pago|metodo de pago|como pago)\b",
            r"\b(tarjeta|efectivo|meses sin intereses|msi|credito|debito)\b",
            r"\b(cuando pago|anticipo|adelanto)\b",
            r"\b(acepta|aceptan|puedo pagar)\b",
        ),
        intents=("delivery_time", "purchase_process", "payment", "pay_on_delivery"),
        priority=6,
        max_mentions=1,
    ),
    CompanyAsset(
        key="immediateStock",
        variations=(
            "Tenemos stock disponible para entrega inmediata",
            "Contamos con inventario listo para envío inmediato",
            "Disponibilidad inmediata en la mayoría de medidas",
        ),
        triggers=_patterns(
            r"\b(cuando|tiempo|tarda|demora|cuanto tarda|cuando llega)\b",
            r"\b(disponible|hay|tienen|stock|inventario|existencia)\b",
            r"\b(rapido|urgente|pronto|inmediato|ya)\b",
        ),
        intents=("delivery_time", "specific_measure", "generic_measures", "shipping"),
        priority=7,
        max_mentions=1,
    ),
)


@dataclass(frozen=True)
class SelectedAsset:
    key: str
    text: str
    score: int


class AssetSelector:
    """Scores company assets against the message and intent, honoring mention caps."""

    def __init__(self, assets: Tuple[CompanyAsset, ...] = COMPANY_ASSETS) -> None:
        self._assets = assets

    def select(
        self,
        message: str,
        intent: Optional[str],
        mentioned: Dict[str, int],
        exclude: Tuple[str, ...] = (),
    ) -> Optional[SelectedAsset]:
        """Purpose: Pick at most one asset worth appending to this reply.
        Inputs/Outputs: Customer message, resolved intent and the per-conversation
            mention counters; returns the best SelectedAsset or None.
        Side Effects / State: None; the caller increments the counter it persists.
        Dependencies: COMPANY_ASSETS scoring table.
        Failure Modes: Assets at their cap are skipped; a zero score never wins.
        If Removed: Replies never mention shipping, quality or payment facts.
        Testing Notes: An asset mentioned max_mentions times is never selected again.
        """
        # Intent match counts double; each trigger adds priority; unseen assets get +3.
        normalized = normalize_text(message)
        scored: List[Tuple[int, int, CompanyAsset]] = []
        for order, asset in enumerate(self._assets):
            if asset.key in exclude:
                continue
            count = mentioned.get(asset.key, 0)
            if count >= asset.max_mentions:
                continue
            score = 0
            if intent and intent in asset.intents:
                score += asset.priority * 2
            score += sum(asset.priority for trigger in asset.triggers if trigger.search(normalized))
            if score == 0:
                continue
            if count == 0:
                score += 3
            scored.append((score, -order, asset))
        if not scored:
            return None
        score, _, best = max(scored, key=lambda item: (item[0], item[1]))
        variation = best.variations[mentioned.get(best.key, 0) % len(best.variations)]
        logger.debug("asset=%s score=%s intent=%s", best.key, score, intent)
        return SelectedAsset(key=best.key, text=variation, score=score)


def insert_asset(response_text: str, asset_text: str) -> str:
    """Place the asset before a trailing "\\n\\n¿...?" question, else at the end."""
    if not asset_text:
        return response_text
    match = TRAILING_QUESTION_RE.search(response_text)
    if match:
        base = response_text[: match.start()]
        return f"{base}\n\n✨ {asset_text}.{match.group(0)}"
    return f"{response_text}\n\n✨ {asset_text}."
