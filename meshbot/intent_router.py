"""Global Intent Router: standalone pattern-matched intents evaluated before any flow.

Role:
    Answers logistics and FAQ messages (shipping, payment, store location, delivery
    time, product education) that can arrive at any point of a conversation, and
    short-circuits straight to a human for frustration, explicit human requests,
    price confusion and out-of-stock reports.

Contract:
    - Handlers are registered in a flat list; the first one returning a result wins.
    - Guarded handlers decline when the message carries several distinct
      questions. The router then tries the combined path, which stitches the
      answers of every guarded handler that matches; with fewer than two
      matches it returns None so the flow (and later the AI fallback) decide.
    - A handler never writes to the store. It returns the fields it wants
      persisted (always including last_intent); the pipeline applies them.
    - Intents owned by a family flow (photos, colors, cords, dimensions, shade
      percentage switches) are not handled here.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .asset_selector import TRAILING_QUESTION_RE
from .entity_extractor import ExtractedEntities
from .flows.base import AFFIRMATIVE_RE, STANDARD_PERCENTAGES
from .flows.registry import detect_family
from .handoff import HandoffOptions
from .locations import LocalityMatch
from .models import BotResponse, Conversation, Location
from .outbound import LinkTracker
from .utils import normalize_text

logger = logging.getLogger("meshbot.router")

BUSINESS_ADDRESS = "Calle Loma de San Gremal 108, bodega 73, Navex Park, C.P. 76137, Querétaro"
BUSINESS_PHONE = "442 352 1646"
BUSINESS_HOURS = "Lun-Vie 9am-6pm"
WHATSAPP_LINK = "https://wa.me/524425957432"
MAX_COMBINED_ANSWERS = 3

PRODUCT_MENU_TEXT = (
    "¡Hola! Manejamos:\n\n"
    "• Malla sombra confeccionada (lista para instalar, con argollas)\n"
    "• Malla sombra en rollo de 100m (2.10m o 4.20m de ancho)\n"
    "• Borde separador para jardín (6m, 9m, 18m y 54m)\n\n"
    "¿Qué producto te interesa?"
)

FRUSTRATION_RE = re.compile(
    r"\b(?:estoy diciendo|no leen|no entienden|ya (?:te|les?) dije|les? repito|no me escuchan?|"
    r"no ponen atencion|acabo de decir|como te dije|como ya dije|ya lo dije|no estan? entendiendo|"
    r"no entendieron|pero ya dije|pero estoy diciendo)\b"
)
HUMAN_REQUEST_RE = re.compile(
    r"\b(?:hablar con (?:un|una|alguien|el)\b|quiero (?:un |una )?(?:asesor|asesora|humano|agente|persona)|"
    r"asesor humano|persona real|atencion humana|me (?:puede|pueden) llamar|llamenme|marquenme)"
)
PRICE_CONFUSION_RE = re.compile(
    r"\b(?:son diferentes?|otro precio|diferente precio|por ?que (?:dice|sale|aparece) (?:otro|diferente)|"
    r"no (?:es )?el mismo precio|cual es el (?:precio )?correcto|me (?:dijiste|dijeron) (?:otro|diferente)|"
    r"estaba en \d+|no era de \d+)\b"
)
PRICE_AMOUNT_RE = re.compile(r"\b\d{3,4}\b")
IS_OTHER_RE = re.compile(r"\b(?:es otr[ao]|es diferente)\b")
OUT_OF_STOCK_RE = re.compile(
    r"\b(?:agotad[oa]s?|sin stock|no hay (?:en )?stock|no esta disponible|producto no disponible|"
    r"dice (?:que )?(?:no hay|agotado)|sale (?:que )?(?:agotado|no disponible)|aparece (?:como )?agotado|"
    r"fuera de stock)\b"
)
PHOTO_CLAIM_RE = re.compile(r"\b(?:ya (?:te |les )?(?:mande|envie)|te (?:mande|envie)|las? (?:mande|envie))\b")
PHOTO_WORD_RE = re.compile(r"\b(?:foto|fotos|imagen|imagenes)\b")
WEED_RE = re.compile(r"\b(?:antimaleza|anti maleza|ground ?cover|maleza|hierba)\b")
WEED_CONTEXT_RE = re.compile(r"\bpara (?:que )?no (?:salga|crezca|nazca|le salga)\b")
WATER_RE = re.compile(
    r"\b(?:lluvia|lluvias|llueve|agua|mojarse|mojar|impermeable|impermeabiliza|repele|repelente)\b"
)
LOCATION_CONTEXT_RE = re.compile(
    r"\b(?:vivo en|soy de|estoy en|esta en|ubicad[oa] en|me encuentro en|mando a|envio a|entregar? en)\b"
)
STORE_LINK_RE = re.compile(
    r"\b(?:(?:ver|visitar|mostrar|enviar|dar|darme|dame|pasame|quiero) (?:la )?(?:tienda|catalogo)|"
    r"tienda (?:en linea|online|virtual)|(?:link|enlace) (?:de )?(?:la )?(?:tienda|catalogo)|"
    r"(?:tienes?|tienen|venden|estan?) (?:en |por )?mercado ?libre)\b"
)
PURCHASE_PROCESS_RE = re.compile(
    r"\b(?:como (?:realizo|realiza|hago|hacer|efectuo|concreto) (?:una? )?(?:compra|pedido|orden)|"
    r"(?:proceso|pasos?) (?:de |para )?(?:compra|comprar|pedir|ordenar)|"
    r"(?:donde|como) (?:compro|pido|ordeno|puedo comprar))\b"
)
WHERE_TO_BUY_RE = re.compile(r"\b(?:donde|a donde) (?:puedo|puede) (?:ir )?(?:para )?(?:comprar|pedir)")
MEASURE_WORD_RE = re.compile(r"\b(?:medidas?|tamanos?|darle|decirle)\b")
STORE_VISIT_RE = re.compile(
    r"\b(?:venta al publico|venden al publico|atienden al publico|si voy|puedo ir|puedo pasar|paso a|"
    r"pasar a comprar|comprar en persona|comprar directo|recoger en|tienen tienda|hay tienda|"
    r"tienda fisica|local fisico|showroom)\b"
)
STRUCTURE_RE = re.compile(
    r"\b(?:(?:realizan|hacen|fabrican|venden|tienen|ofrecen|instalan) (?:la )?estructura|"
    r"estructura (?:metalica|de metal|de fierro|de tubo)|(?:incluye|viene con|trae) (?:la )?estructura)\b"
)
INSTALLATION_RE = re.compile(
    r"\b(?:venir a medir|pasan a medir|van a medir|pueden medir|mandan a alguien|envian a alguien|"
    r"hacen instalacion|instalan|colocan|ponen la malla|servicio de (?:instalacion|medicion|colocacion)|"
    r"instalador|quien (?:la )?(?:instale|coloque)|(?:tienen|hay) quien (?:ponga|instale|coloque|arme))\b"
)
EYELETS_RE = re.compile(
    r"\b(?:ojito|ojitos|ojillo|ojillos|argolla|argollas|orificio|orificios|agujero|agujeros|"
    r"para colgar|para amarrar|donde amarro|como se instala)\b"
)
LIFESPAN_RE = re.compile(
    r"\b(?:tiempo de vida|vida util|cuanto (?:tiempo )?dura|duracion|garantia|cuantos anos|resistencia)\b"
)
DELIVERY_WORD_RE = re.compile(r"\b(?:entrega|envio|llega|demora|tarda)\b")
PAY_ON_DELIVERY_RE = re.compile(
    r"\b(?:contra ?entrega|(?:pago|deposito) al (?:entregar|recibir)|pagar al recibir|"
    r"hasta que llegue|cuando llegue pago|pago cuando llegue)\b"
)
ALT_PAYMENT_RE = re.compile(r"\b(?:otra forma de pago|otro (?:metodo|modo) de pago|pagar en efectivo directo|pago en (?:persona|tienda|local))\b")
PAYMENT_RE = re.compile(
    r"\b(?:formas? de pago|metodos? de pago|como (?:pago|se paga|puedo pagar)|aceptan (?:tarjeta|efectivo)|"
    r"tarjeta|meses sin intereses|msi|(?:donde|a donde) (?:deposito|pago|se paga|hago el pago)|transferencia)\b"
)
DELIVERY_TIME_RE = re.compile(
    r"\b(?:cuantos dias|cuanto tiempo|cuando llega|en cuanto llega|tiempo de entrega|tarda|demora|cuando me llega)\b"
)
SHIPPING_INCLUDED_RE = re.compile(
    r"\b(?:incluye (?:el )?envio|envio (?:gratis|incluido)|con envio incluido|ya incluye|"
    r"(?:costo|precio) (?:de|del) envio|cuanto (?:cuesta|sale|cobran) (?:de |el )?envio)\b"
)
SHIPPING_RE = re.compile(
    r"\b(?:envio|envios|envian|enviar|envias|hacen envios|mandan|llegan a|entregan|paqueteria)\b"
)
ASKING_IF_LOCAL_RE = re.compile(
    r"\b(?:(?:trabajan|estan|tienen|hay) (?:aqui |alla )?(?:tienda |local |sucursal )?en [a-z]+|"
    r"(?:pense|crei|pensaba|creia) que (?:estaban|eran|son) (?:de|en))\b"
)
LOCATION_INFO_RE = re.compile(
    r"\b(?:donde (?:estan|se ubican|quedan|se encuentran)|ubicacion|direccion|de donde son)\b"
)
PHYSICAL_VISIT_RE = re.compile(r"\b(?:fisicamente|en persona|ir a ver|verlo|visitarlos)\b")
LOCATION_MENTION_RE = re.compile(r"\b(?:vivo en|soy de|estoy en|me encuentro en|radico en)\b")
SHADE_QUESTION_RE = re.compile(
    r"\b(?:(?:que )?porcentajes? (?:de sombra|tienen|manejan|hay)|(?:que )?(?:sombra|porcentaje)s? "
    r"(?:tienen|manejan|hay|ofrecen)|cuanta sombra|nivel de sombra|grado de sombra|"
    r"diferencias? (?:entre|de) (?:los )?porcentajes?)\b"
)
PRICE_BY_METER_RE = re.compile(
    r"\b(?:(?:cuanto|precio|vale|cuesta) (?:el )?metro|(?:vendes|venden|manejan) (?:por )?metros?|"
    r"(?:comprar|vender) (?:por )?metros?)\b"
)
BULK_RE = re.compile(r"\b(?:descuento|rebaja|precio especial|precio (?:de )?mayoreo|mayoreo|por volumen)\b")
CATALOG_RE = re.compile(
    r"\b(?:(?:pongan|den|muestren|envien|pasame|pasen|listado?) (?:de )?(?:precios|medidas|opciones|tamanos)|"
    r"opciones disponibles|medidas estandares?|todas las medidas|lista completa|"
    r"que (?:medidas|tamanos|opciones) (?:tienen|manejan|hay|venden|ofrecen)|precios y medidas|medidas y precios)\b"
)
DIRECT_QUOTE_RE = re.compile(
    r"\b(?:cotizame|cotizamela|cotizala|me (?:la )?puedes? cotizar|puedes? cotizarme|dame cotizacion|"
    r"hazme (?:una )?cotizacion|necesito (?:una )?cotizacion)\b"
)
BARE_PRICE_RE = re.compile(r"^(?:precio|precios|costo|costos|info|informacion|cuanto cuesta|que precio tiene)$")
THANKS_RE = re.compile(r"\b(?:gracias|muy amable|adios|bye|nos vemos|hasta luego)\b")
GREETING_RE = re.compile(r"^(?:hola|buen(?:os|as)? (?:dias|tardes|noches)|buenas|que tal|hey|holi)\b")
INTEREST_RE = re.compile(r"\b(?:me interesa|estoy interesad[oa]|quiero informacion|mas informacion)\b")

MULTI_QUESTION_RES = (
    re.compile(r"\by (?:si|funciona|repele|tiempo|entrega|pago|forma|cuanto|donde|como)\b"),
    re.compile(r"\b(?:tambien|ademas)\b"),
    re.compile(r",\s*(?:y|si|tiempo de entrega|pago|forma de pago)\b"),
)


def is_multi_question(message: str) -> bool:
    """Compound messages ("¿hacen envíos? ¿y cuánto tarda?") that one FAQ answer would shortchange."""
    if not message:
        return False
    marks = max(message.count("?"), message.count("¿"))
    if marks >= 2:
        return True
    normalized = normalize_text(message)
    return any(pattern.search(normalized) for pattern in MULTI_QUESTION_RES)


@dataclass
class RouteContext:
    """Inputs shared by every handler for one message."""
    conversation: Conversation
    message: str
    entities: ExtractedEntities
    store_link: str = ""

    def __post_init__(self) -> None:
        self.normalized = normalize_text(self.message)
        self.multi_question = is_multi_question(self.message)

    @property
    def location(self) -> Optional[LocalityMatch]:
        return self.entities.location

    @property
    def carries_size(self) -> bool:
        # A size in the message makes it a quote request for the flow.
        return self.entities.dimensions is not None or bool(self.entities.all_dimensions)


@dataclass
class RouteResult:
    """Handler answer: a reply or a handoff request, plus the fields to persist."""
    intent: str
    response: Optional[BotResponse] = None
    handoff: Optional[HandoffOptions] = None
    updates: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IntentHandler:
    name: str
    fn: Callable[[RouteContext], Optional[RouteResult]]
    guarded: bool = True


def answer(intent: str, text: str, **updates: Any) -> RouteResult:
    fields = {"last_intent": intent, "unknown_count": 0}
    fields.update(updates)
    return RouteResult(intent=intent, response=BotResponse(text=text), updates=fields)


def immediate_handoff(intent: str, reason: str, prefix: str, notification: Optional[str] = None) -> RouteResult:
    return RouteResult(
        intent=intent,
        handoff=HandoffOptions(
            reason=reason,
            response_prefix=prefix,
            skip_checklist=True,
            last_intent="human_handoff",
            notification_text=notification,
        ),
    )


def _location_fields(match: Optional[LocalityMatch]) -> Dict[str, Any]:
    if match is None:
        return {}
    return {"location": Location(city=match.city, state=match.state, zip_code=match.zip_code)}


def _place_name(match: LocalityMatch) -> str:
    return match.city or match.state or f"el C.P. {match.zip_code}"


class IntentRouter:
    """Flat first-match-wins handler list with the multi-question guard."""

    def __init__(self, link_tracker: LinkTracker, store_url: str = "", home_city: str = "Querétaro") -> None:
        self._link_tracker = link_tracker
        self._store_url = store_url
        self._home_city = normalize_text(home_city)
        self._handlers: List[IntentHandler] = self._build_handlers()

    @property
    def handlers(self) -> List[IntentHandler]:
        return list(self._handlers)

    def _build_handlers(self) -> List[IntentHandler]:
        return [
            IntentHandler("frustration", self._frustration, guarded=False),
            IntentHandler("human_request", self._human_request, guarded=False),
            IntentHandler("price_confusion", self._price_confusion, guarded=False),
            IntentHandler("out_of_stock", self._out_of_stock, guarded=False),
            IntentHandler("photo_claim", self._photo_claim),
            IntentHandler("weed_control", self._weed_control),
            IntentHandler("rain_waterproof", self._rain_waterproof),
            IntentHandler("store_link", self._store_link),
            IntentHandler("purchase_process", self._purchase_process),
            IntentHandler("where_to_buy", self._where_to_buy),
            IntentHandler("store_visit", self._store_visit),
            IntentHandler("structure", self._structure),
            IntentHandler("installation", self._installation),
            IntentHandler("eyelets", self._eyelets),
            IntentHandler("product_lifespan", self._lifespan),
            IntentHandler("pay_on_delivery", self._pay_on_delivery),
            IntentHandler("alternative_payment", self._alternative_payment),
            IntentHandler("payment", self._payment),
            IntentHandler("delivery_time", self._delivery_time),
            IntentHandler("shipping_included", self._shipping_included),
            IntentHandler("shipping", self._shipping),
            IntentHandler("asking_if_local", self._asking_if_local),
            IntentHandler("store_location", self._store_location),
            IntentHandler("city_provided", self._city_provided),
            IntentHandler("location_mentioned", self._location_mentioned),
            IntentHandler("shade_percentage", self._shade_percentage),
            IntentHandler("price_by_meter", self._price_by_meter),
            IntentHandler("bulk_discount", self._bulk_discount),
            IntentHandler("catalog_request", self._catalog_request),
            IntentHandler("direct_quote", self._direct_quote),
            IntentHandler("affirmative_after_quote", self._affirmative_after_quote),
            IntentHandler("thanks", self._thanks),
            IntentHandler("product_menu", self._product_menu),
        ]

    def route(self, conversation: Conversation, message: str, entities: ExtractedEntities) -> Optional[RouteResult]:
        """Purpose: Resolve a message against the global intents.
        Inputs/Outputs: Conversation, raw message and extracted entities; returns
            the first matching RouteResult, a combined multi-question answer, or None.
        Side Effects / State: None; results carry the fields to persist.
        Dependencies: Handler table, LinkTracker for store links.
        Failure Modes: A failing handler is logged and skipped; routing continues.
        If Removed: FAQs reach the flows, which only understand product specs.
        Testing Notes: "¿Hacen envíos? ¿Y cuánto tarda?" yields one combined
            answer; "¿hacen envíos?" alone yields the shipping answer.
        """
        # A suspended handoff owns the next reply.
        if conversation.pending_handoff is not None or not message or not message.strip():
            return None
        ctx = RouteContext(conversation=conversation, message=message, entities=entities)
        for handler in self._handlers:
            if handler.guarded and ctx.multi_question:
                continue
            result = self._run(handler, ctx)
            if result is not None:
                logger.info(
                    "router=matched conversation=%s intent=%s handoff=%s",
                    conversation.conversation_id,
                    result.intent,
                    result.handoff is not None,
                )
                return result
        if ctx.multi_question:
            return self._combined(ctx)
        return None

    def _run(self, handler: IntentHandler, ctx: RouteContext) -> Optional[RouteResult]:
        try:
            result = handler.fn(ctx)
        except Exception:
            logger.exception("router=handler_failed conversation=%s handler=%s", ctx.conversation.conversation_id, handler.name)
            return None
        if result is not None:
            result.updates.setdefault("last_intent", result.intent)
        return result

    def _combined(self, ctx: RouteContext) -> Optional[RouteResult]:
        """Stitch the answers of every guarded handler that matches a compound message."""
        parts: List[str] = []
        updates: Dict[str, Any] = {}
        intents: List[str] = []
        for handler in self._handlers:
            if not handler.guarded or handler.name in ("product_menu", "thanks", "affirmative_after_quote"):
                continue
            result = self._run(handler, ctx)
            if result is None or result.response is None or result.intent in intents:
                continue
            intents.append(result.intent)
            parts.append(TRAILING_QUESTION_RE.sub("", result.response.text).strip())
            updates.update({key: value for key, value in result.updates.items() if key != "last_intent"})
            if len(parts) >= MAX_COMBINED_ANSWERS:
                break
        if len(parts) < 2:
            logger.info(
                "router=multi_question_declined conversation=%s matches=%s", ctx.conversation.conversation_id, len(parts)
            )
            return None
        logger.info("router=combined conversation=%s intents=%s", ctx.conversation.conversation_id, ",".join(intents))
        updates["last_intent"] = "multi_question"
        updates["unknown_count"] = 0
        text = "\n\n".join(parts) + "\n\n¿Qué medida te interesa?"
        return RouteResult(intent="multi_question", response=BotResponse(text=text), updates=updates)

    def _tracked_store_link(self, ctx: RouteContext) -> str:
        if not self._store_url:
            return ""
        return self._link_tracker.track_link(
            ctx.conversation.conversation_id, self._store_url, {"product_name": "Tienda oficial"}
        )

    # Immediate handoffs ---------------------------------------------------------------

    def _frustration(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not FRUSTRATION_RE.search(ctx.normalized):
            return None
        return immediate_handoff(
            "frustration",
            "customer_frustrated",
            "Disculpa la confusión. Te comunico con un especialista para ayudarte mejor. ",
            "Cliente frustrado - necesita atención humana urgente",
        )

    def _human_request(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not HUMAN_REQUEST_RE.search(ctx.normalized):
            return None
        return immediate_handoff(
            "human_request", "customer_requested_human", "¡Claro! Te comunico con un especialista. "
        )

    def _price_confusion(self, ctx: RouteContext) -> Optional[RouteResult]:
        normalized = ctx.normalized
        confused = PRICE_CONFUSION_RE.search(normalized) or (
            PRICE_AMOUNT_RE.search(normalized) and IS_OTHER_RE.search(normalized)
        )
        if not confused:
            return None
        return immediate_handoff(
            "price_confusion",
            "price_confusion",
            "Disculpa la confusión con los precios. Te comunico con un especialista para verificar y darte el precio correcto. ",
            "Cliente confundido por precios - verificar cotización",
        )

    def _out_of_stock(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not OUT_OF_STOCK_RE.search(ctx.normalized):
            return None
        return immediate_handoff(
            "out_of_stock",
            "out_of_stock_reported",
            "Gracias por avisarnos. Déjame verificar la disponibilidad con nuestro equipo. ",
            "Cliente reporta producto agotado - verificar inventario o link",
        )

    # Product education ----------------------------------------------------------------

    def _photo_claim(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not (PHOTO_CLAIM_RE.search(ctx.normalized) and PHOTO_WORD_RE.search(ctx.normalized)):
            return None
        return answer(
            "photo_claim",
            "No me llegó la foto por este medio. Por favor envíala a nuestro WhatsApp para poder verla:\n\n"
            f"💬 {WHATSAPP_LINK}",
        )

    def _weed_control(self, ctx: RouteContext) -> Optional[RouteResult]:
        normalized = ctx.normalized
        if not WEED_RE.search(normalized):
            return None
        explicit = re.search(r"\b(?:quiero|necesito|busco|ocupo|tienen|venden|manejan) (?:malla )?(?:antimaleza|ground ?cover)\b", normalized)
        if WEED_CONTEXT_RE.search(normalized) and not explicit:
            return None
        if WATER_RE.search(normalized):
            text = (
                "La malla sombra es PERMEABLE, permite que el agua pase a través de ella.\n\n"
                "Para control de maleza tenemos un producto específico: la MALLA ANTIMALEZA (Ground Cover), "
                "también permeable y diseñada para bloquear el crecimiento de maleza."
            )
        else:
            text = (
                "¡Tenemos justo lo que necesitas! Contamos con MALLA ANTIMALEZA (Ground Cover), "
                "un producto especializado para bloquear el crecimiento de maleza."
            )
        link = self._tracked_store_link(ctx)
        if link:
            text += f"\n\nPuedes ver todas las medidas en nuestra Tienda Oficial:\n\n{link}"
        return answer("weed_control", text + "\n\n¿Qué medida necesitas para tu proyecto?")

    def _rain_waterproof(self, ctx: RouteContext) -> Optional[RouteResult]:
        normalized = ctx.normalized
        if not WATER_RE.search(normalized) or WEED_RE.search(normalized):
            return None
        if LOCATION_CONTEXT_RE.search(normalized) or ctx.location is not None:
            return None
        if ctx.conversation.last_intent == "rain_waterproof_question":
            return RouteResult(
                intent="rain_waterproof_question",
                handoff=HandoffOptions(
                    reason="repeated_waterproof_question",
                    response_prefix="Parece que hay algo que no estoy entendiendo bien. Déjame contactar a un especialista. ",
                    skip_checklist=True,
                    last_intent="human_handoff",
                ),
            )
        return answer(
            "rain_waterproof_question",
            "No, la malla sombra no es impermeable. Es un tejido permeable que deja pasar el agua y el aire.\n\n"
            "Su función principal es reducir la intensidad del sol ☀️ y dar sombra, no proteger de la lluvia.\n\n"
            "¿Te puedo ayudar con algo más sobre la malla sombra?",
        )

    def _eyelets(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not EYELETS_RE.search(ctx.normalized):
            return None
        return answer(
            "eyelets_question",
            "Sí, nuestra malla confeccionada viene con ojillos reforzados cada 50cm en todo el perímetro "
            "para facilitar la instalación.\n\nSolo necesitas amarrarla o usar ganchos.\n\n¿Qué medida te interesa?",
        )

    def _lifespan(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not LIFESPAN_RE.search(ctx.normalized) or DELIVERY_WORD_RE.search(ctx.normalized):
            return None
        return answer(
            "product_lifespan",
            "La malla sombra reforzada tiene una vida útil de 8 a 10 años aproximadamente, dependiendo de:\n\n"
            "• Exposición al sol y clima\n• Tensión de la instalación\n• Mantenimiento (limpieza ocasional)\n\n"
            "¿Qué medida te interesa?",
        )

    def _shade_percentage(self, ctx: RouteContext) -> Optional[RouteResult]:
        # A concrete percentage ("al 80%") is a spec value the flow consumes.
        if ctx.entities.percentage is not None or not SHADE_QUESTION_RE.search(ctx.normalized):
            return None
        listed = ", ".join(f"{pct}%" for pct in STANDARD_PERCENTAGES)
        return answer(
            "shade_percentage_question",
            f"Manejamos malla sombra en {listed}: desde 35% (sombra ligera) hasta 90% (máxima protección).\n\n"
            "El más popular es el 80%, da buena sombra sin oscurecer demasiado.\n\n¿Qué porcentaje te interesa?",
        )

    def _structure(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not STRUCTURE_RE.search(ctx.normalized):
            return None
        return answer(
            "structure_question",
            "No, mil disculpas, nosotros solo fabricamos la malla 🌿\n\nNo vendemos ni instalamos estructuras.\n\n"
            "¿Te puedo ayudar con alguna medida de malla?",
        )

    def _installation(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not INSTALLATION_RE.search(ctx.normalized):
            return None
        return answer(
            "installation",
            "No, mil disculpas, no ofrecemos servicio de instalación ni de medición 🔧\n\n"
            "Vendemos la malla sombra y la enviamos a tu domicilio.\n\n¿Ya tienes la medida que necesitas?",
        )

    # Purchase and payment ----------------------------------------------------------------

    def _store_link(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not STORE_LINK_RE.search(ctx.normalized):
            return None
        link = self._tracked_store_link(ctx)
        text = "¡Claro! Esta es nuestra Tienda Oficial en Mercado Libre"
        text += f":\n\n{link}" if link else "."
        return answer("store_link_requested", text + "\n\n¿Qué medida te interesa?")

    def _purchase_process(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not PURCHASE_PROCESS_RE.search(ctx.normalized) or WHERE_TO_BUY_RE.search(ctx.normalized):
            return None
        return answer(
            "purchase_process",
            "La compra se hace en Mercado Libre:\n\n"
            "1. Abre el link de la medida que te interesa\n"
            "2. Da clic en \"Comprar ahora\"\n"
            "3. Paga con tarjeta, efectivo en OXXO o a meses sin intereses\n\n"
            "El envío está incluido y te llega a domicilio 📦\n\n¿Qué medida necesitas?",
        )

    def _where_to_buy(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not (WHERE_TO_BUY_RE.search(ctx.normalized) and MEASURE_WORD_RE.search(ctx.normalized)):
            return None
        link = self._tracked_store_link(ctx)
        text = "Puedes comprar en nuestra tienda digital en Mercado Libre 🛒"
        if link:
            text += f"\n\n{link}"
        return answer("where_to_buy_with_measures", text + "\n\n¿Qué medida necesitas? 📐")

    def _store_visit(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not STORE_VISIT_RE.search(ctx.normalized):
            return None
        return answer(
            "store_visit",
            "¡Sí! Tenemos venta al público en nuestra bodega en Querétaro 🏪\n\n"
            f"📍 {BUSINESS_ADDRESS}\n📞 {BUSINESS_PHONE}\n🕓 {BUSINESS_HOURS}\n\n"
            "Puedes venir a ver el producto y pagar en efectivo o con tarjeta.\n\n¿Qué medida te interesa?",
        )

    def _pay_on_delivery(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not PAY_ON_DELIVERY_RE.search(ctx.normalized) or ctx.carries_size:
            return None
        return answer(
            "pay_on_delivery",
            "El pago es 100% POR ADELANTADO en Mercado Libre al momento de hacer tu pedido.\n\n"
            "❌ No manejamos pago contra entrega.\n\n"
            "¿Te paso el link para que puedas hacer tu pedido?",
        )

    def _alternative_payment(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not ALT_PAYMENT_RE.search(ctx.normalized) or ctx.carries_size:
            return None
        return answer(
            "payment",
            "La única alternativa al pago por Mercado Libre es venir a nuestra bodega en Querétaro "
            "y pagar en efectivo o con tarjeta.\n\n"
            f"📍 {BUSINESS_ADDRESS}\n📞 {BUSINESS_PHONE}\n🕓 {BUSINESS_HOURS}\n\n¿Te encuentras en Querétaro?",
        )

    def _payment(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not PAYMENT_RE.search(ctx.normalized) or ctx.carries_size:
            return None
        return answer(
            "payment",
            "Puedes pagar de forma segura a través de Mercado Libre:\n\n"
            "• Tarjeta de crédito/débito\n• Transferencia bancaria\n• Efectivo en OXXO/7-Eleven\n"
            "• Hasta 12 meses sin intereses\n\n¿Qué producto te interesa?",
        )

    def _bulk_discount(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not BULK_RE.search(ctx.normalized):
            return None
        return RouteResult(
            intent="bulk_discount",
            handoff=HandoffOptions(
                reason="bulk_discount_inquiry",
                response_prefix="Para pedidos de mayoreo manejamos precios especiales. ",
                last_intent="bulk_discount",
            ),
        )

    def _direct_quote(self, ctx: RouteContext) -> Optional[RouteResult]:
        # With dimensions the flow quotes directly.
        if not DIRECT_QUOTE_RE.search(ctx.normalized) or ctx.entities.dimensions is not None:
            return None
        if ctx.conversation.current_flow:
            return None
        return answer(
            "direct_quote_request",
            "¡Con gusto te cotizo! ¿Qué producto y medida necesitas?\n\n"
            "• Malla sombra confeccionada (ej. 4x6m)\n• Rollo de 100m\n• Borde separador",
        )

    # Shipping and locality -----------------------------------------------------------------

    def _delivery_time(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not DELIVERY_TIME_RE.search(ctx.normalized) or ctx.carries_size:
            return None
        return answer(
            "delivery_time",
            "Tiempos de entrega:\n\n• CDMX y zona metropolitana: 1-2 días hábiles\n"
            "• Interior de la República: 3-5 días hábiles\n\n"
            "El pago se realiza en Mercado Libre al momento de hacer el pedido.\n\n¿Qué medida te interesa?",
        )

    def _shipping_included(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not SHIPPING_INCLUDED_RE.search(ctx.normalized) or ctx.carries_size:
            return None
        return answer(
            "shipping_included",
            "¡Sí! El envío está incluido en el precio o se calcula automáticamente en Mercado Libre "
            "según tu ubicación.\n\nEn la mayoría de los casos el envío es gratis.",
        )

    def _shipping(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not SHIPPING_RE.search(ctx.normalized) or ctx.carries_size:
            return None
        match = ctx.location
        if match is not None:
            return answer(
                "shipping",
                f"¡Sí! Enviamos a {_place_name(match)} y a todo el país a través de Mercado Libre.\n\n"
                "El envío está incluido en la mayoría de los productos.\n\n¿Qué medida te interesa?",
                **_location_fields(match),
            )
        conversation = ctx.conversation
        if conversation.current_flow == "roll":
            return answer(
                "awaiting_zipcode",
                "Enviamos a todo el país.\n\nPara rollos y pedidos de mayoreo necesitamos tu código postal "
                "para calcular el envío.\n\n¿Me lo compartes?",
            )
        return answer(
            "shipping",
            "Enviamos a todo el país.\n\nEn rollos de malla sombra y pedidos de mayoreo necesitamos tu código "
            "postal para calcular el envío; en los demás productos el envío va incluido por Mercado Libre.\n\n"
            "¿Qué producto te interesa?",
        )

    def _is_home(self, match: Optional[LocalityMatch]) -> bool:
        if match is None or not self._home_city:
            return False
        return any(value and normalize_text(value) == self._home_city for value in (match.city, match.state))

    def _asking_if_local(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not ASKING_IF_LOCAL_RE.search(ctx.normalized):
            return None
        match = ctx.location
        if match is None:
            return None
        if self._is_home(match):
            text = (
                "Sí, estamos en Querétaro 🏡. Nuestra bodega está en el Microparque Industrial Navex Park.\n\n"
                "Además, enviamos a todo México a través de Mercado Libre.\n\n¿Qué medida te interesa?"
            )
        else:
            text = (
                f"Estamos ubicados en Querétaro, pero enviamos a {_place_name(match)} y todo México "
                "sin problema a través de Mercado Libre 📦🚚.\n\n¿Qué medida necesitas?"
            )
        return answer("asking_if_local", text, **_location_fields(match))

    def _store_location(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not LOCATION_INFO_RE.search(ctx.normalized):
            return None
        if PHYSICAL_VISIT_RE.search(ctx.normalized):
            text = (
                "Nos ubicamos en Querétaro. Somos principalmente tienda en línea, pero si gustas visitarnos "
                f"puedes contactarnos para coordinar:\n\n📍 {BUSINESS_ADDRESS}\n📞 {BUSINESS_PHONE}\n"
                f"💬 WhatsApp: {WHATSAPP_LINK}"
            )
        else:
            text = (
                "Estamos ubicados en Querétaro pero enviamos a todo el país.\n\n"
                f"📍 {BUSINESS_ADDRESS}\n🕓 {BUSINESS_HOURS}\n📞 {BUSINESS_PHONE}\n\n"
                "¿Te gustaría ver nuestros productos?"
            )
        return answer("store_location", text)

    def _city_provided(self, ctx: RouteContext) -> Optional[RouteResult]:
        # A bare place name or postal code right after a shipping/location question.
        match = ctx.location
        if match is None:
            return None
        if ctx.conversation.last_intent not in ("shipping", "awaiting_zipcode", "store_location", "city_provided"):
            return None
        if len(ctx.normalized.split()) > 6:
            return None
        return answer(
            "city_provided",
            f"¡Perfecto! Sí tenemos cobertura en {_place_name(match)} 📦\n\n¿Qué medida te interesa?",
            **_location_fields(match),
        )

    def _location_mentioned(self, ctx: RouteContext) -> Optional[RouteResult]:
        match = ctx.location
        if match is None or not LOCATION_MENTION_RE.search(ctx.normalized):
            return None
        # "soy de Monterrey, necesito 4x6" keeps going to the flow after storing the place.
        if ctx.entities.dimensions is not None or ctx.entities.length_m is not None:
            return None
        return answer(
            "city_provided",
            f"¡Sí! Enviamos a {_place_name(match)} a través de Mercado Libre.\n\n"
            "¿Qué medida de malla sombra necesitas?",
            **_location_fields(match),
        )

    # Catalog-wide questions -------------------------------------------------------------------

    def _price_by_meter(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not PRICE_BY_METER_RE.search(ctx.normalized):
            return None
        return answer(
            "price_by_meter",
            "No vendemos por metro suelto; manejamos:\n\n"
            "• Malla confeccionada en medidas estándar (ej. 3x4m, 4x6m)\n"
            "• Rollos completos de 100m (2.10m o 4.20m de ancho)\n\n"
            "¿Te interesa una medida confeccionada o un rollo?",
        )

    def _catalog_request(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not CATALOG_RE.search(ctx.normalized):
            return None
        link = self._tracked_store_link(ctx)
        text = "Tenemos malla confeccionada desde 2x2m hasta 7x10m, rollos de 100m y borde separador."
        if link:
            text += f"\n\nPuedes ver todas las medidas y precios en nuestra Tienda Oficial:\n{link}"
        return answer("catalog_request", text + "\n\n¿Qué medida te interesa?")

    def _affirmative_after_quote(self, ctx: RouteContext) -> Optional[RouteResult]:
        # Proposals belong to the flow; this only repeats a single quoted link.
        conversation = ctx.conversation
        if conversation.pending_proposal is not None or not AFFIRMATIVE_RE.match(ctx.normalized):
            return None
        if THANKS_RE.search(ctx.normalized) or len(ctx.normalized.split()) > 4:
            return None
        quoted = conversation.quote_context.products
        if len(quoted) != 1:
            return None
        item = quoted[0]
        return answer(
            "affirmative_link_provided",
            f"Te dejo el link a esa medida ({item.display_text}):\n\n{item.url}\n\n"
            "Estamos disponibles para cualquier información adicional.",
        )

    def _thanks(self, ctx: RouteContext) -> Optional[RouteResult]:
        if not THANKS_RE.search(ctx.normalized) or ctx.entities.dimensions is not None:
            return None
        return answer("thanks", "¡Con gusto! Aquí estamos para lo que necesites 🌿")

    def _product_menu(self, ctx: RouteContext) -> Optional[RouteResult]:
        # Cold start: nothing in the message points at a family yet.
        conversation = ctx.conversation
        if conversation.current_flow or detect_family(ctx.message, ctx.entities):
            return None
        normalized = ctx.normalized
        if not (GREETING_RE.match(normalized) or BARE_PRICE_RE.match(normalized) or INTEREST_RE.search(normalized)):
            return None
        if ctx.entities.length_m is not None:
            return None
        return answer("product_menu", PRODUCT_MENU_TEXT)
