"""Cut-to-size panel family (malla sombra confeccionada).

Stages: awaiting_dimensions -> complete. Percentage is optional because the
panel line is sold at its catalog lineage percentage; a different percentage is
a navigation request, not a missing field.
"""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

from ..catalog import ProductNode
from ..entity_extractor import Dimensions
from ..models import PanelSpec
from ..product_tree import dimensions_match
from ..size_matcher import find_alternative, find_exact, find_nearest_by_area
from ..utils import format_meters, format_money
from .base import (
    MAX_LISTED_OPTIONS,
    PRICE_QUESTION_RE,
    STANDARD_PERCENTAGES,
    FlowContext,
    FlowMachine,
    FlowOutcome,
    FlowRule,
    Stage,
    floor_fractional,
    reply,
    size_label,
)

CUSTOM_ORDER_MIN_SIDE_M = 10.0
SHAPE_RE = re.compile(r"\b(?:triangul\w*|circular|circulo|redond\w*|ovalad\w*|hexagon\w*)\b")
PHOTO_RE = re.compile(r"\b(?:fotos?|imagen(?:es)?|colores|que color(?:es)?|en que color)\b")
ACCESSORY_RE = re.compile(r"\b(?:cuerdas?|lazos?|tensores?|mecate|kit de instalacion|con que se instala)\b")
QUOTE_FOOTER = "Ahí puedes ver el precio y comprar. El envío está incluido 📦\n\n¿Necesitas algo más?"


class PanelFlow(FlowMachine):
    family = "panel"
    log_name = "meshbot.flows.panel"
    root_keywords = ("confeccionada",)
    default_text = "¿Te puedo ayudar con otra medida o con algo más?"

    def build_rules(self) -> List[FlowRule]:
        awaiting = frozenset({Stage.AWAITING_DIMENSIONS})
        complete = frozenset({Stage.COMPLETE})
        return self.proposal_rules(10) + [
            FlowRule("duplicate_quote", self._is_duplicate_quote, self.confirm_quote, 20),
            FlowRule("nonstandard_percentage", self.nonstandard_percentage, self.escalate_nonstandard_percentage, 30),
            FlowRule("special_shape", lambda ctx: bool(SHAPE_RE.search(ctx.normalized)), self.escalate_shape, 31),
            FlowRule("photo_request", lambda ctx: bool(PHOTO_RE.search(ctx.normalized)), self.answer_photos, 40),
            FlowRule(
                "accessory_question", lambda ctx: bool(ACCESSORY_RE.search(ctx.normalized)), self.answer_accessory, 41
            ),
            FlowRule("multi_size", lambda ctx: len(ctx.entities.all_dimensions) > 1, self.quote_batch, 42),
            FlowRule("accumulate", lambda ctx: True, self.accumulate, 50),
            FlowRule("percentage_switch", self._wants_other_percentage, self.switch_percentage, 55),
            FlowRule(
                "area_suggestion",
                lambda ctx: bool(ctx.entities.area_m2) and ctx.entities.dimensions is None,
                self.suggest_by_area,
                60,
                stages=awaiting,
            ),
            FlowRule("greeting", lambda ctx: ctx.entered, self.greet, 70, stages=awaiting),
            FlowRule("ask_dimensions", self._should_ask_dimensions, self.ask_dimensions, 80, stages=awaiting),
            FlowRule(
                "complete",
                lambda ctx: bool(ctx.changed & {"dimensions", "percentage", "quantity"}),
                self.complete,
                90,
                stages=complete,
            ),
        ]

    def empty_spec(self) -> PanelSpec:
        return PanelSpec()

    def compute_stage(self, spec: Optional[PanelSpec]) -> Stage:
        if spec is None or spec.width is None or spec.height is None:
            return Stage.AWAITING_DIMENSIONS
        return Stage.COMPLETE

    def spec_key(self, ctx: FlowContext) -> Optional[str]:
        spec = ctx.spec
        if spec is None or spec.width is None or spec.height is None:
            return None
        return f"{format_meters(spec.width)}x{format_meters(spec.height)}"

    def stall_text(self, ctx: FlowContext) -> str:
        if self.compute_stage(ctx.spec) == Stage.AWAITING_DIMENSIONS:
            return "Para darte el precio necesito la medida 📐\n\n¿Qué área buscas cubrir? (ej: 4x3 metros)"
        return self.default_text

    # Guards ------------------------------------------------------------------------------

    def _is_duplicate_quote(self, ctx: FlowContext) -> bool:
        if not PRICE_QUESTION_RE.search(ctx.normalized):
            return False
        if ctx.entities.dimensions is not None or ctx.entities.all_dimensions:
            return False
        context = ctx.conversation.quote_context
        key = self.spec_key(ctx)
        return bool(context.products) and key is not None and context.dimensions_key == key

    def _wants_other_percentage(self, ctx: FlowContext) -> bool:
        pct = ctx.entities.percentage
        if pct not in STANDARD_PERCENTAGES or ctx.poi is None:
            return False
        return self.deps.navigator.lineage_percentage(ctx.poi.node_id) != pct

    def _should_ask_dimensions(self, ctx: FlowContext) -> bool:
        return bool(PRICE_QUESTION_RE.search(ctx.normalized)) or bool(ctx.changed) or "malla" in ctx.normalized

    # Actions -----------------------------------------------------------------------------

    def confirm_quote(self, ctx: FlowContext) -> FlowOutcome:
        products = ctx.conversation.quote_context.products
        if len(products) == 1:
            item = products[0]
            return reply(f"Claro, la malla de {item.display_text} queda en {format_money(item.price)}:\n\n{item.url}\n\n{QUOTE_FOOTER}")
        lines = [f"• {item.display_text}: {format_money(item.price)}\n{item.url}" for item in products]
        return reply("Claro, te repito los precios:\n\n" + "\n\n".join(lines) + "\n\n¿Cuál te interesa?")

    def escalate_shape(self, ctx: FlowContext) -> FlowOutcome:
        return self.escalate(
            ctx,
            reason="special_shape",
            response_prefix="Las formas especiales se fabrican a la medida. ",
            specs_text="Malla con forma especial. ",
        )

    def answer_photos(self, ctx: FlowContext) -> FlowOutcome:
        store = self.deps.store_url
        link = f"\n\nPuedes ver fotos de todas las medidas en nuestra tienda:\n{store}" if store else ""
        return reply(
            "La malla sombra confeccionada la manejamos en color beige, con argollas y refuerzo en todo el perímetro."
            f"{link}\n\n¿Qué medida te interesa?"
        )

    def answer_accessory(self, ctx: FlowContext) -> FlowOutcome:
        return reply(
            "La malla confeccionada incluye argollas en todo el perímetro para instalarla. "
            "La cuerda o lazo no viene incluida y se consigue por separado.\n\n¿Qué medida necesitas?"
        )

    def greet(self, ctx: FlowContext) -> FlowOutcome:
        return reply(
            "¡Hola! Tenemos malla sombra confeccionada lista para instalar 🌿\n\n"
            "Los precios dependen de la medida.\n\n¿Qué medida necesitas? (ej: 4x3 metros)"
        )

    def ask_dimensions(self, ctx: FlowContext) -> FlowOutcome:
        if PRICE_QUESTION_RE.search(ctx.normalized):
            prices = [node.price for node in self.candidates(ctx) if node.price is not None]
            if prices:
                return reply(
                    f"Los precios van desde {format_money(min(prices))} hasta {format_money(max(prices))} "
                    "dependiendo de la medida 📐\n\n¿Qué medida necesitas? (ej: 4x3 metros)"
                )
        return reply(self.stall_text(ctx))

    def accumulate(self, ctx: FlowContext) -> None:
        """Purpose: Fold this message's entities into the running panel spec.
        Inputs/Outputs: ctx; always returns None so later rules see the merged spec.
        Side Effects / State: ctx.spec, ctx.changed; a new size clears any pending
            proposal since it supersedes the offered alternative.
        Dependencies: classifier-supplied entities first, then extractor output
            (explicit/soft/labeled pairs, square follow-ups already resolved by the
            extractor's allow_single pass).
        Failure Modes: Non-numeric classifier values are ignored.
        If Removed: Nothing the customer says reaches the completion step.
        Testing Notes: A later "al 80%" keeps previously given dimensions.
        """
        # Classifier entities win over regex; a fresh size always counts as a change.
        fields = {}
        dims = self._classifier_dimensions(ctx) or ctx.entities.dimensions
        if dims is not None:
            fields.update(
                width=dims.width,
                height=dims.height,
                user_order=dims.user_order,
                converted_from_feet=dims.converted_from_feet,
            )
            ctx.changed.add("dimensions")
            if ctx.conversation.pending_proposal is not None:
                ctx.set(pending_proposal=None)
        percentage = self._as_int(self.classifier_value(ctx, "percentage")) or ctx.entities.percentage
        if percentage in STANDARD_PERCENTAGES:
            fields["percentage"] = percentage
        fields["color"] = self.classifier_value(ctx, "color") or ctx.entities.color
        fields["quantity"] = self._as_int(self.classifier_value(ctx, "quantity")) or ctx.entities.quantity
        self.merge(ctx, **fields)
        return None

    def suggest_by_area(self, ctx: FlowContext) -> Optional[FlowOutcome]:
        area = ctx.entities.area_m2
        product = find_nearest_by_area(self._filtered_candidates(ctx)[0], area)
        if product is None or abs(product.area - area) > self.deps.area_tolerance_m2:
            return None
        quoted = self.quote_product(ctx, product, self.display_text(product))
        if quoted is None:
            return self.missing_listing(ctx, product)
        requested_key = f"{format_meters(area)}m2"
        self.store_quotes(ctx, [quoted], requested_key)
        self.remember_proposal(ctx, "nearest", product, requested_key)
        return reply(
            f"Para cubrir {format_meters(area)} m² te recomiendo la malla de {quoted.display_text} "
            f"({format_meters(product.area)} m²) por {format_money(product.price)}.\n\n¿Te interesa?"
        )

    def quote_batch(self, ctx: FlowContext) -> FlowOutcome:
        """Quote every size in a multi-size message, one priced line per size."""
        candidates, note = self._filtered_candidates(ctx)
        quoted = []
        lines = []
        keys = []
        for dims in ctx.entities.all_dimensions[:MAX_LISTED_OPTIONS]:
            label = size_label(dims.width, dims.height)
            keys.append(dims.normalized)
            product = find_exact(candidates, dims.width, dims.height)
            if product is None:
                lines.append(f"• {label}: no la manejamos como medida estándar")
                continue
            item = self.quote_product(ctx, product, label)
            if item is None:
                lines.append(f"• {label}: por confirmar con un especialista")
                continue
            quoted.append(item)
            lines.append(f"• {label}: {format_money(item.price)}\n{item.url}")
        if not quoted:
            return self.escalate(
                ctx,
                reason=f"no_standard_size {' / '.join(keys)}",
                specs_text=f"Medidas solicitadas: {', '.join(keys)}. ",
                response_prefix="Esas medidas se fabrican a la medida. ",
            )
        first = ctx.entities.all_dimensions[0]
        self.merge(ctx, width=first.width, height=first.height, user_order=first.user_order)
        self.store_quotes(ctx, quoted, "+".join(keys))
        return reply(f"{note}Te paso los precios:\n\n" + "\n\n".join(lines) + "\n\n¿Cuál te interesa?")

    def complete(self, ctx: FlowContext) -> FlowOutcome:
        """Purpose: Answer a fully specified panel request.
        Inputs/Outputs: ctx with width/height on the spec; returns a quote, an
            alternative proposal, a list of subtree sizes, or a handoff request.
        Side Effects / State: quote context, pending proposal, POI lock and the
            fractional_request marker on the spec.
        Dependencies: floor_fractional, CatalogNavigator.check_variant_exists,
            size_matcher.find_exact/find_alternative.
        Failure Modes: Sellable leaves without link or price escalate; a repeated
            fractional request escalates instead of re-offering.
        If Removed: Panels can never be quoted.
        Testing Notes: 9x9 against a 7x10 maximum proposes two pieces of 7x10.
        """
        # Fractional first, then custom size, then subtree lookup and alternatives.
        spec = ctx.spec
        dims = Dimensions(
            width=spec.width,
            height=spec.height,
            user_order=spec.user_order or f"{format_meters(spec.width)}x{format_meters(spec.height)}",
            converted_from_feet=spec.converted_from_feet,
        )
        key = dims.normalized
        if dims.fractional:
            if spec.fractional_request == key:
                return self.escalate(
                    ctx,
                    reason=f"fractional_insistence {key}",
                    response_prefix=f"Entiendo que necesitas exactamente {dims.user_order} m; esa medida se fabrica a la medida. ",
                    specs_text=f"Malla de {key} m. ",
                )
            self.merge(ctx, fractional_request=key)
            return self._offer_floored(ctx, dims, floor_fractional(dims))

        if dims.width >= CUSTOM_ORDER_MIN_SIDE_M and dims.height >= CUSTOM_ORDER_MIN_SIDE_M:
            return self._custom_order(ctx, key)

        candidates, note = self._filtered_candidates(ctx)
        product = self._find_in_scope(ctx, candidates, dims.width, dims.height)
        if product is not None:
            return self._quote_exact(ctx, product, dims, note)
        return self._offer_alternative(ctx, candidates, dims, key, note)

    def apply_dimensions(self, ctx: FlowContext, width: float, height: float) -> Optional[FlowOutcome]:
        self.merge(
            ctx,
            width=min(width, height),
            height=max(width, height),
            user_order=f"{format_meters(width)}x{format_meters(height)}",
        )
        ctx.changed.add("dimensions")
        return self.complete(ctx)

    def narrow_to_request(self, ctx: FlowContext, pool: List[ProductNode]) -> List[ProductNode]:
        spec = ctx.spec
        if spec is None or spec.width is None or spec.height is None:
            return pool
        return [
            node for node in pool if node.dimensions and dimensions_match(spec.width, spec.height, *node.dimensions)
        ]

    # Helpers -----------------------------------------------------------------------------

    def _filtered_candidates(self, ctx: FlowContext) -> Tuple[List[ProductNode], str]:
        # Percentage lives on ancestors; a miss keeps the unfiltered set with a note.
        candidates = self.candidates(ctx)
        pct = ctx.spec.percentage if ctx.spec is not None else None
        if not pct or not candidates:
            return candidates, ""
        if ctx.poi is not None and self.deps.navigator.lineage_percentage(ctx.poi.node_id) == pct:
            return candidates, ""
        filtered = self.deps.navigator.filter_by_lineage(candidates, f"{pct}%")
        if filtered.applied:
            return filtered.products, ""
        return filtered.products, f"La malla confeccionada no la manejamos al {pct}%; te paso la que tenemos. "

    def _find_in_scope(
        self, ctx: FlowContext, candidates: List[ProductNode], width: float, height: float
    ) -> Optional[ProductNode]:
        if ctx.poi is None:
            return find_exact(candidates, width, height)
        check = self.deps.navigator.check_variant_exists(ctx.poi, width, height)
        if check.exists and check.product in candidates:
            return check.product
        if check.reason in ("poi_not_found", "error"):
            self.logger.warning(
                "poi=dropped conversation=%s node=%s reason=%s", ctx.conversation_id, ctx.poi.node_id, check.reason
            )
            ctx.poi = None
            return find_exact(self.candidates(ctx), width, height)
        return find_exact(candidates, width, height)

    def _lock(self, ctx: FlowContext, product: ProductNode) -> None:
        if ctx.poi is None:
            ctx.poi = self.deps.navigator.lock_poi(product.id)

    def _quote_exact(self, ctx: FlowContext, product: ProductNode, dims: Dimensions, note: str) -> FlowOutcome:
        spec = ctx.spec
        wholesale = self.wholesale_outcome(ctx, product, spec.quantity)
        if wholesale is not None:
            return wholesale
        self._lock(ctx, product)
        previous = self.already_quoted(ctx, product.id, dims.normalized)
        if previous is not None:
            outcome = reply(
                f"Sí, es la misma que te cotizé: la malla de {previous.display_text} queda en "
                f"{format_money(previous.price)}.\n\n{previous.url}\n\n¿Te ayudo con algo más?"
            )
            outcome.rule = "confirm_quote"
            return outcome
        quoted = self.quote_product(ctx, product, size_label(dims.width, dims.height))
        if quoted is None:
            return self.missing_listing(ctx, product)
        self.store_quotes(ctx, [quoted], dims.normalized)
        ctx.set(pending_proposal=None)
        feet = ""
        if spec.converted_from_feet:
            feet = f"Convertí tus medidas de pies a metros ({dims.user_order} m). "
        lead = f"Para {spec.quantity} piezas, tenemos" if spec.quantity and spec.quantity > 1 else "Tenemos"
        percentage = self.deps.navigator.lineage_percentage(product.id)
        pct_text = f" al {percentage}%" if percentage else ""
        return reply(
            f"¡Perfecto! {note}{feet}{lead} la malla de {dims.user_order} m{pct_text} por "
            f"{format_money(product.price)}:\n\n{quoted.url}\n\n{QUOTE_FOOTER}"
        )

    def _offer_floored(self, ctx: FlowContext, dims: Dimensions, floored: Dimensions) -> FlowOutcome:
        if floored.width >= CUSTOM_ORDER_MIN_SIDE_M and floored.height >= CUSTOM_ORDER_MIN_SIDE_M:
            return self._custom_order(ctx, dims.normalized)
        candidates, _ = self._filtered_candidates(ctx)
        product = self._find_in_scope(ctx, candidates, floored.width, floored.height)
        if product is None:
            return self.escalate(
                ctx,
                reason=f"fractional_no_standard {dims.normalized}",
                response_prefix=f"La medida {dims.user_order} m se fabrica a la medida. ",
                specs_text=f"Malla de {dims.normalized} m. ",
            )
        quoted = self.quote_product(ctx, product, size_label(floored.width, floored.height))
        if quoted is None:
            return self.missing_listing(ctx, product)
        self.store_quotes(ctx, [quoted], dims.normalized)
        self.remember_proposal(ctx, "floored", product, dims.normalized)
        return reply(
            "📏 Solo manejamos medidas en metros completos.\n\n"
            f"Para {dims.user_order} m te ofrezco {quoted.display_text} por {format_money(product.price)}.\n\n"
            "¿Te interesa esa medida?"
        )

    def _offer_alternative(
        self, ctx: FlowContext, candidates: List[ProductNode], dims: Dimensions, key: str, note: str
    ) -> FlowOutcome:
        """Cover, bundle or nearest proposal; escalate or list subtree sizes otherwise."""
        match = find_alternative(candidates, dims.width, dims.height, self.deps.area_tolerance_m2)
        if match.kind == "none":
            if ctx.poi is not None and candidates:
                ranked = sorted(candidates, key=lambda node: abs((node.area or 0) - dims.area))
                return self.list_options(
                    ctx,
                    ranked,
                    intro=f"No tenemos {dims.user_order} m en {ctx.poi.node_name}. Estas son las medidas disponibles:",
                )
            return self._custom_order(ctx, key)

        product = match.product
        pieces = match.pieces
        quoted = self.quote_product(ctx, product, self.display_text(product, pieces), pieces)
        if quoted is None:
            return self.missing_listing(ctx, product)
        self.store_quotes(ctx, [quoted], key)
        self.remember_proposal(ctx, match.kind, product, key, pieces)
        label = self.display_text(product)
        if match.kind == "cover":
            text = (
                f"No manejamos {dims.user_order} m como medida estándar. La medida que la cubre es "
                f"{label} por {format_money(product.price)}.\n\n¿Te interesa?"
            )
        elif match.kind == "bundle":
            text = (
                f"La medida más grande que manejamos es {label} ({format_money(product.price)} c/u). "
                f"Para cubrir {dims.user_order} m ({format_meters(dims.area)} m²) necesitarías {pieces} piezas: "
                f"{format_money(match.total_price)} en total.\n\n¿Te interesa?"
            )
        else:
            text = (
                f"No manejamos {dims.user_order} m como medida estándar. La más cercana es {label} "
                f"({format_meters(product.area)} m²) por {format_money(product.price)}.\n\n¿Te interesa?"
            )
        return reply(note + text)

    def _custom_order(self, ctx: FlowContext, key: str) -> FlowOutcome:
        return self.escalate(
            ctx,
            reason=f"custom_size {key}",
            response_prefix=f"La medida {key} m es un pedido especial 📋\n\n",
            specs_text=f"Malla de {key} m. ",
            include_video=True,
        )

    def _classifier_dimensions(self, ctx: FlowContext) -> Optional[Dimensions]:
        try:
            width = float(self.classifier_value(ctx, "width"))
            height = float(self.classifier_value(ctx, "height"))
        except (TypeError, ValueError):
            return None
        if width <= 0 or height <= 0:
            return None
        return Dimensions(
            width=min(width, height),
            height=max(width, height),
            user_order=f"{format_meters(width)}x{format_meters(height)}",
        )

    @staticmethod
    def _as_int(value: object) -> Optional[int]:
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None
