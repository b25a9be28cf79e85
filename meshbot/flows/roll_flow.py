"""Roll family (malla sombra en rollo): 2.10 m or 4.20 m wide, always 100 m long."""

from __future__ import annotations

from typing import List, Optional

from ..catalog import ProductNode
from ..entity_extractor import parse_single_value
from ..models import RollSpec
from ..product_tree import dimensions_match
from ..utils import format_money
from .base import (
    PRICE_QUESTION_RE,
    STANDARD_PERCENTAGES,
    FlowContext,
    FlowMachine,
    FlowOutcome,
    FlowRule,
    Stage,
    reply,
)

ROLL_LENGTH_M = 100.0
ROLL_WIDTHS = (2.10, 4.20)
QUOTE_FOOTER = "Ahí puedes ver el precio y comprar. El envío está incluido 📦\n\n¿Necesitas algo más?"


def normalize_width(width: Optional[float]) -> Optional[float]:
    """Snap a spoken width to the two manufactured widths; None when neither fits."""
    if width is None:
        return None
    if 1.5 <= width <= 2.5:
        return 2.10
    if 3.5 <= width <= 4.5:
        return 4.20
    return None


def width_label(width: float) -> str:
    return f"{width:.2f}"


class RollFlow(FlowMachine):
    family = "roll"
    log_name = "meshbot.flows.roll"
    root_keywords = ("rollo",)
    default_text = "¿Te ayudo con algo más sobre los rollos?"

    def build_rules(self) -> List[FlowRule]:
        return self.proposal_rules(10) + [
            FlowRule("nonstandard_percentage", self.nonstandard_percentage, self.escalate_nonstandard_percentage, 30),
            FlowRule("accumulate", lambda ctx: True, self.accumulate, 50),
            FlowRule("percentage_switch", self._wants_other_percentage, self.switch_percentage, 55),
            FlowRule("greeting", lambda ctx: ctx.entered, self.greet, 70, stages=frozenset({Stage.AWAITING_WIDTH})),
            FlowRule(
                "ask_width",
                lambda ctx: bool(ctx.changed) or bool(PRICE_QUESTION_RE.search(ctx.normalized)),
                self.ask_width,
                75,
                stages=frozenset({Stage.AWAITING_WIDTH}),
            ),
            FlowRule(
                "ask_percentage",
                lambda ctx: bool(ctx.changed) or ctx.entered,
                self.ask_percentage,
                80,
                stages=frozenset({Stage.AWAITING_PERCENTAGE}),
            ),
            FlowRule(
                "complete",
                lambda ctx: bool(ctx.changed & {"width", "percentage", "quantity"}),
                self.complete,
                90,
                stages=frozenset({Stage.COMPLETE}),
            ),
        ]

    def empty_spec(self) -> RollSpec:
        return RollSpec()

    def compute_stage(self, spec: Optional[RollSpec]) -> Stage:
        if spec is None or spec.width is None:
            return Stage.AWAITING_WIDTH
        if spec.percentage is None:
            return Stage.AWAITING_PERCENTAGE
        return Stage.COMPLETE

    def spec_key(self, ctx: FlowContext) -> Optional[str]:
        spec = ctx.spec
        if spec is None or spec.width is None:
            return None
        pct = f"@{spec.percentage}" if spec.percentage else ""
        return f"{width_label(spec.width)}x100{pct}"

    def stall_text(self, ctx: FlowContext) -> str:
        stage = self.compute_stage(ctx.spec)
        if stage == Stage.AWAITING_WIDTH:
            return "¿Cuál ancho te interesa? ¿4.20m o 2.10m?"
        if stage == Stage.AWAITING_PERCENTAGE:
            return "¿Qué porcentaje de sombra necesitas? Tenemos 35%, 50%, 70%, 80% y 90%."
        return self.default_text

    def _wants_other_percentage(self, ctx: FlowContext) -> bool:
        pct = ctx.entities.percentage
        if pct not in STANDARD_PERCENTAGES or ctx.poi is None:
            return False
        return self.deps.navigator.lineage_percentage(ctx.poi.node_id) != pct

    def accumulate(self, ctx: FlowContext) -> None:
        # Width comes from a pair ("4.20 x 100"), a classifier value or a bare number.
        fields = {}
        width = None
        dims = ctx.entities.dimensions
        if dims is not None:
            width = normalize_width(dims.width)
        if width is None:
            try:
                width = normalize_width(float(self.classifier_value(ctx, "width")))
            except (TypeError, ValueError):
                width = None
        if width is None and self.compute_stage(ctx.spec) == Stage.AWAITING_WIDTH:
            width = normalize_width(parse_single_value(ctx.message, 1.5, 4.5))
        if width is not None:
            fields["width"] = width
            ctx.changed.add("width")
        pct = ctx.entities.percentage
        if pct in STANDARD_PERCENTAGES:
            fields["percentage"] = pct
        fields["color"] = ctx.entities.color
        fields["quantity"] = ctx.entities.quantity
        self.merge(ctx, **fields)
        return None

    def greet(self, ctx: FlowContext) -> FlowOutcome:
        return reply(
            "¡Claro! Manejamos rollos de malla sombra en dos anchos:\n\n"
            "• 4.20m x 100m (420 m² por rollo)\n"
            "• 2.10m x 100m (210 m² por rollo)\n\n¿Qué ancho necesitas?"
        )

    def ask_width(self, ctx: FlowContext) -> FlowOutcome:
        return reply(
            "Los rollos de malla sombra los manejamos en:\n\n• 4.20m x 100m\n• 2.10m x 100m\n\n¿Qué ancho necesitas?"
        )

    def ask_percentage(self, ctx: FlowContext) -> FlowOutcome:
        return reply(
            f"Perfecto, rollo de {width_label(ctx.spec.width)}m x 100m 📦\n\n"
            "Lo tenemos desde 35% hasta 90% de sombra.\n\n¿Qué porcentaje necesitas?"
        )

    def narrow_to_request(self, ctx: FlowContext, pool: List[ProductNode]) -> List[ProductNode]:
        spec = ctx.spec
        if spec is None or spec.width is None:
            return pool
        return [node for node in pool if node.dimensions and dimensions_match(spec.width, ROLL_LENGTH_M, *node.dimensions)]

    def complete(self, ctx: FlowContext) -> FlowOutcome:
        """Purpose: Quote a fully specified roll or hand it to a specialist.
        Inputs/Outputs: ctx with width and percentage; returns a priced link, the
            lineage fallback listing, or a staged handoff.
        Side Effects / State: quote context and POI lock.
        Dependencies: CatalogNavigator.filter_by_lineage, wholesale_outcome.
        Failure Modes: Leaves without link or price escalate as roll quotes.
        If Removed: Every roll request goes to a human.
        Testing Notes: Quantity at or above wholesale_min_qty escalates.
        """
        # Percentage lives on the branch above the leaf.
        spec = ctx.spec
        label = f"{width_label(spec.width)}m x 100m al {spec.percentage}%"
        sized = self.narrow_to_request(ctx, self.candidates(ctx))
        filtered = self.deps.navigator.filter_by_lineage(sized, f"{spec.percentage}%")
        if sized and not filtered.applied:
            return self.list_options(
                ctx,
                filtered.products,
                intro=f"El rollo de {width_label(spec.width)}m no lo manejamos al {spec.percentage}%. Estas son las opciones disponibles:",
            )
        product = filtered.products[0] if filtered.products else None
        quantity = spec.quantity or 1
        specs_text = f"Rollo de {label}, {quantity} pieza{'s' if quantity > 1 else ''}. "
        if product is None:
            return self.escalate(
                ctx,
                reason=f"roll_quote {quantity} x {label}",
                response_prefix=f"✅ Te confirmo: rollo de {label}. ",
                specs_text=specs_text,
            )
        if ctx.poi is None:
            ctx.poi = self.deps.navigator.lock_poi(product.id)
        wholesale = self.wholesale_outcome(ctx, product, spec.quantity)
        if wholesale is not None:
            return wholesale
        quoted = self.quote_product(ctx, product, f"rollo de {width_label(spec.width)}m x 100m")
        if quoted is None:
            return self.escalate(
                ctx,
                reason=f"roll_quote {quantity} x {label}",
                response_prefix=f"✅ Te confirmo: rollo de {label}. ",
                specs_text=specs_text,
            )
        self.store_quotes(ctx, [quoted], self.spec_key(ctx))
        lead = f"Para {quantity} rollos, tenemos" if quantity > 1 else "Tenemos"
        return reply(
            f"¡Perfecto! {lead} el rollo de {label} por {format_money(product.price)}:\n\n{quoted.url}\n\n{QUOTE_FOOTER}"
        )

    def apply_dimensions(self, ctx: FlowContext, width: float, height: float) -> Optional[FlowOutcome]:
        snapped = normalize_width(width)
        if snapped is None:
            return None
        self.merge(ctx, width=snapped)
        ctx.changed.add("width")
        if self.compute_stage(ctx.spec) != Stage.COMPLETE:
            return self.ask_percentage(ctx)
        return self.complete(ctx)
