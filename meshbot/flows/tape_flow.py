"""Border-tape family (borde separador): sold by roll length only."""

from __future__ import annotations

import math
from typing import List, Optional

from ..catalog import ProductNode
from ..entity_extractor import parse_single_value
from ..models import TapeSpec
from ..utils import format_meters, format_money
from .base import PRICE_QUESTION_RE, FlowContext, FlowMachine, FlowOutcome, FlowRule, Stage, reply

TAPE_LENGTHS_M = (6, 9, 18, 54)
LENGTHS_TEXT = ", ".join(f"{length}m" for length in TAPE_LENGTHS_M[:-1]) + f" y {TAPE_LENGTHS_M[-1]}m"
MAX_TAPE_REQUEST_M = 1000.0
QUOTE_FOOTER = "Ahí puedes ver el precio y realizar tu compra. El envío está incluido 📦\n\n¿Necesitas algo más?"


class TapeFlow(FlowMachine):
    family = "tape"
    log_name = "meshbot.flows.tape"
    root_keywords = ("borde",)
    default_text = "¿Te ayudo con algo más sobre el borde separador?"

    def build_rules(self) -> List[FlowRule]:
        awaiting = frozenset({Stage.AWAITING_LENGTH})
        return self.proposal_rules(10) + [
            FlowRule("accumulate", lambda ctx: True, self.accumulate, 50),
            FlowRule("greeting", lambda ctx: ctx.entered, self.greet, 70, stages=awaiting),
            FlowRule(
                "ask_length",
                lambda ctx: bool(PRICE_QUESTION_RE.search(ctx.normalized)) or bool(ctx.changed),
                self.ask_length,
                80,
                stages=awaiting,
            ),
            FlowRule(
                "complete",
                lambda ctx: bool(ctx.changed & {"length", "quantity"}),
                self.complete,
                90,
                stages=frozenset({Stage.COMPLETE}),
            ),
        ]

    def empty_spec(self) -> TapeSpec:
        return TapeSpec()

    def compute_stage(self, spec: Optional[TapeSpec]) -> Stage:
        if spec is None or spec.length is None:
            return Stage.AWAITING_LENGTH
        return Stage.COMPLETE

    def spec_key(self, ctx: FlowContext) -> Optional[str]:
        if ctx.spec is None or ctx.spec.length is None:
            return None
        return f"{format_meters(ctx.spec.length)}m"

    def stall_text(self, ctx: FlowContext) -> str:
        if self.compute_stage(ctx.spec) == Stage.AWAITING_LENGTH:
            return f"¿Qué largo de borde separador necesitas? Tenemos rollos de {LENGTHS_TEXT}."
        return self.default_text

    def accumulate(self, ctx: FlowContext) -> None:
        fields = {}
        length = ctx.entities.length_m
        if length is None and self.compute_stage(ctx.spec) == Stage.AWAITING_LENGTH:
            length = parse_single_value(ctx.message, 1, MAX_TAPE_REQUEST_M)
        if length is not None:
            fields["length"] = float(length)
            ctx.changed.add("length")
            if ctx.conversation.pending_proposal is not None:
                ctx.set(pending_proposal=None)
        fields["quantity"] = ctx.entities.quantity
        self.merge(ctx, **fields)
        return None

    def greet(self, ctx: FlowContext) -> FlowOutcome:
        return reply(
            "¡Hola! Sí manejamos borde separador para jardín 🌿\n\n"
            "Sirve para delimitar áreas de pasto, crear caminos y separar zonas de tu jardín.\n\n"
            f"Tenemos rollos de {LENGTHS_TEXT}.\n\n¿Qué largo te interesa?"
        )

    def ask_length(self, ctx: FlowContext) -> FlowOutcome:
        return reply(
            "¡Claro! Manejamos borde separador para jardín en diferentes presentaciones:\n\n"
            "• Rollo de 6 metros\n• Rollo de 9 metros\n• Rollo de 18 metros\n• Rollo de 54 metros\n\n"
            "¿Qué largo necesitas? Te paso el link con precio."
        )

    def _by_length(self, ctx: FlowContext) -> dict:
        found = {}
        for node in self.candidates(ctx):
            if node.length is not None:
                found.setdefault(node.length, node)
        return found

    def complete(self, ctx: FlowContext) -> FlowOutcome:
        """Purpose: Quote a standard tape length or propose the one that covers it.
        Inputs/Outputs: ctx with a length; returns a quote, a cover/bundle proposal
            or a handoff request when the catalog has no tape leaves.
        Side Effects / State: quote context and pending proposal.
        Dependencies: ProductNode.length, remember_proposal.
        Failure Modes: Missing listings escalate.
        If Removed: Tape requests never get a link.
        Testing Notes: 12 m proposes the 18 m roll; 100 m proposes two 54 m rolls.
        """
        # Exact standard length, else smallest covering length, else a bundle of the longest.
        spec = ctx.spec
        requested = spec.length
        key = self.spec_key(ctx)
        by_length = self._by_length(ctx)
        if not by_length:
            return self.escalate(
                ctx,
                reason=f"tape_unavailable {key}",
                specs_text=f"Borde separador de {key}. ",
            )
        product = by_length.get(requested)
        if product is not None:
            wholesale = self.wholesale_outcome(ctx, product, spec.quantity)
            if wholesale is not None:
                return wholesale
            quoted = self.quote_product(ctx, product, f"borde separador de {format_meters(requested)} m")
            if quoted is None:
                return self.missing_listing(ctx, product)
            self.store_quotes(ctx, [quoted], key)
            lead = f"Para {spec.quantity} rollos, aquí" if spec.quantity and spec.quantity > 1 else "Aquí"
            return reply(
                f"¡Claro! {lead} está el borde separador de {format_meters(requested)} metros "
                f"por {format_money(product.price)}:\n\n{quoted.url}\n\n{QUOTE_FOOTER}"
            )

        covering = sorted(length for length in by_length if length >= requested)
        if covering:
            product = by_length[covering[0]]
            return self._propose(ctx, "cover", product, key, 1, requested)
        longest = max(by_length)
        pieces = math.ceil(requested / longest)
        return self._propose(ctx, "bundle", by_length[longest], key, pieces, requested)

    def _propose(
        self, ctx: FlowContext, kind: str, product: ProductNode, key: str, pieces: int, requested: float
    ) -> FlowOutcome:
        quoted = self.quote_product(ctx, product, self.display_text(product, pieces), pieces)
        if quoted is None:
            return self.missing_listing(ctx, product)
        self.store_quotes(ctx, [quoted], key)
        self.remember_proposal(ctx, kind, product, key, pieces)
        length = format_meters(product.length)
        if pieces > 1:
            text = (
                f"Para {format_meters(requested)} metros te recomiendo {pieces} rollos de {length} m: "
                f"{format_money(product.price * pieces)} en total.\n\n¿Te interesa?"
            )
        else:
            text = (
                f"No manejamos rollo de {format_meters(requested)} metros; el que lo cubre es el de {length} m "
                f"por {format_money(product.price)}.\n\n¿Te interesa?"
            )
        return reply(text)
