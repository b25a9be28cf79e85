"""Shared shape of the per-family flow state machines.

Each family declares an ordered table of FlowRule(name, guard, action, priority,
stages). FlowMachine.handle evaluates the table in priority order: a rule whose
stage filter and guard pass runs its action; an action returning None lets
evaluation continue (accumulation rules), anything else ends the turn. When no
rule answers, the outcome is "stalled" and carries the family's default text.

Flows never write to the conversation store. They collect field updates on the
FlowContext and may request a handoff; the pipeline applies both.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence

from ..ai_fallback import FallbackAction
from ..catalog import ProductNode
from ..conversation_store import merge_product_specs
from ..entity_extractor import Dimensions, ExtractedEntities
from ..handoff import HandoffOptions
from ..models import BotResponse, Conversation, ProductOfInterest, QuotedProduct, SizeProposal
from ..outbound import LinkTracker
from ..product_tree import CatalogNavigator
from ..utils import format_meters, format_money, normalize_text

logger = logging.getLogger("meshbot.flows")

STANDARD_PERCENTAGES = (35, 50, 70, 80, 90)
MAX_LISTED_OPTIONS = 6

AFFIRMATIVE_RE = re.compile(
    r"^(?:si|va|dale|ok|okay|claro|esa|ese|esta bien|me interesa|perfecto|de acuerdo|sale|me sirve|"
    r"me late|la quiero|lo quiero|andale|orale|correcto|asi es)\b"
)
NEGATIVE_RE = re.compile(r"^(?:no|nel|nop|tampoco|otra medida|mejor no)\b")
PRICE_QUESTION_RE = re.compile(r"\b(?:precio|precios|cuanto (?:cuesta|sale|es|seria|vale)|costo|en cuanto|que precio)\b")


class Stage(str, Enum):
    START = "start"
    AWAITING_DIMENSIONS = "awaiting_dimensions"
    AWAITING_WIDTH = "awaiting_width"
    AWAITING_LENGTH = "awaiting_length"
    AWAITING_PERCENTAGE = "awaiting_percentage"
    COMPLETE = "complete"


@dataclass
class FlowDeps:
    """Collaborators shared by every flow."""
    navigator: CatalogNavigator
    link_tracker: LinkTracker
    area_tolerance_m2: float = 10.0
    store_url: str = ""


@dataclass
class FlowContext:
    """Mutable per-turn state handed through the rule table."""
    conversation: Conversation
    message: str
    entities: ExtractedEntities
    classifier_entities: Dict[str, Any] = field(default_factory=dict)
    turn: int = 1
    spec: Any = None
    poi: Optional[ProductOfInterest] = None
    updates: Dict[str, Any] = field(default_factory=dict)
    changed: set = field(default_factory=set)
    entered: bool = False

    def __post_init__(self) -> None:
        self.normalized = normalize_text(self.message)
        if self.spec is None:
            self.spec = self.conversation.product_specs
        if self.poi is None:
            self.poi = self.conversation.poi

    @property
    def conversation_id(self) -> str:
        return self.conversation.conversation_id

    def set(self, **fields: Any) -> None:
        self.updates.update(fields)


@dataclass
class FlowOutcome:
    """Result of one flow turn: a reply, a handoff request, or a stall."""
    response: Optional[BotResponse] = None
    handoff: Optional[HandoffOptions] = None
    stalled: bool = False
    rule: str = ""


@dataclass(frozen=True)
class FlowRule:
    name: str
    guard: Callable[[FlowContext], bool]
    action: Callable[[FlowContext], Optional[FlowOutcome]]
    priority: int
    stages: Optional[FrozenSet[Stage]] = None


def reply(text: str, follow_up: Optional[str] = None) -> FlowOutcome:
    return FlowOutcome(response=BotResponse(text=text, follow_up=follow_up))


def is_affirmative(normalized: str) -> bool:
    return bool(AFFIRMATIVE_RE.match(normalized))


def is_negative(normalized: str) -> bool:
    return bool(NEGATIVE_RE.match(normalized))


def size_label(width: float, height: Optional[float]) -> str:
    if height is None:
        return f"{format_meters(width)} m"
    return f"{format_meters(width)}x{format_meters(height)} m"


class FlowMachine:
    """Base class for family state machines."""

    family = ""
    log_name = "meshbot.flows"
    root_keywords: Sequence[str] = ()
    default_text = "¿Te puedo ayudar con algo más?"

    def __init__(self, deps: FlowDeps) -> None:
        self.deps = deps
        self.logger = logging.getLogger(self.log_name)
        self._rules = sorted(self.build_rules(), key=lambda rule: rule.priority)

    @property
    def rules(self) -> List[FlowRule]:
        return list(self._rules)

    def build_rules(self) -> List[FlowRule]:
        raise NotImplementedError

    def compute_stage(self, spec: Any) -> Stage:
        raise NotImplementedError

    def empty_spec(self) -> Any:
        raise NotImplementedError

    def complete(self, ctx: FlowContext) -> Optional[FlowOutcome]:
        """Answer for a fully specified request; subclasses implement."""
        raise NotImplementedError

    def family_root(self) -> Optional[ProductNode]:
        """Catalog root for this family, matched by name keywords."""
        for root in self.deps.navigator.store.roots():
            name = normalize_text(root.name)
            if root.active and any(keyword in name for keyword in self.root_keywords):
                return root
        return None

    def scope_id(self, ctx: FlowContext) -> Optional[str]:
        """Subtree searched this turn: the locked POI node, else the family root."""
        if ctx.poi is not None:
            return ctx.poi.node_id
        root = self.family_root()
        return root.id if root else None

    def candidates(self, ctx: FlowContext) -> List[ProductNode]:
        scope = self.scope_id(ctx)
        if not scope:
            return []
        try:
            return self.deps.navigator.descendants(scope, sellable_only=True)
        except Exception:
            self.logger.exception("candidates=failed conversation=%s scope=%s", ctx.conversation_id, scope)
            return []

    def handle(self, ctx: FlowContext) -> FlowOutcome:
        """Purpose: Run one turn through the family's rule table.
        Inputs/Outputs: FlowContext for this turn; returns a FlowOutcome.
        Side Effects / State: Mutates ctx.spec/ctx.updates; never touches the store.
        Dependencies: build_rules, compute_stage.
        Failure Modes: Rule exceptions propagate to the pipeline, which answers
            with the generic specialist message.
        If Removed: Product conversations cannot progress past the first message.
        Testing Notes: Assert on outcome.rule to check precedence per rule.
        """
        # Stage is recomputed before each rule since accumulation changes it.
        if ctx.spec is None or getattr(ctx.spec, "product_type", None) != self.spec_type():
            ctx.spec = self.empty_spec()
            ctx.entered = True
            root = self.family_root()
            if ctx.poi is not None and (root is None or ctx.poi.root_id != root.id):
                ctx.poi = None
        outcome: Optional[FlowOutcome] = None
        for rule in self._rules:
            stage = self.compute_stage(ctx.spec)
            if rule.stages is not None and stage not in rule.stages:
                continue
            if not rule.guard(ctx):
                continue
            result = rule.action(ctx)
            if result is not None:
                result.rule = result.rule or rule.name
                outcome = result
                break
        if outcome is None:
            outcome = FlowOutcome(response=BotResponse(text=self.stall_text(ctx)), stalled=True, rule="stalled")
        stage = self.compute_stage(ctx.spec)
        ctx.set(current_flow=self.family, product_specs=ctx.spec, stage=stage.value, poi=ctx.poi)
        if "last_intent" not in ctx.updates:
            ctx.set(last_intent=f"{self.family}_{outcome.rule}")
        self.logger.info(
            "flow=%s conversation=%s rule=%s stage=%s stalled=%s",
            self.family,
            ctx.conversation_id,
            outcome.rule,
            stage.value,
            outcome.stalled,
        )
        return outcome

    def spec_type(self) -> str:
        return self.family

    def stall_text(self, ctx: FlowContext) -> str:
        return self.default_text

    # Shared rules -----------------------------------------------------------------

    def proposal_rules(self, priority: int) -> List[FlowRule]:
        return [
            FlowRule(
                name="proposal_accepted",
                guard=lambda ctx: ctx.conversation.pending_proposal is not None and is_affirmative(ctx.normalized),
                action=self.accept_proposal,
                priority=priority,
            ),
            FlowRule(
                name="proposal_declined",
                guard=lambda ctx: ctx.conversation.pending_proposal is not None and is_negative(ctx.normalized),
                action=self.decline_proposal,
                priority=priority + 1,
            ),
        ]

    def accept_proposal(self, ctx: FlowContext) -> Optional[FlowOutcome]:
        """Quote the stored alternative after a yes; no re-derivation."""
        proposal = ctx.conversation.pending_proposal
        product = self.deps.navigator.store.find_by_id(proposal.product_id) if proposal.product_id else None
        ctx.set(pending_proposal=None)
        if product is None:
            return self.escalate(
                ctx,
                reason=f"proposal_product_missing {proposal.requested_key}",
                specs_text=f"Medida solicitada: {proposal.requested_key}. ",
            )
        label = size_label(proposal.width, proposal.height)
        quoted = self.quote_product(ctx, product, self.display_text(product, proposal.pieces), proposal.pieces)
        if quoted is None:
            return self.missing_listing(ctx, product)
        self.store_quotes(ctx, [quoted], proposal.requested_key)
        pieces = f"{proposal.pieces} piezas de " if proposal.pieces > 1 else ""
        total = format_money((product.price or 0) * proposal.pieces)
        return reply(
            f"¡Listo! Aquí está la opción de {pieces}{label} por {total}:\n\n{quoted.url}\n\n"
            "Ahí puedes ver el precio y comprar. El envío está incluido 📦\n\n¿Necesitas algo más?"
        )

    def decline_proposal(self, ctx: FlowContext) -> Optional[FlowOutcome]:
        ctx.set(pending_proposal=None)
        return reply(
            "Entendido. Si gustas, dime otra medida y te la cotizo, "
            "o un especialista puede revisar tu medida exacta.\n\n¿Qué medida te gustaría?"
        )

    def nonstandard_percentage(self, ctx: FlowContext) -> bool:
        pct = ctx.entities.percentage
        return pct is not None and pct not in STANDARD_PERCENTAGES

    def escalate_nonstandard_percentage(self, ctx: FlowContext) -> Optional[FlowOutcome]:
        pct = ctx.entities.percentage
        return self.escalate(
            ctx,
            reason=f"non_standard_percentage {pct}%",
            response_prefix=(
                f"Manejamos malla sombra en {', '.join(str(p) for p in STANDARD_PERCENTAGES[:-1])} "
                f"y {STANDARD_PERCENTAGES[-1]}%; el {pct}% sería un pedido especial. "
            ),
            specs_text=f"Malla al {pct}%. ",
        )

    # Percentage navigation ------------------------------------------------------------

    def switch_percentage(self, ctx: FlowContext) -> Optional[FlowOutcome]:
        """Purpose: Handle a new shade percentage while a POI is locked.
        Inputs/Outputs: ctx with entities.percentage; returns None after moving
            the lock to the sibling percentage branch (evaluation continues), or
            an outcome listing the unfiltered options when the family does not
            carry that percentage.
        Side Effects / State: Updates ctx.poi and ctx.spec.percentage.
        Dependencies: CatalogNavigator.navigate_for_attribute, filter_by_lineage.
        Failure Modes: Never searches outside the locked family root.
        If Removed: "¿y en 80%?" after a quote keeps quoting the old branch.
        Testing Notes: Asking for a percentage absent from the tree lists the
            current options instead of returning nothing.
        """
        # Sibling-of-ancestor first; the lineage filter decides the fallback.
        pct = ctx.entities.percentage
        navigator = self.deps.navigator
        branch = navigator.navigate_for_attribute(ctx.poi, pct)
        if branch is not None:
            ctx.poi = ProductOfInterest(
                root_id=ctx.poi.root_id, root_name=ctx.poi.root_name, node_id=branch.id, node_name=branch.name
            )
            self.merge(ctx, percentage=pct)
            self.logger.info("poi=navigated conversation=%s node=%s pct=%s", ctx.conversation_id, branch.id, pct)
            return None
        pool = self.candidates(ctx)
        narrowed = self.narrow_to_request(ctx, pool)
        filtered = navigator.filter_by_lineage(narrowed or pool, f"{pct}%")
        if filtered.applied:
            self.merge(ctx, percentage=pct)
            return None
        current = navigator.lineage_percentage(ctx.poi.node_id)
        if current is not None:
            self.merge(ctx, percentage=current)
        else:
            self.merge(ctx, _clear=["percentage"])
        return self.list_options(
            ctx,
            filtered.products,
            intro=f"En esta línea no manejamos {pct}% de sombra. Estas son las opciones disponibles:",
        )

    def narrow_to_request(self, ctx: FlowContext, pool: List[ProductNode]) -> List[ProductNode]:
        """Subset of pool matching the sizes already requested; families override."""
        return pool

    def list_options(self, ctx: FlowContext, products: List[ProductNode], intro: str) -> FlowOutcome:
        quoted: List[QuotedProduct] = []
        lines = []
        for product in products[:MAX_LISTED_OPTIONS]:
            item = self.quote_product(ctx, product, self.display_text(product))
            if item is None:
                continue
            percentage = self.deps.navigator.lineage_percentage(product.id)
            pct_text = f" al {percentage}%" if percentage else ""
            quoted.append(item)
            lines.append(f"• {item.display_text}{pct_text}: {format_money(item.price)}\n{item.url}")
        if not quoted:
            return self.escalate(ctx, reason=f"no_listable_options {self.family}")
        self.store_quotes(ctx, quoted, self.spec_key(ctx))
        return reply(f"{intro}\n\n" + "\n\n".join(lines) + "\n\n¿Cuál te interesa?")

    # Quotes -------------------------------------------------------------------------------

    def display_text(self, product: ProductNode, pieces: int = 1) -> str:
        dims = product.dimensions
        if dims:
            label = size_label(dims[0], dims[1])
        elif product.length is not None:
            label = size_label(product.length, None)
        else:
            label = product.name
        return f"{pieces} x {label}" if pieces > 1 else label

    def quote_product(
        self, ctx: FlowContext, product: ProductNode, display_text: str, pieces: int = 1
    ) -> Optional[QuotedProduct]:
        """Snapshot a sellable leaf for quoting; None when link or price is missing."""
        url = product.preferred_link
        if not product.sellable or not url or product.price is None:
            self.logger.error(
                "catalog=invalid_listing conversation=%s product=%s link=%s price=%s",
                ctx.conversation_id,
                product.id,
                bool(url),
                product.price,
            )
            return None
        location = ctx.conversation.location
        tracked = self.deps.link_tracker.track_link(
            ctx.conversation_id,
            url,
            {"product_id": product.id, "product_name": product.name, "city": location.city, "state": location.state},
        )
        dims = product.dimensions
        return QuotedProduct(
            display_text=display_text,
            price=product.price,
            product_id=product.id,
            url=tracked,
            product_name=product.name,
            width=dims[0] if dims else product.length,
            height=dims[1] if dims else None,
            pieces=pieces,
        )

    def store_quotes(self, ctx: FlowContext, quoted: List[QuotedProduct], key: Optional[str]) -> None:
        current = ctx.updates.get("quote_context") or ctx.conversation.quote_context
        ctx.set(quote_context=current.replaced(quoted, key, turn=ctx.turn))

    def spec_key(self, ctx: FlowContext) -> Optional[str]:
        return None

    def already_quoted(self, ctx: FlowContext, product_id: str, key: Optional[str]) -> Optional[QuotedProduct]:
        context = ctx.conversation.quote_context
        if key is None or context.dimensions_key != key:
            return None
        return next((item for item in context.products if item.product_id == product_id), None)

    def remember_proposal(
        self,
        ctx: FlowContext,
        kind: str,
        product: ProductNode,
        requested_key: str,
        pieces: int = 1,
    ) -> None:
        dims = product.dimensions
        width = dims[0] if dims else (product.length or 0.0)
        height = dims[1] if dims else None
        ctx.set(
            pending_proposal=SizeProposal(
                kind=kind,
                width=width,
                height=height,
                pieces=pieces,
                product_id=product.id,
                price=(product.price or 0) * pieces if product.price is not None else None,
                requested_key=requested_key,
            )
        )

    def missing_listing(self, ctx: FlowContext, product: ProductNode) -> FlowOutcome:
        return self.escalate(
            ctx,
            reason=f"catalog_listing_incomplete {product.id}",
            specs_text=f"{self.display_text(product)}. ",
            response_prefix="Déjame confirmar la disponibilidad de esa medida con un especialista. ",
        )

    def wholesale_outcome(self, ctx: FlowContext, product: ProductNode, quantity: Optional[int]) -> Optional[FlowOutcome]:
        if not quantity or not product.wholesale_min_qty or quantity < product.wholesale_min_qty:
            return None
        label = self.display_text(product)
        return self.escalate(
            ctx,
            reason=f"wholesale {quantity} x {label}",
            response_prefix=f"Para {quantity} piezas de {label} manejamos precio de mayoreo. ",
            specs_text=f"{quantity} x {label}. ",
            last_intent="wholesale_request",
        )

    # Escalation ---------------------------------------------------------------------------

    def escalate(
        self,
        ctx: FlowContext,
        reason: str,
        response_prefix: str = "",
        specs_text: str = "",
        include_video: bool = False,
        skip_checklist: bool = False,
        last_intent: str = "handoff",
    ) -> FlowOutcome:
        self.logger.info("flow=%s conversation=%s escalate=%s", self.family, ctx.conversation_id, reason)
        ctx.set(pending_proposal=None)
        return FlowOutcome(
            handoff=HandoffOptions(
                reason=reason,
                response_prefix=response_prefix,
                specs_text=specs_text,
                include_video=include_video,
                skip_checklist=skip_checklist,
                last_intent=last_intent,
            )
        )

    # Spec accumulation --------------------------------------------------------------------

    def merge(self, ctx: FlowContext, **fields: Any) -> None:
        before = ctx.spec.model_dump() if ctx.spec is not None else {}
        ctx.spec = merge_product_specs(ctx.spec, self.spec_type(), fields)
        after = ctx.spec.model_dump()
        ctx.changed.update(key for key in after if after.get(key) != before.get(key))

    def classifier_value(self, ctx: FlowContext, key: str) -> Any:
        value = ctx.classifier_entities.get(key)
        if value in (None, ""):
            return None
        return value

    # AI fallback ----------------------------------------------------------------------------

    def apply_fallback(self, ctx: FlowContext, action: FallbackAction) -> Optional[FlowOutcome]:
        """Purpose: Turn an accepted fallback interpretation into a flow answer.
        Inputs/Outputs: ctx and an accepted FallbackAction; returns a FlowOutcome
            or None when the action cannot be applied.
        Side Effects / State: May replace the quote context or merge dimensions.
        Dependencies: quote context snapshot; complete() for new dimensions.
        Failure Modes: Indices were validated by the resolver; stale snapshots
            (empty list) return None.
        If Removed: Accepted interpretations would be discarded.
        Testing Notes: select_products with [0, 1] repeats both quoted links.
        """
        # Selections reuse the stored snapshot; nothing is re-queried.
        quoted = ctx.conversation.quote_context.products
        if action.action == "select_one":
            if not quoted:
                return None
            item = quoted[action.indices[0]]
            ctx.set(last_intent=f"{self.family}_selected")
            return FlowOutcome(
                response=BotResponse(
                    text=f"¡Perfecto! Aquí está la {item.display_text}:\n\n{item.url}\n\n"
                    "Ahí puedes ver el precio y comprar. El envío está incluido 📦\n\n¿Necesitas algo más?"
                ),
                rule="fallback_select_one",
            )
        if action.action == "select_products":
            if not quoted:
                return None
            lines = [f"• {quoted[index].display_text}: {quoted[index].url}" for index in action.indices]
            ctx.set(last_intent=f"{self.family}_selected")
            return FlowOutcome(
                response=BotResponse(
                    text="¡Claro! Aquí tienes los enlaces:\n\n" + "\n".join(lines) + "\n\n¿Necesitas algo más?"
                ),
                rule="fallback_select_products",
            )
        if action.action == "provide_dimensions":
            outcome = self.apply_dimensions(ctx, action.width, action.height)
            if outcome is not None:
                outcome.rule = "fallback_dimensions"
            return outcome
        if action.action == "answer_question":
            return FlowOutcome(response=BotResponse(text=action.text), rule="fallback_answer")
        return None

    def apply_dimensions(self, ctx: FlowContext, width: float, height: float) -> Optional[FlowOutcome]:
        return None


def floor_fractional(dims: Dimensions) -> Dimensions:
    """Floor only the axes that carry a fraction; sides never drop below 1 m."""
    def _floor(value: float) -> float:
        if float(value).is_integer():
            return value
        return float(max(1, math.floor(value)))

    width, height = _floor(dims.width), _floor(dims.height)
    return Dimensions(
        width=min(width, height),
        height=max(width, height),
        user_order=f"{format_meters(width)}x{format_meters(height)}",
    )
