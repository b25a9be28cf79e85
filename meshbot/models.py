from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from typing_extensions import Annotated


class ChatRequest(BaseModel):
    """Request payload for chat API."""
    conversation_id: str = Field(min_length=1)
    message: str
    entities: Optional[Dict[str, Any]] = Field(default=None)


class BotResponse(BaseModel):
    """Outgoing turn result; follow_up is a separate message sent after text."""
    type: Literal["text"] = "text"
    text: str
    follow_up: Optional[str] = None


class ChatResponse(BotResponse):
    """Response payload returned by the chat API."""
    conversation_id: str
    handled_by: str


class StoredMessage(BaseModel):
    """Persisted message record kept for fallback context."""
    role: str
    content: str
    timestamp: float


class PanelSpec(BaseModel):
    """Cut-to-size panel request (malla confeccionada)."""
    product_type: Literal["panel"] = "panel"
    width: Optional[float] = None
    height: Optional[float] = None
    user_order: Optional[str] = None
    percentage: Optional[int] = None
    color: Optional[str] = None
    quantity: Optional[int] = None
    converted_from_feet: bool = False
    fractional_request: Optional[str] = None


class RollSpec(BaseModel):
    """Full roll request; length is fixed by the product line."""
    product_type: Literal["roll"] = "roll"
    width: Optional[float] = None
    length: float = 100.0
    percentage: Optional[int] = None
    color: Optional[str] = None
    quantity: Optional[int] = None


class TapeSpec(BaseModel):
    """Border tape (borde separador) request measured by length only."""
    product_type: Literal["tape"] = "tape"
    length: Optional[float] = None
    quantity: Optional[int] = None


ProductSpec = Annotated[Union[PanelSpec, RollSpec, TapeSpec], Field(discriminator="product_type")]


class QuotedProduct(BaseModel):
    """Snapshot of a priced option shown to the customer."""
    display_text: str
    price: Optional[float] = None
    product_id: str
    url: str
    product_name: str
    width: Optional[float] = None
    height: Optional[float] = None
    pieces: int = 1


class QuoteContext(BaseModel):
    """Most recent quote set; version increases on every replacement."""
    version: int = 0
    dimensions_key: Optional[str] = None
    products: List[QuotedProduct] = Field(default_factory=list)
    quoted_at: Optional[float] = None
    turn: Optional[int] = None

    def replaced(
        self, products: List[QuotedProduct], dimensions_key: Optional[str], turn: Optional[int] = None
    ) -> "QuoteContext":
        """Return the next quote context, dropping the previous set entirely."""
        return QuoteContext(
            version=self.version + 1,
            dimensions_key=dimensions_key,
            products=list(products),
            quoted_at=time.time(),
            turn=turn,
        )


class SizeProposal(BaseModel):
    """Alternative size offered to the customer and awaiting a yes/no reply."""
    kind: Literal["floored", "cover", "bundle", "nearest"]
    width: float
    height: Optional[float] = None
    pieces: int = 1
    product_id: Optional[str] = None
    price: Optional[float] = None
    requested_key: str


class ProductOfInterest(BaseModel):
    """Catalog subtree a conversation is constrained to."""
    root_id: str
    root_name: str
    node_id: str
    node_name: str


class Location(BaseModel):
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None

    def is_known(self) -> bool:
        return bool(self.city or self.state or self.zip_code)


class PendingHandoff(BaseModel):
    """Handoff suspended while the customer is asked for postal code or city."""
    reason: str
    specs_text: str = ""
    response_prefix: str = ""
    include_video: bool = False
    requested_at: float = Field(default_factory=time.time)


class Conversation(BaseModel):
    """Per-customer dialogue state, persisted across turns."""
    conversation_id: str
    current_flow: Optional[Literal["panel", "roll", "tape"]] = None
    stage: Optional[str] = None
    last_intent: Optional[str] = None
    product_specs: Optional[ProductSpec] = None
    quote_context: QuoteContext = Field(default_factory=QuoteContext)
    pending_proposal: Optional[SizeProposal] = None
    poi: Optional[ProductOfInterest] = None
    location: Location = Field(default_factory=Location)
    unintelligible_count: int = 0
    unknown_count: int = 0
    state: Literal["active", "needs_human"] = "active"
    handoff_requested: bool = False
    handoff_reason: Optional[str] = None
    handoff_timestamp: Optional[float] = None
    pending_handoff: Optional[PendingHandoff] = None
    mentioned_assets: Dict[str, int] = Field(default_factory=dict)
    turn_count: int = 0
    history: List[StoredMessage] = Field(default_factory=list)
    updated_at: float = Field(default_factory=time.time)
