from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional

from .catalog import ProductNode
from .product_tree import dimensions_match

MAX_BUNDLE_PIECES = 4


@dataclass
class SizeMatch:
    """Best catalog answer for a requested size."""
    kind: str
    product: Optional[ProductNode] = None
    pieces: int = 1
    area_gap: float = 0.0

    @property
    def total_price(self) -> Optional[float]:
        if not self.product or self.product.price is None:
            return None
        return self.product.price * self.pieces


def _sized(candidates: List[ProductNode]) -> List[ProductNode]:
    return [node for node in candidates if node.sellable and node.dimensions]


def find_exact(candidates: List[ProductNode], width: float, height: float) -> Optional[ProductNode]:
    for node in _sized(candidates):
        dims = node.dimensions
        if dimensions_match(width, height, dims[0], dims[1]):
            return node
    return None


def find_alternative(
    candidates: List[ProductNode], width: float, height: float, area_tolerance: float
) -> SizeMatch:
    """Purpose: Pick the alternative offered when no exact size exists.
    Inputs/Outputs: Candidate leaves, requested sides and the area tolerance in m²;
        returns SizeMatch with kind "cover", "bundle", "nearest" or "none".
    Side Effects / State: None; pure function.
    Dependencies: ProductNode.dimensions/area.
    Failure Modes: No sized candidates -> kind "none".
    If Removed: Every non-catalog size escalates to a human.
    Testing Notes: 9x9 against a 7x10 maximum yields a two-piece bundle; a thin
        strip far from every standard area yields "none".
    """
    # (i) smallest covering size, (ii) bundle of the largest, (iii) nearest area.
    sized = _sized(candidates)
    if not sized:
        return SizeMatch(kind="none")
    short, long_ = sorted((width, height))
    requested_area = width * height

    covering = [node for node in sized if node.dimensions[0] >= short and node.dimensions[1] >= long_]
    if covering:
        best = min(covering, key=lambda node: (node.area, node.price or 0))
        return SizeMatch(kind="cover", product=best, area_gap=round(best.area - requested_area, 4))

    largest = max(sized, key=lambda node: node.area)
    pieces = math.ceil(requested_area / largest.area)
    if 2 <= pieces <= MAX_BUNDLE_PIECES:
        return SizeMatch(
            kind="bundle",
            product=largest,
            pieces=pieces,
            area_gap=round(largest.area * pieces - requested_area, 4),
        )

    nearest = min(sized, key=lambda node: abs(node.area - requested_area))
    gap = abs(nearest.area - requested_area)
    if gap > area_tolerance:
        return SizeMatch(kind="none", area_gap=round(gap, 4))
    return SizeMatch(kind="nearest", product=nearest, area_gap=round(nearest.area - requested_area, 4))


def find_nearest_by_area(candidates: List[ProductNode], area: float) -> Optional[ProductNode]:
    """Standard size whose area is closest to area; ties prefer the larger one."""
    sized = _sized(candidates)
    if not sized:
        return None
    return min(sized, key=lambda node: (abs(node.area - area), -node.area))
