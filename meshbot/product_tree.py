"""Catalog tree navigation and lineage-based attribute resolution.

Role:
    Answers ancestry, sibling, child and descendant queries over the product tree,
    checks whether a size exists under the locked Product-of-Interest, and filters
    leaves by attributes that live on ancestors (shade percentage, "reforzada").

Failure contract:
    Existence checks never raise. They return VariantCheck.reason in
    {"found", "no_poi", "poi_not_found", "not_in_tree", "error"}.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from .catalog import CatalogStore, ProductNode
from .models import ProductOfInterest
from .utils import normalize_text

logger = logging.getLogger("meshbot.tree")

PERCENT_NAME_RE = re.compile(r"(\d{2,3})\s*%")
DIMENSION_TOLERANCE_M = 0.01
MAX_DEPTH = 32


@dataclass
class VariantCheck:
    """Outcome of an existence check under the locked subtree."""
    exists: bool
    product: Optional[ProductNode] = None
    reason: str = "found"


@dataclass
class LineageFilter:
    """Result of filtering by an ancestor attribute; applied is False on fallback."""
    products: List[ProductNode]
    applied: bool


def dimensions_match(
    width: float, height: float, other_width: float, other_height: float, tolerance: float = DIMENSION_TOLERANCE_M
) -> bool:
    """Order-insensitive size equality: 4x6 matches 6x4."""
    a = sorted((width, height))
    b = sorted((other_width, other_height))
    return abs(a[0] - b[0]) <= tolerance and abs(a[1] - b[1]) <= tolerance


class CatalogNavigator:
    """Tree queries over a CatalogStore."""

    def __init__(self, store: CatalogStore) -> None:
        self._store = store

    @property
    def store(self) -> CatalogStore:
        return self._store

    def ancestry(self, node_id: str) -> List[ProductNode]:
        """Purpose: Return the chain from the root down to node_id (inclusive).
        Inputs/Outputs: Input is a node id; output is root-first list, empty if unknown.
        Side Effects / State: None.
        Dependencies: CatalogStore.find_by_id.
        Failure Modes: Broken parent links stop the walk; cycles stop at MAX_DEPTH.
        If Removed: Lineage attributes (percentage) cannot be recovered for leaves.
        Testing Notes: Leaf under root/90%/reforzada returns four nodes, root first.
        """
        # Walk parent links upward, then reverse so the root comes first.
        chain: List[ProductNode] = []
        seen = set()
        node = self._store.find_by_id(node_id)
        while node and node.id not in seen and len(chain) < MAX_DEPTH:
            chain.append(node)
            seen.add(node.id)
            node = self._store.find_by_id(node.parent_id)
        chain.reverse()
        return chain

    def root_of(self, node_id: str) -> Optional[ProductNode]:
        chain = self.ancestry(node_id)
        return chain[0] if chain else None

    def children(self, node_id: str) -> List[ProductNode]:
        nodes = [self._store.find_by_id(child_id) for child_id in self._store.child_ids(node_id)]
        return [node for node in nodes if node and node.active]

    def siblings(self, node_id: str) -> List[ProductNode]:
        """Active nodes sharing node_id's parent, excluding node_id itself."""
        node = self._store.find_by_id(node_id)
        if not node:
            return []
        nodes = [self._store.find_by_id(child_id) for child_id in self._store.child_ids(node.parent_id)]
        return [other for other in nodes if other and other.active and other.id != node_id]

    def descendants(self, root_id: str, sellable_only: bool = False) -> List[ProductNode]:
        """Purpose: Enumerate every active node under root_id, breadth-first.
        Inputs/Outputs: Input is a subtree root id; output excludes the root itself.
        Side Effects / State: None.
        Dependencies: children().
        Failure Modes: Inactive branches are pruned with everything below them.
        If Removed: Subtree-restricted size lookups are impossible.
        Testing Notes: Deactivate a branch and ensure its leaves disappear.
        """
        # Breadth-first over active children; inactive nodes cut their subtree.
        found: List[ProductNode] = []
        queue = [root_id]
        seen = {root_id}
        while queue:
            current = queue.pop(0)
            for child in self.children(current):
                if child.id in seen:
                    continue
                seen.add(child.id)
                found.append(child)
                queue.append(child.id)
        if sellable_only:
            return [node for node in found if node.sellable]
        return found

    def lineage_name(self, node_id: str) -> str:
        """Concatenated ancestor names, root first, normalized for matching."""
        return normalize_text(" ".join(node.name for node in self.ancestry(node_id)))

    def lineage_percentage(self, node_id: str) -> Optional[int]:
        """Shade percentage recovered from the nearest ancestor that names one."""
        for node in reversed(self.ancestry(node_id)):
            match = PERCENT_NAME_RE.search(node.name)
            if match:
                return int(match.group(1))
        return None

    def filter_by_lineage(self, candidates: List[ProductNode], pattern: str) -> LineageFilter:
        """Purpose: Keep candidates whose full lineage name matches pattern.
        Inputs/Outputs: Candidate leaves and a regex (or literal like "80%"); returns
            LineageFilter with applied=False when nothing matched.
        Side Effects / State: None.
        Dependencies: lineage_name, normalize_text.
        Failure Modes: Zero matches degrade to the unfiltered candidate list so the
            caller decides how to phrase "we don't have that".
        If Removed: "80% 4x6" cannot select the right leaf; percentages live upstream.
        Testing Notes: Filter for a percentage absent from the tree and expect the
            original list back with applied=False.
        """
        # Match against the lineage concatenation, never the leaf name alone.
        if not candidates:
            return LineageFilter(products=[], applied=False)
        regex = _lineage_regex(pattern)
        matched = [node for node in candidates if regex.search(self.lineage_name(node.id))]
        if not matched:
            logger.info("lineage_filter=fallback pattern=%s candidates=%s", pattern, len(candidates))
            return LineageFilter(products=list(candidates), applied=False)
        return LineageFilter(products=matched, applied=True)

    def find_in_tree(self, root_id: str, predicate: Callable[[ProductNode], bool]) -> List[ProductNode]:
        return [node for node in self.descendants(root_id) if predicate(node)]

    def lock_poi(self, node_id: str) -> Optional[ProductOfInterest]:
        """Purpose: Build the Product-of-Interest lock for a resolved node.
        Inputs/Outputs: Input is a leaf or branch id; output is ProductOfInterest or None.
        Side Effects / State: None; the caller persists the returned value.
        Dependencies: ancestry, PERCENT_NAME_RE.
        Failure Modes: Unknown ids return None.
        If Removed: Follow-up lookups search the whole catalog and mix families.
        Testing Notes: Locking a 90% leaf scopes to the 90% branch under its root.
        """
        # Scope to the nearest attribute branch (percentage) or the family root.
        chain = self.ancestry(node_id)
        if not chain:
            return None
        root = chain[0]
        scope = root
        target = chain[-1]
        if not target.sellable:
            scope = target
        else:
            for node in reversed(chain[:-1]):
                if PERCENT_NAME_RE.search(node.name):
                    scope = node
                    break
        return ProductOfInterest(root_id=root.id, root_name=root.name, node_id=scope.id, node_name=scope.name)

    def check_variant_exists(
        self,
        poi: Optional[ProductOfInterest],
        width: Optional[float] = None,
        height: Optional[float] = None,
        text: Optional[str] = None,
    ) -> VariantCheck:
        """Purpose: Check whether a requested variant exists under the locked subtree.
        Inputs/Outputs: Inputs are the POI, optional dimensions and optional free text;
            output is VariantCheck with the first sellable match.
        Side Effects / State: None.
        Dependencies: descendants, dimensions_match, ProductNode.dimensions.
        Failure Modes: No POI -> "no_poi"; scope node missing -> "poi_not_found";
            no match -> "not_in_tree"; unexpected errors are logged -> "error".
        If Removed: Locked conversations leak into other families' sizes.
        Testing Notes: A size that exists only outside the locked branch must
            return "not_in_tree".
        """
        # Dimensions first, then text containment on name/aliases/size.
        if poi is None:
            return VariantCheck(exists=False, reason="no_poi")
        try:
            scope = self._store.find_by_id(poi.node_id)
            if scope is None:
                return VariantCheck(exists=False, reason="poi_not_found")
            leaves = self.descendants(scope.id, sellable_only=True)
            if width is not None and height is not None:
                for leaf in leaves:
                    dims = leaf.dimensions
                    if dims and dimensions_match(width, height, dims[0], dims[1]):
                        return VariantCheck(exists=True, product=leaf, reason="found")
            if text:
                needle = normalize_text(text)
                for leaf in leaves:
                    haystacks = [leaf.name, leaf.size, *leaf.aliases]
                    if any(needle and needle in normalize_text(value) for value in haystacks):
                        return VariantCheck(exists=True, product=leaf, reason="found")
            return VariantCheck(exists=False, reason="not_in_tree")
        except Exception:
            logger.exception("variant_check=error poi=%s", poi.node_id)
            return VariantCheck(exists=False, reason="error")

    def navigate_for_attribute(self, poi: ProductOfInterest, percentage: int) -> Optional[ProductNode]:
        """Purpose: Move the lock to the sibling branch carrying another percentage.
        Inputs/Outputs: Current POI and the requested percentage; returns the branch
            node to re-lock on, or None when the family does not offer it.
        Side Effects / State: None.
        Dependencies: ancestry, siblings, children, PERCENT_NAME_RE.
        Failure Modes: Returns None rather than searching other families.
        If Removed: "¿y en 80%?" after a 90% quote would search the whole catalog.
        Testing Notes: From a 90% lock, asking 80% returns the 80% sibling branch.
        """
        # Find the percentage ancestor, then search its siblings; never go global.
        wanted = f"{percentage}%"
        chain = self.ancestry(poi.node_id)
        anchor = next((node for node in reversed(chain) if PERCENT_NAME_RE.search(node.name)), None)
        if anchor is not None:
            pool = self.siblings(anchor.id) + [anchor]
        else:
            pool = self.children(poi.root_id)
        for node in pool:
            match = PERCENT_NAME_RE.search(node.name)
            if match and f"{match.group(1)}%" == wanted:
                return node
        return None


def _lineage_regex(pattern: str) -> "re.Pattern[str]":
    # Literal percentages ("80%") match "80 %" and "80%" in normalized lineage text.
    literal = re.fullmatch(r"\s*(\d{2,3})\s*%\s*", pattern)
    if literal:
        return re.compile(rf"(?<!\d){literal.group(1)}\s*%")
    return re.compile(pattern)
