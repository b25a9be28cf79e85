from __future__ import annotations

"""Product catalog store for the mesh retailer.

This module loads catalog.json into ProductNode objects and exposes the read-only
queries the dialogue core needs (find_by_id, find by filter, children index).
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .utils import normalize_key

logger = logging.getLogger("meshbot.catalog")

SIZE_PAIR_RE = re.compile(r"(\d+(?:\.\d+)?)\s*m?\s*[x×*]\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
SIZE_LENGTH_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:m|mts?|metros?)?\s*$", re.IGNORECASE)


@dataclass
class StoreLink:
    """Marketplace listing URL; the preferred one is shown to customers."""
    url: str
    preferred: bool = False


@dataclass
class ProductNode:
    """One catalog tree entry; only sellable nodes may be offered."""
    id: str
    name: str
    parent_id: Optional[str] = None
    sellable: bool = False
    active: bool = True
    size: str = ""
    price: Optional[float] = None
    stock: Optional[int] = None
    wholesale_min_qty: Optional[int] = None
    links: List[StoreLink] = field(default_factory=list)
    aliases: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def preferred_link(self) -> Optional[str]:
        for link in self.links:
            if link.preferred and link.url:
                return link.url
        for link in self.links:
            if link.url:
                return link.url
        return None

    @property
    def dimensions(self) -> Optional[Tuple[float, float]]:
        """Size string parsed as (short side, long side), or None."""
        match = SIZE_PAIR_RE.search(self.size or "")
        if not match:
            return None
        a, b = float(match.group(1)), float(match.group(2))
        return (min(a, b), max(a, b))

    @property
    def length(self) -> Optional[float]:
        """Size string parsed as a single linear length ("18 m")."""
        match = SIZE_LENGTH_RE.match(self.size or "")
        if not match:
            return None
        return float(match.group(1))

    @property
    def area(self) -> Optional[float]:
        dims = self.dimensions
        if not dims:
            return None
        return round(dims[0] * dims[1], 4)


@dataclass
class CatalogMeta:
    """Metadata describing the catalog file version for logging."""
    file_name: str
    updated_at: str
    sha256: str


class CatalogStore:
    """In-memory read model over the product tree."""

    def __init__(self, nodes: Iterable[ProductNode], meta: Optional[CatalogMeta] = None) -> None:
        """Purpose: Index nodes by id and by parent for tree queries.
        Inputs/Outputs: Input is an iterable of ProductNode and optional meta; no return.
        Side Effects / State: Builds _by_id and _children dictionaries.
        Dependencies: ProductNode.
        Failure Modes: Duplicate ids keep the last node and log a warning.
        If Removed: Navigator and flows have no product data.
        Testing Notes: Build from a handful of nodes and query children.
        """
        # Build id and parent indexes once; the core never writes to the catalog.
        self._by_id: Dict[str, ProductNode] = {}
        self._children: Dict[Optional[str], List[str]] = {}
        self.meta = meta
        for node in nodes:
            if node.id in self._by_id:
                logger.warning("catalog=duplicate_id id=%s", node.id)
            self._by_id[node.id] = node
        for node in self._by_id.values():
            self._children.setdefault(node.parent_id, []).append(node.id)

    @classmethod
    def from_file(cls, path: Path) -> "CatalogStore":
        """Purpose: Load and normalize catalog data from the resource file.
        Inputs/Outputs: Input is the catalog JSON path; returns a CatalogStore.
        Side Effects / State: Reads file contents and computes hash/mtime for logs.
        Dependencies: Uses json, hashlib, and _node_from_record.
        Failure Modes: JSON decode errors and missing files raise to the caller.
        If Removed: The service cannot start with real product data.
        Testing Notes: Use resources/catalog.json and validate node count.
        """
        # Read bytes for hashing and parse JSON into nodes.
        raw_bytes = path.read_bytes()
        meta = CatalogMeta(
            file_name=path.name,
            updated_at=datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
            sha256=hashlib.sha256(raw_bytes).hexdigest(),
        )
        data = json.loads(raw_bytes.decode("utf-8-sig"))
        records = data.get("products", []) if isinstance(data, dict) else data
        nodes = [_node_from_record(record) for record in records if isinstance(record, dict)]
        logger.info("catalog=loaded file=%s nodes=%s sha256=%s", meta.file_name, len(nodes), meta.sha256[:12])
        return cls(nodes, meta)

    def find_by_id(self, node_id: Optional[str]) -> Optional[ProductNode]:
        if not node_id:
            return None
        return self._by_id.get(node_id)

    def child_ids(self, parent_id: Optional[str]) -> List[str]:
        return list(self._children.get(parent_id, []))

    def find(
        self,
        sellable: Optional[bool] = None,
        active: Optional[bool] = True,
        size_key: Optional[str] = None,
        where: Optional[Callable[[ProductNode], bool]] = None,
    ) -> List[ProductNode]:
        """Purpose: Filter catalog nodes by sellable/active flags and size.
        Inputs/Outputs: Optional flag filters, a normalized size key ("4x6") and a
            predicate; returns matching nodes in catalog order.
        Side Effects / State: None.
        Dependencies: normalize_key for size comparison.
        Failure Modes: None; no match returns an empty list.
        If Removed: Global size lookups (no locked subtree) are impossible.
        Testing Notes: size_key must match both "4x6" and "6 x 4 m".
        """
        # Apply each filter in turn; size keys compare order-insensitively.
        results = []
        for node in self._by_id.values():
            if sellable is not None and node.sellable != sellable:
                continue
            if active is not None and node.active != active:
                continue
            if size_key and not _size_matches_key(node, size_key):
                continue
            if where and not where(node):
                continue
            results.append(node)
        return results

    def roots(self) -> List[ProductNode]:
        return [self._by_id[node_id] for node_id in self.child_ids(None)]


def _size_matches_key(node: ProductNode, size_key: str) -> bool:
    dims = node.dimensions
    if dims:
        wanted = SIZE_PAIR_RE.search(size_key)
        if not wanted:
            return False
        a, b = float(wanted.group(1)), float(wanted.group(2))
        return abs(dims[0] - min(a, b)) < 1e-6 and abs(dims[1] - max(a, b)) < 1e-6
    return normalize_key(node.size) == normalize_key(size_key)


def _node_from_record(record: Dict[str, Any]) -> ProductNode:
    """Map a raw catalog record to ProductNode; unknown keys stay in raw."""
    links = []
    for link in record.get("links", []) or []:
        if isinstance(link, dict) and link.get("url"):
            links.append(StoreLink(url=str(link["url"]), preferred=bool(link.get("preferred", False))))
        elif isinstance(link, str) and link:
            links.append(StoreLink(url=link))
    price = record.get("price")
    return ProductNode(
        id=str(record["id"]),
        name=str(record.get("name", "")).strip(),
        parent_id=str(record["parent_id"]) if record.get("parent_id") else None,
        sellable=bool(record.get("sellable", False)),
        active=record.get("active", True) is not False,
        size=str(record.get("size") or "").strip(),
        price=float(price) if price is not None else None,
        stock=record.get("stock"),
        wholesale_min_qty=record.get("wholesale_min_qty"),
        links=links,
        aliases=[str(alias) for alias in record.get("aliases", []) or []],
        raw=record,
    )
