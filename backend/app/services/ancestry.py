"""Batch lineage graph.

Built per organisation (or per batch lineage) from two edge sources, unioned:
  - batches.transplanted_from      (primary parent, one per batch)
  - batch_ancestry                 (weighted split / transplant edges)

Nodes live in an arena keyed by batch id.  Edges are cycle-checked on
insert; an edge that would make a batch its own ancestor is dropped and
reported.  A parent id with no batch behind it becomes a "ghost" node so
traversal still succeeds, and is reported as well.  Reported problems are
collected in `graph.issues` for reconciliation.

Read-only: nothing here writes batch data.
"""

from collections import deque
from dataclasses import dataclass, field

from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import ResourceNotFoundError
from app.models.tenant.batch import Batch
from app.models.tenant.batch_ancestry import BatchAncestry


@dataclass
class AncestryNode:
    id: str
    batch_number: str | None = None
    ghost: bool = False
    # neighbour id → edge proportion
    parents: dict[str, float | None] = field(default_factory=dict)
    children: dict[str, float | None] = field(default_factory=dict)


class AncestryGraph:
    def __init__(self):
        self.nodes: dict[str, AncestryNode] = {}
        self.issues: list[dict] = []

    # ── Construction ─────────────────────────────────────────

    def add_node(self, batch_id: str, batch_number: str | None = None) -> AncestryNode:
        node = self.nodes.get(batch_id)
        if node is None:
            node = self.nodes[batch_id] = AncestryNode(id=batch_id, batch_number=batch_number)
        return node

    def _resolve(self, batch_id: str, parent_id: str, child_id: str) -> AncestryNode:
        """Return the node for `batch_id`, synthesising a ghost if it is unknown."""
        node = self.nodes.get(batch_id)
        if node is None:
            node = self.nodes[batch_id] = AncestryNode(id=batch_id, ghost=True)
        if node.ghost:
            self.issues.append({
                "type": "ancestry_ghost",
                "ghost_batch_id": batch_id,
                "parent_batch_id": parent_id,
                "child_batch_id": child_id,
            })
        return node

    def add_edge(
        self,
        parent_id: str,
        child_id: str,
        proportion: float | None = None,
    ) -> bool:
        """Link parent → child.  Returns False if the edge was rejected as a cycle."""
        child = self._resolve(child_id, parent_id, child_id)
        if parent_id in child.parents:
            # Same edge from both sources; keep the weighted one
            if proportion is not None:
                child.parents[parent_id] = proportion
                self.nodes[parent_id].children[child_id] = proportion
            return True

        if parent_id == child_id or self._is_ancestor(child_id, of=parent_id):
            self.issues.append({
                "type": "ancestry_cycle",
                "parent_batch_id": parent_id,
                "child_batch_id": child_id,
            })
            return False

        parent = self._resolve(parent_id, parent_id, child_id)
        child.parents[parent_id] = proportion
        parent.children[child_id] = proportion
        return True

    def _is_ancestor(self, candidate: str, *, of: str) -> bool:
        seen = set()
        stack = [of]
        while stack:
            current = stack.pop()
            if current == candidate:
                return True
            if current in seen or current not in self.nodes:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].parents)
        return False

    # ── Traversal ────────────────────────────────────────────

    def _node(self, batch_id: str) -> AncestryNode:
        node = self.nodes.get(batch_id)
        if node is None:
            raise ResourceNotFoundError("Batch", batch_id)
        return node

    def ancestors_of(self, batch_id: str) -> list[dict]:
        """All ancestors, nearest first (breadth-first), each listed once."""
        start = self._node(batch_id)
        visited = {batch_id}
        queue = deque((pid, prop, 1) for pid, prop in start.parents.items())
        ancestors = []
        while queue:
            parent_id, proportion, depth = queue.popleft()
            if parent_id in visited:
                continue
            visited.add(parent_id)
            node = self.nodes[parent_id]
            ancestors.append({
                "id": node.id,
                "batch_number": node.batch_number,
                "depth": depth,
                "proportion": proportion,
                "ghost": node.ghost,
            })
            queue.extend((pid, prop, depth + 1) for pid, prop in node.parents.items())
        return ancestors

    def descendants_of(self, batch_id: str) -> dict:
        """Descendant tree rooted at `batch_id`.

        A batch merged from two branches appears under both.  The path set
        stops traversal if a cycle slipped past construction.
        """
        def build(node_id: str, proportion: float | None, path: frozenset) -> dict:
            node = self.nodes[node_id]
            path = path | {node_id}
            return {
                "id": node.id,
                "batch_number": node.batch_number,
                "proportion": proportion,
                "ghost": node.ghost,
                "children": [
                    build(child_id, prop, path)
                    for child_id, prop in node.children.items()
                    if child_id not in path
                ],
            }

        self._node(batch_id)
        return build(batch_id, None, frozenset())

    # ── Loading ──────────────────────────────────────────────

    @classmethod
    async def load(cls, db: AsyncSession, org_id: str) -> "AncestryGraph":
        """Build the lineage graph for one organisation."""
        graph = cls()
        await graph._populate(db, org_id)
        return graph

    @classmethod
    async def load_lineage(cls, db: AsyncSession, org_id: str, batch_id: str) -> "AncestryGraph":
        """Build only the ancestors and descendants of `batch_id`.

        Walks one generation per query in each direction, so the cost
        follows the depth of the lineage, not the size of the organisation.
        """
        ids = {batch_id}
        for upward in (True, False):
            seen = {batch_id}
            frontier = {batch_id}
            while frontier:
                frontier = await _next_generation(db, org_id, frontier, upward) - seen
                seen |= frontier
            ids |= seen

        graph = cls()
        await graph._populate(db, org_id, ids)
        return graph

    async def _populate(self, db: AsyncSession, org_id: str, ids: set[str] | None = None) -> None:
        batch_stmt = (
            select(Batch.id, Batch.batch_number, Batch.transplanted_from)
            .where(Batch.org_id == org_id)
            .order_by(Batch.created_at, Batch.id)
        )
        edge_stmt = (
            select(
                BatchAncestry.parent_batch_id,
                BatchAncestry.child_batch_id,
                BatchAncestry.proportion,
            )
            .where(BatchAncestry.org_id == org_id)
            .order_by(BatchAncestry.created_at, BatchAncestry.id)
        )
        if ids is not None:
            batch_stmt = batch_stmt.where(Batch.id.in_(sorted(ids)))
            edge_stmt = edge_stmt.where(
                BatchAncestry.parent_batch_id.in_(sorted(ids)),
                BatchAncestry.child_batch_id.in_(sorted(ids)),
            )

        batches = (await db.execute(batch_stmt)).all()
        for batch_id, batch_number, _ in batches:
            self.add_node(batch_id, batch_number)

        for parent_id, child_id, proportion in (await db.execute(edge_stmt)).all():
            self.add_edge(parent_id, child_id, proportion)

        for batch_id, _, parent_id in batches:
            if parent_id and (ids is None or parent_id in ids):
                self.add_edge(parent_id, batch_id)


async def _next_generation(
    db: AsyncSession, org_id: str, frontier: set[str], upward: bool
) -> set[str]:
    """Parents (upward) or children of every id in `frontier`, from both edge sources."""
    if upward:
        linked = select(BatchAncestry.parent_batch_id).where(
            BatchAncestry.org_id == org_id,
            BatchAncestry.child_batch_id.in_(sorted(frontier)),
        )
        primary = select(Batch.transplanted_from).where(
            Batch.org_id == org_id,
            Batch.id.in_(sorted(frontier)),
            Batch.transplanted_from.is_not(None),
        )
    else:
        linked = select(BatchAncestry.child_batch_id).where(
            BatchAncestry.org_id == org_id,
            BatchAncestry.parent_batch_id.in_(sorted(frontier)),
        )
        primary = select(Batch.id).where(
            Batch.org_id == org_id,
            Batch.transplanted_from.in_(sorted(frontier)),
        )
    result = await db.execute(union(linked, primary))
    return set(result.scalars().all())
