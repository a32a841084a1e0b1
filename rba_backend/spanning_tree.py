"""Depth-bounded spanning trees rooted at every keyframe.

Two layers are kept per root:

- symbolic: for every keyframe within ``max_tree_depth`` edges, the
  predecessor towards the root, the distance and the joining edge;
- numeric: the composed pose ``T_root_kf``, computed lazily and dropped
  whenever an edge on its path changes.

The symbolic layer is extended incrementally on each new k2k edge by
relaxing distances from the edge endpoints, never by a full recompute.
"""
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple
import logging

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from .state import RbaProblemState

logger = logging.getLogger("rba.spanning_tree")


@dataclass
class TreeEntry:
    prev: int
    dist: int
    edge_id: int


class SpanningTreeCache:

    def __init__(self, state: "RbaProblemState", max_depth: int = 3):
        self.state = state
        self.max_depth = int(max_depth)
        self.sym: Dict[int, Dict[int, TreeEntry]] = {}
        self.num: Dict[int, Dict[int, np.ndarray]] = {}
        self._children: Dict[int, Dict[int, Set[int]]] = {}
        self._edge_users: Dict[int, Set[Tuple[int, int]]] = {}
        self._scratch: List[bool] = []
        self.num_numeric_updates = 0

    def clear(self) -> None:
        self.sym.clear()
        self.num.clear()
        self._children.clear()
        self._edge_users.clear()
        self.num_numeric_updates = 0

    def add_keyframe(self, kf_id: int) -> None:
        self.sym[kf_id] = {}
        self.num[kf_id] = {}
        self._children[kf_id] = {}

    def remove_keyframe(self, kf_id: int) -> None:
        # only valid for a keyframe without edges: no other tree refers to it
        del self.sym[kf_id]
        del self.num[kf_id]
        del self._children[kf_id]

    # ---- symbolic layer ----
    def distance(self, root: int, kf: int) -> Optional[int]:
        if root == kf:
            return 0
        entry = self.sym.get(root, {}).get(kf)
        return entry.dist if entry is not None else None

    def tree(self, root: int) -> Dict[int, TreeEntry]:
        """Symbolic entries of the tree rooted at `root` (root itself excluded)."""
        return self.sym[root]

    def path(self, root: int, kf: int) -> Optional[List[Tuple[int, bool]]]:
        """Edges from `root` down to `kf` as (edge_id, forward) pairs.

        `forward` is True when the edge is traversed from its `from_id` to
        its `to_id`. None if `kf` is not within the tree.
        """
        if kf == root:
            return []
        tree = self.sym[root]
        if kf not in tree:
            return None
        out: List[Tuple[int, bool]] = []
        node = kf
        while node != root:
            entry = tree[node]
            out.append((entry.edge_id, self.state.k2k_edges[entry.edge_id].from_id == entry.prev))
            node = entry.prev
        out.reverse()
        return out

    def _set_entry(self, root: int, kf: int, prev: int, edge_id: int, dist: int) -> None:
        tree = self.sym[root]
        children = self._children[root]
        old = tree.get(kf)
        if old is not None:
            if old.prev != prev or old.edge_id != edge_id:
                self._invalidate_subtree(root, kf)
            children[old.prev].discard(kf)
            self._edge_users[old.edge_id].discard((root, kf))
        tree[kf] = TreeEntry(prev=prev, dist=dist, edge_id=edge_id)
        children.setdefault(prev, set()).add(kf)
        self._edge_users.setdefault(edge_id, set()).add((root, kf))

    def update_symbolic_new_edge(self, edge_id: int) -> None:
        edge = self.state.k2k_edges[edge_id]
        u, v = edge.from_id, edge.to_id
        roots = {u, v}
        roots.update(self.sym[u].keys())
        roots.update(self.sym[v].keys())
        for root in sorted(roots):
            self._relax(root, edge_id)

    def _relax(self, root: int, edge_id: int) -> None:
        edge = self.state.k2k_edges[edge_id]
        frontier = deque()
        for a, b in ((edge.from_id, edge.to_id), (edge.to_id, edge.from_id)):
            da = self.distance(root, a)
            if da is None or da >= self.max_depth or b == root:
                continue
            db = self.distance(root, b)
            if db is None or da + 1 < db:
                self._set_entry(root, b, a, edge_id, da + 1)
                frontier.append(b)

        while frontier:
            node = frontier.popleft()
            d = self.distance(root, node)
            if d >= self.max_depth:
                continue
            for nbr_edge, nbr in self.state.neighbors(node):
                if nbr == root:
                    continue
                dn = self.distance(root, nbr)
                if dn is None or d + 1 < dn:
                    self._set_entry(root, nbr, node, nbr_edge, d + 1)
                    frontier.append(nbr)

    # ---- numeric layer ----
    def get_pose(self, root: int, kf: int) -> np.ndarray:
        """Pose of `kf` in the frame of `root` (T_root_kf), composed lazily."""
        if kf == root:
            return self.state.algebra.identity()
        tree = self.sym[root]
        if kf not in tree:
            raise KeyError(f"Keyframe {kf} is not within the spanning tree of {root}")
        cache = self.num[root]
        cached = cache.get(kf)
        if cached is not None:
            return cached

        chain = []
        node = kf
        while node != root and node not in cache:
            chain.append(node)
            node = tree[node].prev
        T = cache[node] if node != root else self.state.algebra.identity()
        algebra = self.state.algebra
        for node in reversed(chain):
            entry = tree[node]
            edge = self.state.k2k_edges[entry.edge_id]
            if edge.from_id == entry.prev:
                T = T @ edge.pose
            else:
                T = T @ algebra.inverse(edge.pose)
            cache[node] = T
            self.num_numeric_updates += 1
        return T

    def is_numeric_fresh(self, root: int, kf: int) -> bool:
        return kf == root or kf in self.num.get(root, {})

    def _invalidate_subtree(self, root: int, kf: int) -> None:
        cache = self.num[root]
        if kf not in cache:
            # a stale node never has fresh descendants
            return
        children = self._children[root]
        stack = [kf]
        while stack:
            node = stack.pop()
            if cache.pop(node, None) is None:
                continue
            stack.extend(children.get(node, ()))

    def invalidate_edge(self, edge_id: int) -> None:
        for root, kf in self._edge_users.get(edge_id, ()):
            self._invalidate_subtree(root, kf)

    def invalidate_all(self) -> None:
        for cache in self.num.values():
            cache.clear()

    # ---- whole-graph utilities ----
    def rebuild(self) -> None:
        """Recompute every symbolic tree from the graph state."""
        self.clear()
        for kf in range(self.state.num_keyframes):
            self.add_keyframe(kf)
        for edge in self.state.k2k_edges:
            self.update_symbolic_new_edge(edge.id)
        logger.info("Rebuilt spanning trees for %d keyframes", self.state.num_keyframes)

    def create_complete_spanning_tree(self,
                                      root: int,
                                      max_depth: Optional[int] = None,
                                      scratch: Optional[List[bool]] = None
                                      ) -> Tuple[Dict[int, TreeEntry], Dict[int, np.ndarray]]:
        """BFS over the whole graph from `root`, composing poses as it goes.

        Independent of the cache. `scratch` is a caller-owned visited buffer;
        pass one per thread when calling concurrently.
        """
        self.state.require_keyframe(root)
        n = self.state.num_keyframes
        visited = self._scratch if scratch is None else scratch
        visited[:] = [False] * n
        algebra = self.state.algebra

        entries: Dict[int, TreeEntry] = {}
        poses: Dict[int, np.ndarray] = {root: algebra.identity()}
        visited[root] = True
        dist = {root: 0}
        queue = deque([root])
        while queue:
            node = queue.popleft()
            if max_depth is not None and dist[node] >= max_depth:
                continue
            for edge_id, nbr in self.state.neighbors(node):
                if visited[nbr]:
                    continue
                visited[nbr] = True
                edge = self.state.k2k_edges[edge_id]
                rel = edge.pose if edge.from_id == node else algebra.inverse(edge.pose)
                poses[nbr] = poses[node] @ rel
                dist[nbr] = dist[node] + 1
                entries[nbr] = TreeEntry(prev=node, dist=dist[nbr], edge_id=edge_id)
                queue.append(nbr)
        return entries, poses
