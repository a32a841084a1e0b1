from collections import deque
from typing import TYPE_CHECKING, Dict, Optional, Set

if TYPE_CHECKING:  # pragma: no cover
    from .state import RbaProblemState


class BFSVisitor:
    """Permissive default visitor: accepts everything, does nothing.

    Subclasses override any of the filter/visit pairs. The same object may
    be passed for all four visitor roles.
    """

    def filter_kf(self, kf_id: int, dist: int) -> bool:
        return True

    def visit_kf(self, kf_id: int, dist: int) -> None:
        pass

    def filter_lm(self, lm_id: int) -> bool:
        return True

    def visit_lm(self, lm_id: int) -> None:
        pass

    def filter_k2k(self, from_kf: int, to_kf: int, edge_id: int, dist: int) -> bool:
        return True

    def visit_k2k(self, from_kf: int, to_kf: int, edge_id: int, dist: int) -> None:
        pass

    def filter_k2f(self, kf_id: int, obs_id: int, dist: int) -> bool:
        return True

    def visit_k2f(self, kf_id: int, obs_id: int, dist: int) -> None:
        pass


def bfs_visitor(state: "RbaProblemState",
                root_id: int,
                max_distance: int,
                kf_visitor: Optional[BFSVisitor] = None,
                lm_visitor: Optional[BFSVisitor] = None,
                k2k_visitor: Optional[BFSVisitor] = None,
                k2f_visitor: Optional[BFSVisitor] = None) -> None:
    """Breadth-first walk over keyframes, visiting edges and landmarks once.

    A keyframe at distance ``d`` visits its observations (and the observed
    landmarks); its k2k edges are followed only while ``d < max_distance``.
    A k2k edge is visited when it is followed from a keyframe at
    ``d < max_distance`` and leads either to a keyframe accepted by
    ``filter_kf`` or to one already reached. Edges joining two keyframes
    that both lie at ``max_distance`` are never visited.
    """
    state.require_keyframe(root_id)
    default = BFSVisitor()
    kf_visitor = kf_visitor or default
    lm_visitor = lm_visitor or default
    k2k_visitor = k2k_visitor or default
    k2f_visitor = k2f_visitor or default

    if not kf_visitor.filter_kf(root_id, 0):
        return

    dist: Dict[int, int] = {root_id: 0}
    visited_edges: Set[int] = set()
    visited_lms: Set[int] = set()
    queue = deque([root_id])
    while queue:
        kf = queue.popleft()
        d = dist[kf]
        kf_visitor.visit_kf(kf, d)

        for obs_id in state.observations_by(kf):
            if k2f_visitor.filter_k2f(kf, obs_id, d):
                k2f_visitor.visit_k2f(kf, obs_id, d)
            lm_id = state.k2f_edges[obs_id].landmark_id
            if lm_id not in visited_lms:
                visited_lms.add(lm_id)
                if lm_visitor.filter_lm(lm_id):
                    lm_visitor.visit_lm(lm_id)

        if d >= max_distance:
            continue
        for edge_id, nbr in state.neighbors(kf):
            if edge_id in visited_edges:
                continue
            if nbr not in dist:
                if not kf_visitor.filter_kf(nbr, d + 1):
                    continue
                dist[nbr] = d + 1
                queue.append(nbr)
            visited_edges.add(edge_id)
            if k2k_visitor.filter_k2k(kf, nbr, edge_id, d):
                k2k_visitor.visit_k2k(kf, nbr, edge_id, d)
