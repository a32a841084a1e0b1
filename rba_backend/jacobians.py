"""Observation residuals and Jacobians w.r.t. k2k edges and landmarks.

An observation made by keyframe ``o`` of landmark ``l`` (base ``b``, relative
position ``x``) predicts ``h = sensor.observe(T_o_b * x)``, where ``T_o_b``
comes from the spanning tree of ``o``. Only the edges along that tree path
influence the prediction, so each observation yields a handful of small
dense blocks.
"""
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AbstractSet, Dict, List, Optional, Tuple

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from .state import RbaProblemState


@dataclass
class ObservationLinearization:
    obs_id: int
    landmark_id: int
    residual: np.ndarray
    dh_dAp: Dict[int, np.ndarray] = field(default_factory=dict)
    dh_df: Optional[np.ndarray] = None


def observation_path(state: "RbaProblemState", obs_id: int) -> Optional[List[Tuple[int, bool]]]:
    """Edges from the observer down to the landmark's base, or None when the
    base lies outside the observer's spanning tree."""
    obs = state.k2f_edges[obs_id]
    base_id = state.landmark(obs.landmark_id).base_id
    return state.spanning_tree.path(obs.observer_id, base_id)


def predict_from(state: "RbaProblemState", obs_id: int, T_o_b: np.ndarray) -> np.ndarray:
    """Predicted measurement given the base pose in the observer frame."""
    lm = state.landmark(state.k2f_edges[obs_id].landmark_id)
    p_o = state.algebra.transform_point(T_o_b, state.caps.landmark.to_point(lm.position))
    return state.caps.sensor.observe(p_o)


def predict(state: "RbaProblemState", obs_id: int) -> np.ndarray:
    obs = state.k2f_edges[obs_id]
    base_id = state.landmark(obs.landmark_id).base_id
    return predict_from(state, obs_id, state.spanning_tree.get_pose(obs.observer_id, base_id))


def residual(state: "RbaProblemState", obs_id: int) -> np.ndarray:
    obs = state.k2f_edges[obs_id]
    return state.caps.sensor.residual(obs.z, predict(state, obs_id))


def linearize(state: "RbaProblemState",
              obs_id: int,
              edge_ids: AbstractSet[int],
              landmark_ids: AbstractSet[int],
              numeric: bool = False,
              step: float = 1e-6) -> ObservationLinearization:
    """Residual plus the non-zero Jacobian blocks of one observation.

    Blocks are returned only for edges in `edge_ids` lying on the tree path
    and for the landmark if it is in `landmark_ids`.
    """
    obs = state.k2f_edges[obs_id]
    lm = state.landmark(obs.landmark_id)
    path = observation_path(state, obs_id)
    if path is None:
        raise KeyError(f"Base {lm.base_id} of observation #{obs_id} is outside the observer's spanning tree")
    h = predict(state, obs_id)
    out = ObservationLinearization(obs_id=obs_id,
                                   landmark_id=obs.landmark_id,
                                   residual=state.caps.sensor.residual(obs.z, h))

    opt_path = [(e, fwd) for e, fwd in path if e in edge_ids]
    opt_lm = not obs.known_position and obs.landmark_id in landmark_ids
    if not opt_path and not opt_lm:
        return out
    if numeric:
        _numeric_blocks(state, obs_id, path, opt_path, opt_lm, step, out)
        return out

    algebra = state.algebra
    tree = state.spanning_tree
    o = obs.observer_id
    T_o_b = tree.get_pose(o, lm.base_id)
    p_o = algebra.transform_point(T_o_b, state.caps.landmark.to_point(lm.position))
    H_p = state.caps.sensor.jacobian(p_o)

    for edge_id, forward in opt_path:
        u = state.k2k_edges[edge_id].from_id
        T_o_u = tree.get_pose(o, u)
        q_u = algebra.inverse_transform_point(T_o_u, p_o)
        J = H_p @ algebra.rotation(T_o_u) @ algebra.point_jacobian(q_u)
        out.dh_dAp[edge_id] = J if forward else -J

    if opt_lm:
        out.dh_df = H_p @ algebra.rotation(T_o_b) @ state.caps.landmark.point_jacobian(lm.position)
    return out


def _predict_along(state: "RbaProblemState",
                   path: List[Tuple[int, bool]],
                   x: np.ndarray,
                   edge_override: Optional[Tuple[int, np.ndarray]] = None) -> np.ndarray:
    algebra = state.algebra
    T = algebra.identity()
    for edge_id, forward in path:
        if edge_override is not None and edge_override[0] == edge_id:
            P = edge_override[1]
        else:
            P = state.k2k_edges[edge_id].pose
        T = T @ (P if forward else algebra.inverse(P))
    return state.caps.sensor.observe(algebra.transform_point(T, state.caps.landmark.to_point(x)))


def _numeric_blocks(state, obs_id, path, opt_path, opt_lm, step, out) -> None:
    sensor = state.caps.sensor
    algebra = state.algebra
    lm = state.landmark(out.landmark_id)
    x = lm.position

    for edge_id, _ in opt_path:
        pose = state.k2k_edges[edge_id].pose
        J = np.zeros((sensor.obs_dims, algebra.dims))
        for k in range(algebra.dims):
            d = np.zeros(algebra.dims)
            d[k] = step
            h_plus = _predict_along(state, path, x, (edge_id, algebra.perturb(pose, d)))
            h_minus = _predict_along(state, path, x, (edge_id, algebra.perturb(pose, -d)))
            J[:, k] = sensor.residual(h_plus, h_minus) / (2.0 * step)
        out.dh_dAp[edge_id] = J

    if opt_lm:
        dims = state.caps.landmark.dims
        J = np.zeros((sensor.obs_dims, dims))
        for k in range(dims):
            d = np.zeros(dims)
            d[k] = step
            h_plus = _predict_along(state, path, x + d)
            h_minus = _predict_along(state, path, x - d)
            J[:, k] = sensor.residual(h_plus, h_minus) / (2.0 * step)
        out.dh_df = J
