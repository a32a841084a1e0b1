import logging
import math
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import RbaParameters
from .hessian import NormalEquations, build_normal_equations, schur_solve
from .jacobians import ObservationLinearization, linearize, residual
from .models import OptimizeResults
from .robust import residual_cost_and_weight

if TYPE_CHECKING:  # pragma: no cover
    from .state import RbaProblemState

logger = logging.getLogger("rba.solver")


class IterationObserver:
    """Receives per-iteration feedback from the solver. Override as needed."""

    def on_iteration(self, iteration: int, total_error: float, lam: float, accepted: bool) -> None:
        pass


class SchurLevenbergMarquardt:
    """Levenberg-Marquardt over k2k edges and relative landmarks.

    The landmark blocks of the damped normal equations are eliminated with
    the Schur complement, the reduced pose system is Cholesky-solved, and
    landmark steps are back-substituted. Steps that do not reduce the
    objective are rolled back.
    """

    def __init__(self,
                 state: "RbaProblemState",
                 params: RbaParameters,
                 observer: Optional[IterationObserver] = None):
        self.state = state
        self.params = params
        self.observer = observer

    # ---- evaluation helpers ----
    def _errors(self, obs_ids: Sequence[int], use_robust: bool,
                residuals: Optional[List[np.ndarray]] = None) -> Tuple[float, float, List[float]]:
        p = self.params
        raw_total = 0.0
        obj_total = 0.0
        weights: List[float] = []
        for k, obs_id in enumerate(obs_ids):
            r = residuals[k] if residuals is not None else residual(self.state, obs_id)
            raw, obj, w = residual_cost_and_weight(r, p.obs_noise_std, use_robust, p.kernel_param)
            raw_total += raw
            obj_total += obj
            weights.append(w)
        return raw_total, obj_total, weights

    def _linearize(self, obs_ids, edge_set, lm_set) -> List[ObservationLinearization]:
        p = self.params
        return [linearize(self.state, obs_id, edge_set, lm_set,
                          numeric=p.numeric_jacobians, step=p.numeric_jacobian_step)
                for obs_id in obs_ids]

    def _normal_equations(self, lins, weights, edge_cols, lm_cols) -> NormalEquations:
        return build_normal_equations(lins, weights, edge_cols, lm_cols,
                                      self.state.algebra.dims,
                                      self.state.caps.landmark.dims,
                                      self.params.obs_noise_std)

    def _snapshot(self, edge_ids, lm_ids) -> Tuple[Dict[int, np.ndarray], Dict[int, np.ndarray]]:
        st = self.state
        return ({e: st.k2k_edges[e].pose.copy() for e in edge_ids},
                {l: st.unknown_lms[l].position.copy() for l in lm_ids})

    def _restore(self, snapshot) -> None:
        edges, lms = snapshot
        for e, pose in edges.items():
            self.state.update_edge_pose(e, pose)
        for l, pos in lms.items():
            self.state.update_landmark_position(l, pos)

    def _apply_step(self, edge_ids, lm_ids, delta_Ap, delta_f) -> None:
        st = self.state
        for ci, e in enumerate(edge_ids):
            st.update_edge_pose(e, st.algebra.perturb(st.k2k_edges[e].pose, delta_Ap[ci]))
        for cl, l in enumerate(lm_ids):
            st.update_landmark_position(l, st.unknown_lms[l].position + delta_f[cl])

    # ---- main loop ----
    def run(self,
            edge_ids: Sequence[int],
            lm_ids: Sequence[int],
            obs_ids: Sequence[int],
            use_robust_kernel: bool = False) -> OptimizeResults:
        st = self.state
        p = self.params
        edge_ids = list(edge_ids)
        lm_ids = list(lm_ids)
        obs_ids = list(obs_ids)
        edge_set, lm_set = set(edge_ids), set(lm_ids)
        edge_cols = {e: i for i, e in enumerate(edge_ids)}
        lm_cols = {l: i for i, l in enumerate(lm_ids)}

        res = OptimizeResults()
        res.optimized_k2k_edge_indices = edge_ids
        res.optimized_landmark_indices = lm_ids
        res.num_observations = len(obs_ids)
        res.num_kf2kf_edges_optimized = len(edge_ids)
        res.num_kf2lm_edges_optimized = len(lm_ids)
        res.num_lm_optimized = len(lm_ids)
        kfs = set()
        for e in edge_ids:
            kfs.add(st.k2k_edges[e].from_id)
            kfs.add(st.k2k_edges[e].to_id)
        res.num_kf_optimized = len(kfs)
        res.num_total_scalar_optimized = len(edge_ids) * st.algebra.dims + len(lm_ids) * st.caps.landmark.dims

        tree_updates0 = st.spanning_tree.num_numeric_updates
        nobs = len(obs_ids)
        if nobs == 0 or (not edge_ids and not lm_ids):
            res.stop_reason = "nothing_to_optimize"
            res.converged = True
            raw, _, _ = self._errors(obs_ids, False)
            res.total_sqr_error_init = res.total_sqr_error_final = raw
            res.obs_rmse = math.sqrt(raw / nobs) if nobs else 0.0
            res.num_span_tree_numeric_updates = st.spanning_tree.num_numeric_updates - tree_updates0
            return res

        lins = self._linearize(obs_ids, edge_set, lm_set)
        res.num_jacobians = sum(len(lin.dh_dAp) + (lin.dh_df is not None) for lin in lins)
        raw, F, weights = self._errors(obs_ids, use_robust_kernel, [lin.residual for lin in lins])
        res.total_sqr_error_init = raw
        ne = self._normal_equations(lins, weights, edge_cols, lm_cols)

        lam = 1e-3 * ne.max_diagonal()
        if lam <= 0.0:
            lam = 1e-3
        nu = 2.0
        stop_tol = p.max_error_per_obs_to_stop * nobs
        res.stop_reason = "max_iters"

        for it in range(p.max_iters):
            res.num_iters += 1
            accepted = False
            try:
                delta_Ap, delta_f = schur_solve(ne, lam)
            except np.linalg.LinAlgError:
                res.num_solver_failures += 1
                res.num_rejected += 1
                logger.debug("iter %d: damped system not positive definite (lambda=%.3e)", it, lam)
                lam *= nu
                nu *= 2.0
            else:
                delta = np.concatenate([delta_Ap.reshape(-1), delta_f.reshape(-1)])
                predicted = float(delta @ (ne.gradient() + lam * delta))
                if predicted < stop_tol:
                    res.converged = True
                    res.stop_reason = "converged"
                    logger.debug("iter %d: predicted decrease %.3e below tolerance", it, predicted)
                    self._notify(it, F, lam, False)
                    break

                snapshot = self._snapshot(edge_ids, lm_ids)
                self._apply_step(edge_ids, lm_ids, delta_Ap, delta_f)
                new_residuals = [residual(st, obs_id) for obs_id in obs_ids]
                new_raw, F_new, new_weights = self._errors(obs_ids, use_robust_kernel, new_residuals)
                rho = (F - F_new) / predicted

                if rho > 0.0:
                    accepted = True
                    res.num_accepted += 1
                    improvement = F - F_new
                    lam = max(lam * max(1.0 / 3.0, 1.0 - (2.0 * min(rho, p.max_rho) - 1.0) ** 3), 1e-15)
                    nu = 2.0
                    if F > 0.0 and improvement / F >= p.min_error_reduction_ratio_to_relinearize:
                        lins = self._linearize(obs_ids, edge_set, lm_set)
                    else:
                        for lin, r in zip(lins, new_residuals):
                            lin.residual = r
                    ne = self._normal_equations(lins, new_weights, edge_cols, lm_cols)
                    logger.debug("iter %d: accepted, err %.6e -> %.6e rho=%.3f lambda=%.3e",
                                 it, F, F_new, rho, lam)
                    F = F_new
                    if improvement < stop_tol:
                        res.converged = True
                        res.stop_reason = "converged"
                        self._notify(it, F, lam, accepted)
                        break
                else:
                    self._restore(snapshot)
                    res.num_rejected += 1
                    logger.debug("iter %d: rejected, err %.6e -> %.6e lambda=%.3e", it, F, F_new, lam)
                    lam *= nu
                    nu *= 2.0

            self._notify(it, F, lam, accepted)
            if not accepted and lam > p.max_lambda:
                res.converged = False
                res.stop_reason = "max_lambda"
                break

        res.final_lambda = lam
        final_raw, _, _ = self._errors(obs_ids, False)
        res.total_sqr_error_final = final_raw
        res.obs_rmse = math.sqrt(final_raw / nobs)

        if p.compute_condition_number and edge_ids:
            res.HAp_condition_number = float(np.linalg.cond(ne.HAp_dense()))
        if p.compute_sparsity_stats:
            self._sparsity_stats(res, lins, ne)
        if p.recover_landmark_covariance:
            for l, cl in lm_cols.items():
                blk = ne.Hf.get(cl, cl)
                if blk is not None:
                    st.unknown_lms[l].covariance = np.linalg.pinv(blk)

        res.num_span_tree_numeric_updates = st.spanning_tree.num_numeric_updates - tree_updates0
        logger.debug("LM finished: %s", res.summary())
        return res

    def _notify(self, it, F, lam, accepted) -> None:
        if self.observer is not None:
            self.observer.on_iteration(it, F, lam, accepted)

    def _sparsity_stats(self, res: OptimizeResults, lins, ne: NormalEquations) -> None:
        st = self.state
        obs_dims = st.caps.sensor.obs_dims
        pd, ld = st.algebra.dims, st.caps.landmark.dims
        n_rows = len(lins) * obs_dims
        res.sparsity_dh_dAp_nnz = sum(int(np.count_nonzero(J)) for lin in lins for J in lin.dh_dAp.values())
        res.sparsity_dh_dAp_max_size = n_rows * ne.num_edges * pd
        res.sparsity_dh_df_nnz = sum(int(np.count_nonzero(lin.dh_df)) for lin in lins if lin.dh_df is not None)
        res.sparsity_dh_df_max_size = n_rows * ne.num_lms * ld
        res.sparsity_HAp_nnz = ne.HAp.nnz()
        res.sparsity_HAp_max_size = (ne.num_edges * pd) ** 2
        res.sparsity_Hf_nnz = ne.Hf.nnz()
        res.sparsity_Hf_max_size = (ne.num_lms * ld) ** 2
        res.sparsity_HApf_nnz = ne.HApf.nnz()
        res.sparsity_HApf_max_size = ne.num_edges * pd * ne.num_lms * ld
