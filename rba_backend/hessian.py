"""Sparse block normal equations and their Schur-complement solution."""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.linalg import cho_factor, cho_solve

from .jacobians import ObservationLinearization


class SparseBlockMatrix:
    """Dictionary of dense blocks keyed by (row, col) block index.

    Only non-zero blocks are stored. For symmetric matrices only the upper
    triangle (row <= col) is kept.
    """

    def __init__(self, block_rows: int, block_cols: int, symmetric: bool = False):
        self.block_rows = block_rows
        self.block_cols = block_cols
        self.symmetric = symmetric
        self.blocks: Dict[Tuple[int, int], np.ndarray] = {}

    def __len__(self) -> int:
        return len(self.blocks)

    def __contains__(self, key) -> bool:
        return key in self.blocks

    def add(self, row: int, col: int, block: np.ndarray) -> None:
        if self.symmetric and row > col:
            row, col = col, row
            block = block.T
        cur = self.blocks.get((row, col))
        if cur is None:
            self.blocks[(row, col)] = np.array(block, dtype=float)
        else:
            cur += block

    def get(self, row: int, col: int) -> Optional[np.ndarray]:
        if self.symmetric and row > col:
            blk = self.blocks.get((col, row))
            return None if blk is None else blk.T
        return self.blocks.get((row, col))

    def nnz(self) -> int:
        return sum(int(np.count_nonzero(b)) for b in self.blocks.values())

    def to_dense(self, n_rows: int, n_cols: int) -> np.ndarray:
        br, bc = self.block_rows, self.block_cols
        M = np.zeros((n_rows * br, n_cols * bc))
        for (r, c), blk in self.blocks.items():
            M[r * br:(r + 1) * br, c * bc:(c + 1) * bc] = blk
            if self.symmetric and r != c:
                M[c * bc:(c + 1) * bc, r * br:(r + 1) * br] = blk.T
        return M


@dataclass
class NormalEquations:
    edge_cols: Dict[int, int]
    lm_cols: Dict[int, int]
    pose_dims: int
    lm_dims: int
    HAp: SparseBlockMatrix
    Hf: SparseBlockMatrix
    HApf: SparseBlockMatrix
    g_Ap: np.ndarray
    g_f: np.ndarray
    # per landmark column: edge columns coupled to it
    lm_edges: Dict[int, List[int]] = field(default_factory=dict)

    @property
    def num_edges(self) -> int:
        return len(self.edge_cols)

    @property
    def num_lms(self) -> int:
        return len(self.lm_cols)

    def gradient(self) -> np.ndarray:
        return np.concatenate([self.g_Ap.reshape(-1), self.g_f.reshape(-1)])

    def max_diagonal(self) -> float:
        diag = [0.0]
        for (r, c), blk in self.HAp.blocks.items():
            if r == c:
                diag.append(float(np.max(np.diag(blk))))
        for blk in self.Hf.blocks.values():
            diag.append(float(np.max(np.diag(blk))))
        return max(diag)

    def HAp_dense(self) -> np.ndarray:
        return self.HAp.to_dense(self.num_edges, self.num_edges)


def build_normal_equations(linearizations: Iterable[ObservationLinearization],
                           weights: Iterable[float],
                           edge_cols: Dict[int, int],
                           lm_cols: Dict[int, int],
                           pose_dims: int,
                           lm_dims: int,
                           obs_noise_std: float) -> NormalEquations:
    """Accumulate H = J^T W J and g = J^T W r block by block."""
    ne = NormalEquations(edge_cols=edge_cols,
                         lm_cols=lm_cols,
                         pose_dims=pose_dims,
                         lm_dims=lm_dims,
                         HAp=SparseBlockMatrix(pose_dims, pose_dims, symmetric=True),
                         Hf=SparseBlockMatrix(lm_dims, lm_dims, symmetric=True),
                         HApf=SparseBlockMatrix(pose_dims, lm_dims),
                         g_Ap=np.zeros((len(edge_cols), pose_dims)),
                         g_f=np.zeros((len(lm_cols), lm_dims)))
    inv_var = 1.0 / (obs_noise_std * obs_noise_std)
    for lin, w in zip(linearizations, weights):
        s = w * inv_var
        r = lin.residual
        cols = [(edge_cols[e], J) for e, J in lin.dh_dAp.items()]
        for i, (ci, Ji) in enumerate(cols):
            JiT_W = s * Ji.T
            ne.g_Ap[ci] += JiT_W @ r
            for cj, Jj in cols[i:]:
                ne.HAp.add(ci, cj, JiT_W @ Jj)
        if lin.dh_df is not None:
            cl = lm_cols[lin.landmark_id]
            Jl = lin.dh_df
            JlT_W = s * Jl.T
            ne.g_f[cl] += JlT_W @ r
            ne.Hf.add(cl, cl, JlT_W @ Jl)
            coupled = ne.lm_edges.setdefault(cl, [])
            for ci, Ji in cols:
                if (ci, cl) not in ne.HApf:
                    coupled.append(ci)
                ne.HApf.add(ci, cl, s * Ji.T @ Jl)
    return ne


def schur_solve(ne: NormalEquations, lam: float) -> Tuple[np.ndarray, np.ndarray]:
    """Solve (H + lam I) delta = g by eliminating the landmark blocks.

    Returns (delta_Ap with shape (num_edges, pose_dims), delta_f with shape
    (num_lms, lm_dims)). Raises numpy.linalg.LinAlgError when the damped
    system is not positive definite.
    """
    pd, ld = ne.pose_dims, ne.lm_dims
    n_e, n_l = ne.num_edges, ne.num_lms

    Hf_factors = []
    for cl in range(n_l):
        blk = ne.Hf.get(cl, cl)
        if blk is None:
            blk = np.zeros((ld, ld))
        Hf_factors.append(cho_factor(blk + lam * np.eye(ld)))

    S = ne.HAp_dense() + lam * np.eye(n_e * pd)
    rhs = ne.g_Ap.reshape(-1).copy()
    for cl, edges in ne.lm_edges.items():
        if not edges:
            continue
        W = np.zeros((n_e * pd, ld))
        for ci in edges:
            W[ci * pd:(ci + 1) * pd] = ne.HApf.get(ci, cl)
        HfinvWT = cho_solve(Hf_factors[cl], W.T)
        S -= W @ HfinvWT
        rhs -= W @ cho_solve(Hf_factors[cl], ne.g_f[cl])

    if n_e:
        delta_Ap = cho_solve(cho_factor(S), rhs).reshape(n_e, pd)
    else:
        delta_Ap = np.zeros((0, pd))

    delta_f = np.zeros((n_l, ld))
    for cl in range(n_l):
        b = ne.g_f[cl].copy()
        for ci in ne.lm_edges.get(cl, ()):
            b -= ne.HApf.get(ci, cl).T @ delta_Ap[ci]
        delta_f[cl] = cho_solve(Hf_factors[cl], b)
    return delta_Ap, delta_f
