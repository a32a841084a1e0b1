"""Tuning parameters for the relative bundle adjustment engine."""

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping


@dataclass
class RbaParameters:
    """Parameters of the RBA engine.

    Defaults follow the usual local-area settings (tree depth 3, 20 LM
    iterations). CLI overrides are applied in main.py.
    """

    # Spanning trees / local area
    max_tree_depth: int = 3
    """Maximum depth of the incrementally maintained spanning trees"""

    max_optimize_depth: int = 3
    """Topological radius of the local area optimized after each new keyframe"""

    # Optimization
    optimize_new_edges_alone: bool = True
    """Optimize the new edges alone before the local-area solve"""

    use_robust_kernel: bool = False
    use_robust_kernel_stage1: bool = False
    kernel_param: float = 3.0
    """Pseudo-Huber kernel width, in units of whitened residual"""

    max_iters: int = 20
    max_error_per_obs_to_stop: float = 1e-9
    max_rho: float = 1.0
    max_lambda: float = 1e20
    min_error_reduction_ratio_to_relinearize: float = 0.01

    numeric_jacobians: bool = False
    """Use central differences instead of the analytical Jacobians (slow)"""

    numeric_jacobian_step: float = 1e-6

    compute_condition_number: bool = False
    compute_sparsity_stats: bool = False
    recover_landmark_covariance: bool = False

    # Sensor noise (isotropic)
    obs_noise_std: float = 1.0

    def validate(self) -> "RbaParameters":
        if self.max_tree_depth < 1:
            raise ValueError(f"max_tree_depth must be >= 1, got {self.max_tree_depth}")
        if self.max_optimize_depth < 0:
            raise ValueError(f"max_optimize_depth must be >= 0, got {self.max_optimize_depth}")
        if self.max_iters < 0:
            raise ValueError(f"max_iters must be >= 0, got {self.max_iters}")
        if self.kernel_param <= 0.0:
            raise ValueError(f"kernel_param must be > 0, got {self.kernel_param}")
        if self.obs_noise_std <= 0.0:
            raise ValueError(f"obs_noise_std must be > 0, got {self.obs_noise_std}")
        if self.max_lambda <= 0.0:
            raise ValueError(f"max_lambda must be > 0, got {self.max_lambda}")
        if self.numeric_jacobian_step <= 0.0:
            raise ValueError(f"numeric_jacobian_step must be > 0, got {self.numeric_jacobian_step}")
        return self

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "RbaParameters":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown RBA parameters: {', '.join(unknown)}")
        return cls(**dict(values)).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
