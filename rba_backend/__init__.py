"""rba_backend: incremental Relative Bundle Adjustment.

This package provides:
- A relative graph state (k2k pose edges, k2f observations, relative landmarks)
- Depth-bounded spanning trees, maintained incrementally
- A BFS visitor framework for selecting local areas
- Sparse block Jacobians/Hessians and a Schur-complement Levenberg-Marquardt solver
- Pluggable pose algebras (SE2/SE3), sensor models and edge-creation policies
- A JSON keyframe dataset loader and an incremental runner
- A CLI entry point (see main.py)

Design intent:
Poses are only ever stored relative to other keyframes, so the cost of
ingesting a keyframe depends on the size of the local area rather than on
the size of the whole map.
"""
from .config import RbaParameters
from .engine import RbaEngine
from .models import (
    NewObservation,
    NewKeyframeInfo,
    OptimizeLocalAreaParams,
    OptimizeResults,
    RbaContractError,
)

__all__ = ["bfs", "config", "engine", "export", "hessian", "jacobians", "lie", "loader",
           "models", "policies", "robust", "runner", "sensors", "solver", "spanning_tree", "state",
           "RbaEngine", "RbaParameters", "NewObservation", "NewKeyframeInfo",
           "OptimizeLocalAreaParams", "OptimizeResults", "RbaContractError"]
__version__ = "0.1.0"
