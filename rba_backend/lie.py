"""Pose algebra capabilities (SE(2) and SE(3)) on homogeneous matrices.

Increments are applied on the left: ``T <- exp(delta) @ T``. The exponential
is the "pseudo" one (rotation and translation handled separately), which has
the same first-order behaviour as the true SE(n) exponential and is all the
solver needs.
"""
import math
from typing import Union

import numpy as np
from scipy.spatial.transform import Rotation


def skew(v: np.ndarray) -> np.ndarray:
    return np.array([[0.0, -v[2], v[1]],
                     [v[2], 0.0, -v[0]],
                     [-v[1], v[0], 0.0]])


def wrap_angle(a: float) -> float:
    return math.atan2(math.sin(a), math.cos(a))


class PoseAlgebra:
    """Common operations; subclasses define dimensions, exp/log and the point Jacobian."""

    name = "base"
    dims = 0        # size of a pose increment
    point_dims = 0  # size of a point in Euclidean space

    def identity(self) -> np.ndarray:
        return np.eye(self.point_dims + 1)

    def compose(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return a @ b

    def inverse(self, T: np.ndarray) -> np.ndarray:
        n = self.point_dims
        R = T[:n, :n]
        t = T[:n, n]
        Ti = np.eye(n + 1)
        Ti[:n, :n] = R.T
        Ti[:n, n] = -R.T @ t
        return Ti

    def rotation(self, T: np.ndarray) -> np.ndarray:
        return T[:self.point_dims, :self.point_dims]

    def translation(self, T: np.ndarray) -> np.ndarray:
        return T[:self.point_dims, self.point_dims]

    def transform_point(self, T: np.ndarray, p: np.ndarray) -> np.ndarray:
        n = self.point_dims
        return T[:n, :n] @ p + T[:n, n]

    def inverse_transform_point(self, T: np.ndarray, p: np.ndarray) -> np.ndarray:
        n = self.point_dims
        return T[:n, :n].T @ (p - T[:n, n])

    def perturb(self, T: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return self.exp(delta) @ T

    def from_rotation_translation(self, R: np.ndarray, t: np.ndarray) -> np.ndarray:
        n = self.point_dims
        T = np.eye(n + 1)
        T[:n, :n] = R
        T[:n, n] = np.asarray(t, dtype=float).reshape(n)
        return T

    def from_vector(self, v) -> np.ndarray:
        return self.exp(np.asarray(v, dtype=float).reshape(self.dims))

    def to_vector(self, T: np.ndarray) -> np.ndarray:
        return self.log(T)

    def exp(self, delta: np.ndarray) -> np.ndarray:  # pragma: no cover - interface method
        raise NotImplementedError

    def log(self, T: np.ndarray) -> np.ndarray:  # pragma: no cover - interface method
        raise NotImplementedError

    def point_jacobian(self, q: np.ndarray) -> np.ndarray:  # pragma: no cover - interface method
        """d(exp(delta) * q) / d(delta) at delta = 0, shape (point_dims, dims)."""
        raise NotImplementedError


class SE2Algebra(PoseAlgebra):
    """Planar poses, increment vector [x, y, theta]."""

    name = "se2"
    dims = 3
    point_dims = 2

    def exp(self, delta: np.ndarray) -> np.ndarray:
        c, s = math.cos(delta[2]), math.sin(delta[2])
        return np.array([[c, -s, delta[0]],
                         [s, c, delta[1]],
                         [0.0, 0.0, 1.0]])

    def log(self, T: np.ndarray) -> np.ndarray:
        return np.array([T[0, 2], T[1, 2], math.atan2(T[1, 0], T[0, 0])])

    def point_jacobian(self, q: np.ndarray) -> np.ndarray:
        return np.array([[1.0, 0.0, -q[1]],
                         [0.0, 1.0, q[0]]])


class SE3Algebra(PoseAlgebra):
    """Spatial poses, increment vector [x, y, z, rx, ry, rz] (rotation vector)."""

    name = "se3"
    dims = 6
    point_dims = 3

    def exp(self, delta: np.ndarray) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = Rotation.from_rotvec(delta[3:6]).as_matrix()
        T[:3, 3] = delta[:3]
        return T

    def log(self, T: np.ndarray) -> np.ndarray:
        rotvec = Rotation.from_matrix(T[:3, :3]).as_rotvec()
        return np.concatenate([T[:3, 3], rotvec])

    def point_jacobian(self, q: np.ndarray) -> np.ndarray:
        J = np.zeros((3, 6))
        J[:, :3] = np.eye(3)
        J[:, 3:] = -skew(q)
        return J


_ALGEBRAS = {"se2": SE2Algebra, "se3": SE3Algebra}


def make_algebra(kind: Union[str, PoseAlgebra]) -> PoseAlgebra:
    if isinstance(kind, PoseAlgebra):
        return kind
    key = str(kind).lower()
    if key not in _ALGEBRAS:
        raise ValueError(f"Unsupported pose type: {kind}")
    return _ALGEBRAS[key]()
