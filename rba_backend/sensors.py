"""Landmark parameterizations and sensor (observation) models.

A sensor model maps a point expressed in the observing keyframe frame to a
measurement vector ``z``. The engine only relies on:

- ``observe(p)`` and ``jacobian(p)`` (dh/dp),
- ``residual(z, h)`` (z minus h, wrapping angular components),
- ``inverse_observe(z)`` to initialise new landmarks (may return None).
"""
import math
from typing import Optional

import numpy as np

from .lie import wrap_angle


class EuclideanLandmark:
    """Landmark stored as a plain Euclidean point relative to its base keyframe."""

    def __init__(self, point_dims: int):
        self.dims = point_dims
        self.point_dims = point_dims

    def to_point(self, x: np.ndarray) -> np.ndarray:
        return x

    def point_jacobian(self, x: np.ndarray) -> np.ndarray:
        return np.eye(self.point_dims)

    def from_point(self, p: np.ndarray) -> np.ndarray:
        return np.asarray(p, dtype=float).copy()


class SensorModel:
    name = "base"
    obs_dims = 0
    point_dims = 0

    def observe(self, p: np.ndarray) -> np.ndarray:  # pragma: no cover - interface method
        raise NotImplementedError

    def jacobian(self, p: np.ndarray) -> np.ndarray:  # pragma: no cover - interface method
        raise NotImplementedError

    def inverse_observe(self, z: np.ndarray) -> Optional[np.ndarray]:
        return None

    def residual(self, z: np.ndarray, h: np.ndarray) -> np.ndarray:
        return z - h


class CartesianSensor(SensorModel):
    """Observes the landmark coordinates directly in the sensor frame."""

    name = "cartesian"

    def __init__(self, point_dims: int = 3):
        if point_dims not in (2, 3):
            raise ValueError(f"Cartesian sensor supports 2 or 3 dims, got {point_dims}")
        self.point_dims = point_dims
        self.obs_dims = point_dims

    def observe(self, p: np.ndarray) -> np.ndarray:
        return np.array(p, dtype=float)

    def jacobian(self, p: np.ndarray) -> np.ndarray:
        return np.eye(self.point_dims)

    def inverse_observe(self, z: np.ndarray) -> Optional[np.ndarray]:
        return np.array(z, dtype=float)


class RangeBearing2DSensor(SensorModel):
    """Planar range-bearing sensor, z = [range, bearing]."""

    name = "range_bearing_2d"
    obs_dims = 2
    point_dims = 2

    def observe(self, p: np.ndarray) -> np.ndarray:
        return np.array([math.hypot(p[0], p[1]), math.atan2(p[1], p[0])])

    def jacobian(self, p: np.ndarray) -> np.ndarray:
        x, y = float(p[0]), float(p[1])
        r2 = max(x * x + y * y, 1e-18)
        r = math.sqrt(r2)
        return np.array([[x / r, y / r],
                         [-y / r2, x / r2]])

    def inverse_observe(self, z: np.ndarray) -> Optional[np.ndarray]:
        return np.array([z[0] * math.cos(z[1]), z[0] * math.sin(z[1])])

    def residual(self, z: np.ndarray, h: np.ndarray) -> np.ndarray:
        r = z - h
        r[1] = wrap_angle(r[1])
        return r


class RangeBearing3DSensor(SensorModel):
    """Spatial range-bearing sensor, z = [range, yaw, elevation]."""

    name = "range_bearing_3d"
    obs_dims = 3
    point_dims = 3

    def observe(self, p: np.ndarray) -> np.ndarray:
        x, y, z = float(p[0]), float(p[1]), float(p[2])
        rho = math.hypot(x, y)
        return np.array([math.sqrt(rho * rho + z * z), math.atan2(y, x), math.atan2(z, rho)])

    def jacobian(self, p: np.ndarray) -> np.ndarray:
        x, y, z = float(p[0]), float(p[1]), float(p[2])
        rho2 = max(x * x + y * y, 1e-18)
        rho = math.sqrt(rho2)
        r2 = rho2 + z * z
        r = math.sqrt(r2)
        return np.array([
            [x / r, y / r, z / r],
            [-y / rho2, x / rho2, 0.0],
            [-z * x / (rho * r2), -z * y / (rho * r2), rho / r2],
        ])

    def inverse_observe(self, z: np.ndarray) -> Optional[np.ndarray]:
        r, yaw, el = float(z[0]), float(z[1]), float(z[2])
        return np.array([r * math.cos(el) * math.cos(yaw),
                         r * math.cos(el) * math.sin(yaw),
                         r * math.sin(el)])

    def residual(self, z: np.ndarray, h: np.ndarray) -> np.ndarray:
        r = z - h
        r[1] = wrap_angle(r[1])
        r[2] = wrap_angle(r[2])
        return r


def make_sensor(kind: str, point_dims: int) -> SensorModel:
    key = str(kind).lower()
    if key == "cartesian":
        return CartesianSensor(point_dims)
    if key == "range_bearing_2d":
        if point_dims != 2:
            raise ValueError("range_bearing_2d requires se2 poses")
        return RangeBearing2DSensor()
    if key == "range_bearing_3d":
        if point_dims != 3:
            raise ValueError("range_bearing_3d requires se3 poses")
        return RangeBearing3DSensor()
    raise ValueError(f"Unsupported sensor model: {kind}")
