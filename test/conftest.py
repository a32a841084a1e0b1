import math
from typing import Dict, List

import numpy as np
import pytest

from rba_backend.config import RbaParameters
from rba_backend.engine import RbaEngine
from rba_backend.lie import SE2Algebra, SE3Algebra
from rba_backend.models import NewObservation
from rba_backend.policies import LinearGraphPolicy, LocalAreasFixedSizePolicy
from rba_backend.sensors import CartesianSensor, RangeBearing2DSensor


class SimWorld:
    """Ground-truth keyframe poses and landmarks producing synthetic observations."""

    def __init__(self, algebra, sensor, poses: List[np.ndarray], landmarks: Dict[int, np.ndarray],
                 max_range: float, noise_std: float = 0.0, seed: int = 0):
        self.algebra = algebra
        self.sensor = sensor
        self.poses = poses
        self.landmarks = landmarks
        self.max_range = max_range
        self.noise_std = noise_std
        self.rng = np.random.default_rng(seed)

    def relative_pose(self, a: int, b: int) -> np.ndarray:
        return self.algebra.inverse(self.poses[a]) @ self.poses[b]

    def local_point(self, k: int, lm_id: int) -> np.ndarray:
        return self.algebra.inverse_transform_point(self.poses[k], self.landmarks[lm_id])

    def visible(self, k: int) -> List[int]:
        out = []
        for lm_id in sorted(self.landmarks):
            if np.linalg.norm(self.local_point(k, lm_id)) <= self.max_range:
                out.append(lm_id)
        return out

    def observe(self, k: int, lm_id: int) -> np.ndarray:
        z = self.sensor.observe(self.local_point(k, lm_id))
        if self.noise_std > 0.0:
            z = z + self.rng.normal(0.0, self.noise_std, size=z.shape)
        return z

    def observations(self, k: int, lm_ids=None) -> List[NewObservation]:
        lm_ids = self.visible(k) if lm_ids is None else lm_ids
        return [NewObservation(landmark_id=l, z=self.observe(k, l)) for l in lm_ids]


def make_world_2d(num_kfs: int = 8, noise_std: float = 0.0, seed: int = 0, sensor=None) -> SimWorld:
    algebra = SE2Algebra()
    rng = np.random.default_rng(seed)
    poses = [algebra.from_vector([0.8 * k, 0.3 * math.sin(0.5 * k), 0.05 * k]) for k in range(num_kfs)]
    pts = rng.uniform([-2.0, -4.0], [0.8 * num_kfs + 2.0, 4.0], size=(6 * num_kfs, 2))
    landmarks = {i: p for i, p in enumerate(pts)}
    return SimWorld(algebra, sensor or CartesianSensor(2), poses, landmarks,
                    max_range=4.5, noise_std=noise_std, seed=seed + 1)


def make_world_3d(num_kfs: int = 6, noise_std: float = 0.0, seed: int = 0) -> SimWorld:
    algebra = SE3Algebra()
    rng = np.random.default_rng(seed)
    poses = [algebra.from_vector([0.7 * k, 0.2 * math.cos(0.4 * k), 0.1 * k, 0.02 * k, -0.01 * k, 0.06 * k])
             for k in range(num_kfs)]
    pts = rng.uniform([-2.0, -3.0, -2.0], [0.7 * num_kfs + 2.0, 3.0, 2.0], size=(10 * num_kfs, 3))
    landmarks = {i: p for i, p in enumerate(pts)}
    return SimWorld(algebra, CartesianSensor(3), poses, landmarks,
                    max_range=4.5, noise_std=noise_std, seed=seed + 1)


@pytest.fixture
def world_2d() -> SimWorld:
    return make_world_2d()


@pytest.fixture
def noisy_world_2d() -> SimWorld:
    return make_world_2d(noise_std=0.02, seed=3)


@pytest.fixture
def world_3d() -> SimWorld:
    return make_world_3d()


@pytest.fixture
def params() -> RbaParameters:
    return RbaParameters()


@pytest.fixture
def se2_engine(params) -> RbaEngine:
    return RbaEngine("se2", CartesianSensor(2), params=params, policy=LinearGraphPolicy())


@pytest.fixture
def se2_area_engine(params) -> RbaEngine:
    return RbaEngine("se2", CartesianSensor(2), params=params, policy=LocalAreasFixedSizePolicy(submap_size=15))


@pytest.fixture
def rb2d_engine(params) -> RbaEngine:
    return RbaEngine("se2", RangeBearing2DSensor(), params=params, policy=LocalAreasFixedSizePolicy())


def feed(engine: RbaEngine, world: SimWorld, run_local_optimization: bool = True):
    """Ingest every keyframe of `world`; returns the list of NewKeyframeInfo."""
    return [engine.define_new_keyframe(world.observations(k), run_local_optimization)
            for k in range(len(world.poses))]


@pytest.fixture
def feed_world():
    return feed


@pytest.fixture
def world_factory():
    """Build a planar world with custom size, noise or sensor."""
    return make_world_2d
