import numpy as np
import pytest

from rba_backend.config import RbaParameters
from rba_backend.robust import pseudo_huber_cost, pseudo_huber_weight, residual_cost_and_weight


class TestParameters:

    def test_defaults_are_valid(self):
        params = RbaParameters().validate()
        assert params.max_tree_depth == 3
        assert not params.use_robust_kernel

    def test_from_dict(self):
        params = RbaParameters.from_dict({"max_iters": 7, "obs_noise_std": 0.5})
        assert params.max_iters == 7
        assert params.to_dict()["obs_noise_std"] == 0.5

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="max_iterations"):
            RbaParameters.from_dict({"max_iterations": 7})

    @pytest.mark.parametrize("values", [
        {"max_tree_depth": 0},
        {"max_optimize_depth": -1},
        {"max_iters": -1},
        {"kernel_param": 0.0},
        {"obs_noise_std": -1.0},
        {"max_lambda": 0.0},
        {"numeric_jacobian_step": 0.0},
    ])
    def test_invalid_values(self, values):
        with pytest.raises(ValueError):
            RbaParameters.from_dict(values)


class TestPseudoHuber:

    def test_quadratic_near_zero(self):
        assert pseudo_huber_cost(0.0, 1.0) == 0.0
        assert pseudo_huber_cost(1e-6, 1.0) == pytest.approx(1e-6, rel=1e-5)
        assert pseudo_huber_weight(0.0, 1.0) == 1.0

    def test_outliers_are_downweighted(self):
        assert pseudo_huber_weight(100.0, 1.0) < 0.1
        assert pseudo_huber_cost(100.0, 1.0) < 100.0

    def test_weight_is_cost_derivative(self):
        s, b, h = 4.0, 1.5, 1e-6
        numeric = (pseudo_huber_cost(s + h, b) - pseudo_huber_cost(s - h, b)) / (2 * h)
        assert pseudo_huber_weight(s, b) == pytest.approx(numeric, rel=1e-6)

    def test_residual_cost_and_weight(self):
        r = np.array([3.0, 4.0])
        assert residual_cost_and_weight(r, 0.5, False, 1.0) == (25.0, 100.0, 1.0)
        raw, cost, w = residual_cost_and_weight(r, 0.5, True, 1.0)
        assert raw == 25.0
        assert cost == pytest.approx(pseudo_huber_cost(100.0, 1.0))
        assert w == pytest.approx(pseudo_huber_weight(100.0, 1.0))
