import math
from typing import Tuple

import numpy as np


def pseudo_huber_cost(sq_norm: float, kernel_param: float) -> float:
    """Pseudo-Huber cost of a whitened squared residual norm.

    Quadratic (equal to ``sq_norm``) near zero, linear in the residual norm
    for ``sq_norm >> kernel_param**2``.
    """
    b2 = kernel_param * kernel_param
    return 2.0 * b2 * (math.sqrt(1.0 + sq_norm / b2) - 1.0)


def pseudo_huber_weight(sq_norm: float, kernel_param: float) -> float:
    """IRLS weight d(cost)/d(sq_norm); 1 at zero residual, decays for outliers."""
    return 1.0 / math.sqrt(1.0 + sq_norm / (kernel_param * kernel_param))


def residual_cost_and_weight(residual: np.ndarray,
                             obs_noise_std: float,
                             use_robust_kernel: bool,
                             kernel_param: float) -> Tuple[float, float, float]:
    """Return (raw squared error, objective contribution, normal-equation weight).

    The raw squared error is what gets reported to the user; the objective and
    the weight are what the optimizer works with.
    """
    raw = float(residual @ residual)
    whitened = raw / (obs_noise_std * obs_noise_std)
    if not use_robust_kernel:
        return raw, whitened, 1.0
    return raw, pseudo_huber_cost(whitened, kernel_param), pseudo_huber_weight(whitened, kernel_param)
