"""fricest: contact-force and Coulomb friction estimation.
CPU-only JAX
------------
"""

from __future__ import annotations

import os as _os

# Set env var before any JAX import happens anywhere.
_os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")

# Apply JAX config (imports jax).
from .config import apply_jax_cpu as _apply_jax_cpu

_apply_jax_cpu()

# Public API
from .errors import InvalidDimension
from .lcp import lemke, lemke_regularized
from .qp import solve_qp
from .nullspace import nullspace_basis
from .estimator import EstimatorPhase, EstimationResult, FrictionEstimator, estimate

__all__ = [
    "InvalidDimension",
    "lemke",
    "lemke_regularized",
    "solve_qp",
    "nullspace_basis",
    "EstimatorPhase",
    "EstimationResult",
    "FrictionEstimator",
    "estimate",
]
