from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.linalg import cho_factor, cho_solve

from .errors import InvalidDimension


@dataclass
class CrossCheck:
    generalized_force: np.ndarray  # R z_ref
    dv: np.ndarray                 # M^-1 R z_ref
    err: np.ndarray                # R z_ref - jstar
    norm_error: float


def cross_check(R, M, jstar, reference_z) -> CrossCheck:
    """Residual of an externally supplied contact solution (e.g. the simulator's own).

    reference_z is laid out like the estimator's decision vector. The velocity
    change it implies is obtained with a Cholesky solve on M.
    """
    R = np.asarray(R, dtype=np.float64)
    M = np.asarray(M, dtype=np.float64)
    jstar = np.asarray(jstar, dtype=np.float64).reshape(-1)
    z_ref = np.asarray(reference_z, dtype=np.float64).reshape(-1)
    if z_ref.shape[0] != R.shape[1]:
        raise InvalidDimension(f"[fricest.diagnostics] reference has {z_ref.shape[0]} entries, R has {R.shape[1]} columns")
    if M.shape != (R.shape[0], R.shape[0]) or jstar.shape[0] != R.shape[0]:
        raise InvalidDimension(f"[fricest.diagnostics] M {M.shape} / jstar {jstar.shape} do not match R {R.shape}")

    gf = R @ z_ref
    dv = cho_solve(cho_factor(M), gf)
    err = gf - jstar
    return CrossCheck(generalized_force=gf, dv=dv, err=err, norm_error=float(np.linalg.norm(err)))
