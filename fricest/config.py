from __future__ import annotations

import os

# -----------------------------
# JAX config (CPU recommended)
# -----------------------------
JAX_PLATFORM_NAME: str = os.environ.get("JAX_PLATFORM_NAME", "cpu")
JAX_ENABLE_X64: bool = True

# -----------------------------
# Estimator
# -----------------------------
# "reduced": R = [N | ST]   (one direction per antipodal pair, signed)
# "full":    R = [N | D]    (all polyhedral directions, non-negative)
REPRESENTATIONS = ("reduced", "full")
DEFAULT_REPRESENTATION: str = os.environ.get("FRICEST_REPRESENTATION", "reduced")
DEFAULT_NK: int = 4

# sqrt(machine eps)
NEAR_ZERO: float = 1.4901161193847656e-08

# sentinel returned when no estimate was produced
NO_ESTIMATE: float = -1.0

FRICEST_DEBUG: bool = os.environ.get("FRICEST_DEBUG", "0") not in ("", "0", "false", "False")

# -----------------------------
# Lemke / regularized Lemke
# -----------------------------
LEMKE_PIV_TOL: float = 1e-12
LEMKE_ZERO_TOL: float = 1e-9
LEMKE_MAX_ITER_FACTOR: int = 50

LEMKE_REG_MIN_EXP: int = -20
LEMKE_REG_STEP_EXP: int = 4
LEMKE_REG_MAX_EXP: int = 20

# -----------------------------
# QP acceptance (checked against the unregularized problem)
# -----------------------------
QP_FEAS_TOL: float = 1e-8
QP_KKT_TOL: float = 1e-6


def apply_jax_cpu() -> None:
    """Force JAX to use CPU and x64.

    Must run before importing JAX-heavy submodules if you want to be maximally
    safe about backend selection.
    """
    os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")

    import jax

    jax.config.update("jax_platform_name", "cpu")
    jax.config.update("jax_enable_x64", bool(JAX_ENABLE_X64))


def check_representation(representation: str) -> str:
    rep = str(representation).strip().lower()
    if rep not in REPRESENTATIONS:
        raise ValueError(f"[fricest.config] unknown representation '{representation}', expected one of {REPRESENTATIONS}")
    return rep
