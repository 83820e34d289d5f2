"""Linear complementarity solver.

Find z >= 0 with w = M z + q >= 0 and z^T w = 0.

`lemke` is plain complementary pivoting on a dense tableau (covering vector of
ones, artificial variable z0). `lemke_regularized` retries degenerate problems
with M + 10^k I for an increasing ladder of k, and only hands back a candidate
that actually satisfies the complementarity conditions.
"""

from __future__ import annotations

import numpy as np

from .config import (
    LEMKE_PIV_TOL, LEMKE_ZERO_TOL, LEMKE_MAX_ITER_FACTOR,
    LEMKE_REG_MIN_EXP, LEMKE_REG_STEP_EXP, LEMKE_REG_MAX_EXP,
)
from .errors import InvalidDimension


def _as_problem(M, q) -> tuple[np.ndarray, np.ndarray]:
    M = np.asarray(M, dtype=np.float64)
    q = np.asarray(q, dtype=np.float64).reshape(-1)
    n = q.shape[0]
    if M.ndim != 2 or M.shape != (n, n):
        raise InvalidDimension(f"[fricest.lcp] M must be {n}x{n}, got {M.shape}")
    return M, q


def _pivot(T: np.ndarray, r: int, col: int) -> None:
    T[r, :] /= T[r, col]
    factor = T[:, col].copy()
    factor[r] = 0.0
    T -= np.outer(factor, T[r, :])


def lcp_tolerance(M: np.ndarray, q: np.ndarray, z: np.ndarray, zero_tol: float = LEMKE_ZERO_TOL) -> float:
    """Acceptance tolerance, scaled by problem size and magnitude."""
    n = max(int(q.shape[0]), 1)
    scale = 1.0 + float(np.max(np.abs(q), initial=0.0))
    scale += float(np.max(np.abs(M), initial=0.0)) * float(np.max(np.abs(z), initial=0.0))
    return float(zero_tol) * n * scale


def is_lcp_solution(M, q, z, zero_tol: float = LEMKE_ZERO_TOL) -> bool:
    M, q = _as_problem(M, q)
    z = np.asarray(z, dtype=np.float64).reshape(-1)
    if z.shape != q.shape or not np.all(np.isfinite(z)):
        return False
    w = M @ z + q
    tol = lcp_tolerance(M, q, z, zero_tol)
    if float(np.min(z, initial=0.0)) < -tol or float(np.min(w, initial=0.0)) < -tol:
        return False
    comp = float(np.dot(np.maximum(z, 0.0), np.maximum(w, 0.0)))
    return comp <= tol * (1.0 + float(np.max(np.abs(z), initial=0.0)))


def lemke(
    M,
    q,
    piv_tol: float = LEMKE_PIV_TOL,
    zero_tol: float = LEMKE_ZERO_TOL,
    max_iter: int | None = None,
) -> tuple[np.ndarray, bool]:
    """Lemke's complementary pivoting.

    Returns (z, ok). `ok` is False on ray termination or when the pivot budget
    runs out; z is then the zero vector.
    """
    M, q = _as_problem(M, q)
    n = q.shape[0]
    z = np.zeros(n, dtype=np.float64)

    if n == 0 or float(np.min(q)) >= 0.0:
        return z, True

    if max_iter is None:
        max_iter = LEMKE_MAX_ITER_FACTOR * max(n, 1)

    # columns: w (n) | z (n) | z0 | rhs
    #   I w - M z - 1 z0 = q
    z0 = 2 * n
    T = np.hstack([np.eye(n), -M, -np.ones((n, 1)), q[:, None]]).astype(np.float64)
    basis = list(range(n))

    def complement(j: int) -> int:
        return j + n if j < n else j - n

    r = int(np.argmin(q))
    _pivot(T, r, z0)
    leaving = basis[r]
    basis[r] = z0
    entering = complement(leaving)

    done = False
    for _ in range(int(max_iter)):
        col = T[:, entering]
        mask = col > piv_tol
        if not np.any(mask):
            # secondary ray
            return z, False

        ratios = np.full(n, np.inf, dtype=np.float64)
        ratios[mask] = T[mask, -1] / col[mask]
        rmin = float(np.min(ratios))
        ties = np.flatnonzero(ratios <= rmin + zero_tol * max(1.0, abs(rmin)))

        # leave with z0 whenever it is among the blocking rows
        r = int(ties[0])
        for i in ties:
            if basis[int(i)] == z0:
                r = int(i)
                break

        _pivot(T, r, entering)
        leaving = basis[r]
        basis[r] = entering
        if leaving == z0:
            done = True
            break
        entering = complement(leaving)

    if not done:
        return z, False

    for row, var in enumerate(basis):
        if n <= var < 2 * n:
            z[var - n] = T[row, -1]
    z = np.maximum(z, 0.0)
    return z, bool(np.all(np.isfinite(z)))


def lemke_regularized(
    M,
    q,
    min_exp: int = LEMKE_REG_MIN_EXP,
    step_exp: int = LEMKE_REG_STEP_EXP,
    max_exp: int = LEMKE_REG_MAX_EXP,
    piv_tol: float = LEMKE_PIV_TOL,
    zero_tol: float = LEMKE_ZERO_TOL,
) -> tuple[np.ndarray, bool]:
    """Lemke with a Tikhonov ladder for degenerate problems.

    Tries M first, then M + 10^k I for k = min_exp, min_exp + step_exp, ...,
    max_exp. The first candidate that solves its (regularized) LCP wins; it
    is not re-checked against M, callers that need that (solve_qp) do it.
    """
    M, q = _as_problem(M, q)
    n = q.shape[0]

    z, ok = lemke(M, q, piv_tol=piv_tol, zero_tol=zero_tol)
    if ok and is_lcp_solution(M, q, z, zero_tol):
        return z, True

    eye = np.eye(n, dtype=np.float64)
    for k in range(int(min_exp), int(max_exp) + 1, max(int(step_exp), 1)):
        M_reg = M + (10.0 ** k) * eye
        z, ok = lemke(M_reg, q, piv_tol=piv_tol, zero_tol=zero_tol)
        if ok and is_lcp_solution(M_reg, q, z, zero_tol):
            return z, True

    return np.zeros(n, dtype=np.float64), False
