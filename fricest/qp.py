from __future__ import annotations

import numpy as np

from .config import QP_FEAS_TOL, QP_KKT_TOL
from .errors import InvalidDimension
from .lcp import lemke_regularized


def qp_lcp_matrix(Q: np.ndarray, c: np.ndarray, A: np.ndarray, b: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """LCP data for  min 0.5 x'Qx + c'x  s.t.  Ax >= b,  with x = x+ - x-.

        MMM = |  Q -Q -A' |      qqq = |  c |
              | -Q  Q  A' |            | -c |
              |  A -A  0  |            | -b |
    """
    m = A.shape[0]
    MMM = np.block(
        [
            [Q, -Q, -A.T],
            [-Q, Q, A.T],
            [A, -A, np.zeros((m, m), dtype=np.float64)],
        ]
    ).astype(np.float64)
    qqq = np.concatenate([c, -c, -b]).astype(np.float64)
    return MMM, qqq


def qp_kkt_satisfied(
    Q: np.ndarray,
    c: np.ndarray,
    A: np.ndarray,
    b: np.ndarray,
    x: np.ndarray,
    lam: np.ndarray,
    feas_tol: float = QP_FEAS_TOL,
    kkt_tol: float = QP_KKT_TOL,
) -> bool:
    """Primal feasibility Ax >= b and stationarity Qx + c - A'lam = 0 of the original QP."""
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(lam))):
        return False

    x_max = float(np.max(np.abs(x), initial=0.0))
    A_max = float(np.max(np.abs(A), initial=0.0))
    if A.shape[0] > 0:
        scale = 1.0 + float(np.max(np.abs(b), initial=0.0)) + A_max * x_max
        if float(np.min(A @ x - b)) < -feas_tol * scale:
            return False

    g = Q @ x + c - A.T @ lam
    scale = (
        1.0
        + float(np.max(np.abs(Q), initial=0.0)) * x_max
        + float(np.max(np.abs(c), initial=0.0))
        + A_max * float(np.max(np.abs(lam), initial=0.0))
    )
    return float(np.max(np.abs(g), initial=0.0)) <= kkt_tol * scale


def solve_qp(Q, c, A, b) -> tuple[np.ndarray, bool]:
    """Convex QP through its KKT conditions posed as an LCP.

    Returns (x, ok). The LCP may only have been solved after regularization,
    so the candidate is re-checked against the original Q, A, b; an
    infeasible QP therefore comes back as ok=False. On failure x is the zero
    vector and the caller decides what to keep.
    """
    Q = np.asarray(Q, dtype=np.float64)
    c = np.asarray(c, dtype=np.float64).reshape(-1)
    n = c.shape[0]
    if Q.ndim != 2 or Q.shape != (n, n):
        raise InvalidDimension(f"[fricest.qp] Q must be {n}x{n}, got {Q.shape}")

    A = np.asarray(A, dtype=np.float64)
    if A.size == 0:
        A = np.zeros((0, n), dtype=np.float64)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if A.ndim != 2 or A.shape[1] != n:
        raise InvalidDimension(f"[fricest.qp] A must have {n} columns, got {A.shape}")
    if b.shape[0] != A.shape[0]:
        raise InvalidDimension(f"[fricest.qp] b must have {A.shape[0]} rows, got {b.shape[0]}")

    if n == 0:
        return np.zeros(0, dtype=np.float64), True

    MMM, qqq = qp_lcp_matrix(Q, c, A, b)
    zzz, ok = lemke_regularized(MMM, qqq)

    x = (zzz[0:n] - zzz[n:2 * n]).astype(np.float64)
    if not ok or not qp_kkt_satisfied(Q, c, A, b, x, zzz[2 * n:]):
        return np.zeros(n, dtype=np.float64), False
    return x, True
