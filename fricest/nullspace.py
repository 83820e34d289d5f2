from __future__ import annotations

import numpy as np


def svd_descending(Q: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Q = U diag(S) V' with S sorted in descending order.

    The ordering is enforced here rather than assumed from the LAPACK driver.
    Returns (U, S, V), V holding the right singular vectors as columns.
    """
    Q = np.asarray(Q, dtype=np.float64)
    U, S, Vt = np.linalg.svd(Q)
    order = np.argsort(-S, kind="stable")
    return U[:, order], S[order], Vt[order, :].T


def zero_tolerance(Q: np.ndarray, S: np.ndarray) -> float:
    """ZERO_TOL = eps * rows(Q) * sigma_max."""
    if S.size == 0:
        return 0.0
    return float(np.finfo(np.float64).eps * Q.shape[0] * S[0])


def nullity(S: np.ndarray, tol: float) -> int:
    """Count singular values <= tol, scanning from the smallest upward."""
    m = 0
    for i in range(S.shape[0] - 1, -1, -1):
        if S[i] > tol:
            break
        m += 1
    return m


def nullspace_basis(Q) -> tuple[np.ndarray, int]:
    """Orthonormal basis P of the near-zero singular subspace of Q.

    Returns (P, m) with P of shape (rows(Q), m); m = 0 means Q has no flat
    directions and the least-squares solution is already unique.
    """
    Q = np.asarray(Q, dtype=np.float64)
    n = Q.shape[0]
    if n == 0:
        return np.zeros((0, 0), dtype=np.float64), 0

    _, S, V = svd_descending(Q)
    m = nullity(S, zero_tolerance(Q, S))
    if m == 0:
        return np.zeros((n, 0), dtype=np.float64), 0
    return V[:, V.shape[1] - m:].astype(np.float64), m
