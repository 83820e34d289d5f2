from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import jax
import jax.numpy as jnp

from .config import check_representation
from .errors import InvalidDimension


@dataclass(frozen=True)
class ContactSet:
    """Sizes of one estimation cycle.

    D is contact-major: columns i*nk .. i*nk+nk-1 belong to contact i, and
    column i*nk + j + nk/2 is the antipode of column i*nk + j.
    """

    nc: int
    nk: int
    ngc: int
    representation: str = "reduced"

    @property
    def n_tangent(self) -> int:
        if self.representation == "full":
            return self.nc * self.nk
        return 2 * self.nc

    @property
    def n_vars(self) -> int:
        return self.nc + self.n_tangent


def as_jacobian(J, ngc: int, name: str) -> np.ndarray:
    J = np.asarray(J, dtype=np.float64)
    if J.ndim == 1:
        J = J.reshape(-1, 1) if J.size else np.zeros((ngc, 0), dtype=np.float64)
    if J.ndim != 2:
        raise InvalidDimension(f"[fricest.contact] {name} must be a matrix, got ndim={J.ndim}")
    if J.shape[1] == 0 and J.shape[0] != ngc:
        J = np.zeros((ngc, 0), dtype=np.float64)
    if J.shape[0] != ngc:
        raise InvalidDimension(f"[fricest.contact] {name} has {J.shape[0]} rows, expected ngc={ngc}")
    return J


def contact_set(N: np.ndarray, D: np.ndarray, ngc: int, representation: str = "reduced") -> ContactSet:
    """Infer (nc, nk) from the Jacobian blocks and check them."""
    rep = check_representation(representation)
    nc = int(N.shape[1])
    if nc == 0:
        return ContactSet(nc=0, nk=0, ngc=int(ngc), representation=rep)

    nd = int(D.shape[1])
    if nd % nc != 0:
        raise InvalidDimension(f"[fricest.contact] D has {nd} columns, not a multiple of nc={nc}")
    nk = nd // nc
    if nk < 2 or nk % 2 != 0:
        raise InvalidDimension(f"[fricest.contact] nk={nk} friction directions per contact, expected an even number >= 2")
    if rep == "reduced" and nk < 4:
        raise InvalidDimension(f"[fricest.contact] reduced representation needs nk >= 4 (got nk={nk})")
    # t1, t2 must be perpendicular: column nk/4 of an evenly spaced block
    if nk > 2 and nk % 4 != 0:
        raise InvalidDimension(f"[fricest.contact] nk={nk} has no direction a quarter turn from the first, expected nk % 4 == 0")
    return ContactSet(nc=nc, nk=nk, ngc=int(ngc), representation=rep)


def second_tangent_offset(nk: int) -> int:
    """Column offset of the second tangent inside a contact's D block.

    A quarter turn from the first direction (nk is a multiple of 4 once
    contact_set accepted it); 0 for nk == 2, which has no second tangent.
    """
    return nk // 4


def reduce_tangents(D: np.ndarray, nc: int, nk: int) -> np.ndarray:
    """ST = [S T]: first and second friction direction of every contact."""
    D = np.asarray(D, dtype=np.float64)
    off = second_tangent_offset(nk)
    ST = np.zeros((D.shape[0], 2 * nc), dtype=np.float64)
    for i in range(nc):
        ST[:, i] = D[:, i * nk]
        ST[:, nc + i] = D[:, i * nk + off]
    return ST


def contact_basis(N: np.ndarray, D: np.ndarray, cs: ContactSet) -> np.ndarray:
    """R = [N | ST] (reduced) or R = [N | D] (full)."""
    if cs.representation == "full":
        T = np.asarray(D, dtype=np.float64)
    else:
        T = reduce_tangents(D, cs.nc, cs.nk)
    return np.hstack([np.asarray(N, dtype=np.float64), T]).astype(np.float64)


def check_state(M, v, v_prev, f_prev, dt) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, float]:
    M = np.asarray(M, dtype=np.float64)
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise InvalidDimension(f"[fricest.contact] M must be square, got {M.shape}")
    ngc = M.shape[0]

    out = []
    for name, x in (("v", v), ("v_", v_prev), ("f_", f_prev)):
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        if x.shape[0] != ngc:
            raise InvalidDimension(f"[fricest.contact] rows({name})={x.shape[0]} != rows(M)={ngc}")
        out.append(x)

    dt = float(dt)
    if not np.isfinite(dt) or dt <= 0.0:
        raise InvalidDimension(f"[fricest.contact] dt must be finite and positive, got {dt}")
    return M, out[0], out[1], out[2], dt


# ===========================
# JAX kernels
# ===========================

@jax.jit
def momentum_residual(M: jnp.ndarray, v: jnp.ndarray, v_prev: jnp.ndarray, f_prev: jnp.ndarray, dt) -> jnp.ndarray:
    """jstar = M (v - v_) - f_ dt: impulse the contacts have to explain."""
    return M @ (v - v_prev) - f_prev * dt


@jax.jit
def normal_equations(R: jnp.ndarray, jstar: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Q = R'R, c = -R' jstar."""
    return R.T @ R, -(R.T @ jstar)


@jax.jit
def contact_residual(R: jnp.ndarray, z: jnp.ndarray, jstar: jnp.ndarray) -> jnp.ndarray:
    return R @ z - jstar
