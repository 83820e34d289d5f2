"""Contact-force and Coulomb-friction estimation.

Two samples per control step:

  pre_event(f)                 store the generalized external force f_
  post_event(v, N, D, M, dt)   explain jstar = M (v - v_) - f_ dt with contact
                               forces, then report mu per contact

Stage I  : min ||R z - jstar||^2  s.t. normal components >= 0 (QP via LCP)
Stage II : if R'R is rank deficient, move z inside its nullspace to the
           minimum-norm point that keeps the normals non-negative
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

import numpy as np
import jax
import jax.numpy as jnp

from .config import DEFAULT_REPRESENTATION, FRICEST_DEBUG, NEAR_ZERO, NO_ESTIMATE, check_representation
from .contact import (
    ContactSet,
    as_jacobian,
    check_state,
    contact_basis,
    contact_residual,
    contact_set,
    momentum_residual,
    normal_equations,
    second_tangent_offset,
)
from .diagnostics import CrossCheck, cross_check
from .errors import InvalidDimension
from .nullspace import nullspace_basis
from .qp import solve_qp


class EstimatorPhase(enum.Enum):
    AWAITING_PRE_EVENT = "awaiting_pre_event"
    AWAITING_POST_EVENT = "awaiting_post_event"


@dataclass
class StageResult:
    z: np.ndarray
    ok: bool
    err: np.ndarray
    norm_error: float


@dataclass
class EstimationResult:
    """Everything one post-event cycle produced."""

    iteration: int
    contacts: ContactSet
    norm_error: float = NO_ESTIMATE
    z: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    cf: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    mu: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    jstar: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    R: np.ndarray | None = None
    M: np.ndarray | None = None
    nullity: int = 0
    stage_one_ok: bool = False
    stage_two_ok: bool | None = None  # None: stage II not needed

    @property
    def MU(self) -> np.ndarray:
        return self.mu.reshape(-1, 1)


def _log(tag: str, msg: str) -> None:
    print(f"[{tag}] {msg}")


def _dump(name: str, x) -> None:
    x = np.asarray(x, dtype=np.float64)
    with np.printoptions(precision=6, suppress=True, linewidth=160):
        _log("FRICEST", f"{name} {x.shape}:\n{x}")


# ===========================
# Stage I / Stage II
# ===========================

def stage_one_constraints(cs: ContactSet) -> tuple[np.ndarray, np.ndarray]:
    """Ax >= b keeping the compressive components non-negative.

    reduced: the nc normal magnitudes (tangential pairs are signed)
    full   : every component (polyhedral coefficients are magnitudes too)
    """
    n = cs.n_vars
    if cs.representation == "full":
        A = np.eye(n, dtype=np.float64)
    else:
        A = np.zeros((cs.nc, n), dtype=np.float64)
        A[np.arange(cs.nc), np.arange(cs.nc)] = 1.0
    return A, np.zeros(A.shape[0], dtype=np.float64)


def stage_one(R: np.ndarray, jstar: np.ndarray, cs: ContactSet) -> tuple[StageResult, np.ndarray, np.ndarray]:
    """Least-squares contact impulse.

    Returns (result, Q, c) so stage II can reuse the normal equations.
    """
    Q, c = normal_equations(jnp.asarray(R), jnp.asarray(jstar))
    Q = np.asarray(Q, dtype=np.float64)
    c = np.asarray(c, dtype=np.float64)

    A, b = stage_one_constraints(cs)
    z, ok = solve_qp(Q, c, A, b)
    if not ok:
        return StageResult(z=np.zeros(cs.n_vars, dtype=np.float64), ok=False, err=-jstar, norm_error=NO_ESTIMATE), Q, c

    err = np.asarray(contact_residual(jnp.asarray(R), jnp.asarray(z), jnp.asarray(jstar)), dtype=np.float64)
    return StageResult(z=z, ok=True, err=err, norm_error=float(np.linalg.norm(err))), Q, c


def stage_two_constraints(P: np.ndarray, z: np.ndarray, c: np.ndarray, cs: ContactSet) -> tuple[np.ndarray, np.ndarray]:
    """
        |   c'P    |   | w |    | 0  |
        | P[0:k,:] | * | . | >= | -z[0:k] |

    with k = nc (reduced, normals only) or k = n (full, every coefficient).
    """
    m = P.shape[1]
    k = cs.n_vars if cs.representation == "full" else cs.nc

    A = np.zeros((k + 1, m), dtype=np.float64)
    b = np.zeros(k + 1, dtype=np.float64)
    cP = P.T @ c
    # c = -R'jstar and RP = 0, so anything left in c'P is round-off
    if float(np.linalg.norm(cP)) > NEAR_ZERO * max(1.0, float(np.linalg.norm(c))):
        A[0, :] = cP
    A[1:, :] = P[0:k, :]
    # stage I may leave -1e-16 style round-off on active bounds; w = 0 must stay feasible
    b[1:] = -np.maximum(z[0:k], 0.0)
    return A, b


def stage_two(
    R: np.ndarray,
    jstar: np.ndarray,
    stage1: StageResult,
    c: np.ndarray,
    P: np.ndarray,
    cs: ContactSet,
) -> StageResult:
    """Minimum-norm z + P w along the flat directions of R'R.

    On failure the stage I solution is handed back with ok=False.
    """
    z = stage1.z
    # min ||z + P w||^2  ->  Q2 = P'P, c2 = P'z
    Q2 = P.T @ P
    c2 = P.T @ z
    A, b = stage_two_constraints(P, z, c, cs)

    w, ok = solve_qp(Q2, c2, A, b)
    if not ok:
        return StageResult(z=z.copy(), ok=False, err=stage1.err, norm_error=stage1.norm_error)

    z2 = z + P @ w
    err = np.asarray(contact_residual(jnp.asarray(R), jnp.asarray(z2), jnp.asarray(jstar)), dtype=np.float64)
    return StageResult(z=z2, ok=True, err=err, norm_error=float(np.linalg.norm(err)))


# ===========================
# Friction coefficients
# ===========================

@jax.jit
def coulomb_ratio(cn: jnp.ndarray, ct1: jnp.ndarray, ct2: jnp.ndarray) -> jnp.ndarray:
    """|t| / n per contact; NaN where the contact is not compressive."""
    cn_safe = jnp.where(cn > 0.0, cn, 1.0)
    ratio = jnp.sqrt(ct1 * ct1 + ct2 * ct2) / cn_safe
    return jnp.where(cn > 0.0, ratio, jnp.nan)


def contact_forces(z: np.ndarray, cs: ContactSet, D: np.ndarray | None = None) -> np.ndarray:
    """cf = [n_0..n_{nc-1}, t1_0.., t2_0..] from the decision vector.

    full, nk == 4 (or no D given): antipodal differences of columns 0 and
    nk/4. full, nk > 4: the contact's tangential generalized impulse D_i z_i
    expressed in those two perpendicular columns (least squares), so the
    in-between directions are not dropped. nk == 2 has no second tangent.
    """
    z = np.asarray(z, dtype=np.float64)
    nc = cs.nc
    if cs.representation != "full":
        return z[0:3 * nc].copy()

    nk = cs.nk
    half = nk // 2
    off = second_tangent_offset(nk)
    cf = np.zeros(3 * nc, dtype=np.float64)
    cf[0:nc] = z[0:nc]
    for i in range(nc):
        base = nc + nk * i
        if nk > 4 and D is not None:
            Di = np.asarray(D[:, i * nk:(i + 1) * nk], dtype=np.float64)
            g = Di @ z[base:base + nk]
            Si = Di[:, [0, off]]
            t, *_ = np.linalg.lstsq(Si, g, rcond=None)
            cf[nc + i] = t[0]
            cf[2 * nc + i] = t[1]
        else:
            cf[nc + i] = z[base] - z[base + half]
            # nk == 2: a single antipodal pair, no second tangent
            if nk > 2:
                cf[2 * nc + i] = z[base + off] - z[base + off + half]
    return cf


def friction_coefficients(z: np.ndarray, cs: ContactSet, D: np.ndarray | None = None) -> tuple[np.ndarray, np.ndarray]:
    """Returns (cf, mu) with one Coulomb ratio per contact."""
    cf = contact_forces(z, cs, D)
    nc = cs.nc
    mu = coulomb_ratio(jnp.asarray(cf[0:nc]), jnp.asarray(cf[nc:2 * nc]), jnp.asarray(cf[2 * nc:3 * nc]))
    return cf, np.asarray(mu, dtype=np.float64)


# ===========================
# Two-phase orchestrator
# ===========================

class FrictionEstimator:
    """Per-robot estimator state: previous velocity and the pending force sample.

    Instances are independent; give every robot (or thread) its own.
    """

    def __init__(self, representation: str = DEFAULT_REPRESENTATION, verbose: bool = FRICEST_DEBUG):
        self.representation = check_representation(representation)
        self.verbose = bool(verbose)
        self.reset()

    def reset(self) -> None:
        self.phase = EstimatorPhase.AWAITING_PRE_EVENT
        self.iteration = 0
        self.v_prev: np.ndarray | None = None
        self.f_prev: np.ndarray | None = None
        self.MU = np.zeros((0, 1), dtype=np.float64)
        self.cf = np.zeros(0, dtype=np.float64)
        self.last: EstimationResult | None = None

    # -----------------------------
    # phases
    # -----------------------------
    def pre_event(self, f) -> None:
        """Store the generalized external force acting over the next step."""
        f = np.asarray(f, dtype=np.float64).reshape(-1)
        if self.v_prev is not None and f.shape[0] != self.v_prev.shape[0]:
            raise InvalidDimension(f"[fricest] rows(f)={f.shape[0]} != ngc={self.v_prev.shape[0]}")
        self.f_prev = f.copy()
        self.phase = EstimatorPhase.AWAITING_POST_EVENT

    def post_event(self, v, N, D, M, dt) -> float:
        """Estimate contact forces for the step that produced velocity v.

        Returns the residual norm ||R z - jstar||, or -1 when nothing was
        estimated (no contacts, or the stage I QP failed).
        """
        v_arr = np.asarray(v, dtype=np.float64).reshape(-1)
        v_prev = self.v_prev if self.v_prev is not None else np.zeros_like(v_arr)
        if self.f_prev is None:
            _log("FRICEST", "post_event without a preceding pre_event: using f_ = 0")
            f_prev = np.zeros_like(v_arr)
        else:
            f_prev = self.f_prev

        M, v_arr, v_prev, f_prev, dt = check_state(M, v_arr, v_prev, f_prev, dt)
        ngc = M.shape[0]
        N = as_jacobian(N, ngc, "N")
        D = as_jacobian(D, ngc, "D")
        cs = contact_set(N, D, ngc, self.representation)

        norm_error = NO_ESTIMATE
        if cs.nc > 0:
            self.iteration += 1
            norm_error = self._estimate(v_arr, v_prev, f_prev, dt, N, D, M, cs)

        self.v_prev = v_arr.copy()
        self.f_prev = None
        self.phase = EstimatorPhase.AWAITING_PRE_EVENT
        return norm_error

    def estimate(self, v, f, dt, N, D, M, post_event: bool) -> tuple[float, np.ndarray, np.ndarray]:
        """Single-call form: (norm_error, MU, cf)."""
        norm_error = NO_ESTIMATE
        if post_event:
            norm_error = self.post_event(v, N, D, M, dt)
        else:
            self.pre_event(f)
        return norm_error, self.MU.copy(), self.cf.copy()

    def cross_check(self, reference_z) -> CrossCheck:
        """Compare a reference decision vector against the last cycle's data."""
        if self.last is None or self.last.R is None:
            raise RuntimeError("[fricest] cross_check needs a completed post_event with contacts")
        return cross_check(self.last.R, self.last.M, self.last.jstar, reference_z)

    # -----------------------------
    # core
    # -----------------------------
    def _estimate(self, v, v_prev, f_prev, dt, N, D, M, cs: ContactSet) -> float:
        if self.verbose:
            _log("FRICEST", f"************** Friction Estimation ************** ITER: {self.iteration}  dt = {dt}")
            _dump("N", N)
            _dump("D", D)
            _dump("post-event-vel", v)
            _dump("pre-event-vel", v_prev)
            _dump("f_external", f_prev)

        jstar = np.asarray(
            momentum_residual(jnp.asarray(M), jnp.asarray(v), jnp.asarray(v_prev), jnp.asarray(f_prev), dt),
            dtype=np.float64,
        )
        R = contact_basis(N, D, cs)

        result = EstimationResult(iteration=self.iteration, contacts=cs, jstar=jstar, R=R, M=M)
        self.last = result

        s1, Q, c = stage_one(R, jstar, cs)
        result.stage_one_ok = s1.ok
        if not s1.ok:
            _log("FRICEST", "friction estimation failed")
            return NO_ESTIMATE

        if self.verbose:
            _dump("z", s1.z)
            _log("FRICEST", f"norm err: {s1.norm_error:.6e}")

        final = s1
        P, m = nullspace_basis(Q)
        result.nullity = m
        if self.verbose:
            _log("FRICEST", f"m: {m}")

        if m > 0:
            s2 = stage_two(R, jstar, s1, c, P, cs)
            result.stage_two_ok = s2.ok
            if not s2.ok:
                _log("FRICEST", "friction estimation 2 failed")
            elif self.verbose:
                _dump("z+z2", s2.z)
                _log("FRICEST", f"norm err2: {s2.norm_error:.6e}")
            final = s2

        cf, mu = friction_coefficients(final.z, cs, D)
        result.z = final.z
        result.cf = cf
        result.mu = mu
        result.norm_error = final.norm_error

        self.cf = cf
        self.MU = mu.reshape(-1, 1)

        if self.verbose:
            for i in range(cs.nc):
                _log("FRICEST", f"cf Estimate = [{cf[cs.nc + i]:.6g} {cf[2 * cs.nc + i]:.6g} {cf[i]:.6g}]  MU_Estimate : {mu[i]:.6g}")
        return final.norm_error


def estimate(
    v,
    f,
    dt,
    N,
    D,
    M,
    post_event: bool,
    *,
    estimator: FrictionEstimator,
) -> tuple[float, np.ndarray, np.ndarray]:
    """Functional entry point.

    `estimator` carries v_ and f_ between the pre- and post-event calls, so the
    same instance must be passed for every call of a robot.
    """
    return estimator.estimate(v, f, dt, N, D, M, post_event)
