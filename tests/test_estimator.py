"""
Friction estimation pipeline
============================
Stage I / Stage II, friction extraction and the pre/post event cycle.
"""

import numpy as np
import pytest

import fricest.estimator as estimator_mod
from fricest import EstimatorPhase, FrictionEstimator, InvalidDimension, estimate
from fricest.contact import ContactSet, contact_basis, contact_set, reduce_tangents
from fricest.estimator import contact_forces, friction_coefficients, stage_one, stage_one_constraints

REPRESENTATIONS = ["reduced", "full"]


def _polyhedral_D(S, T):
    """Contact-major D for nk=4: [s, t, -s, -t] per contact."""
    nc = S.shape[1]
    D = np.zeros((S.shape[0], 4 * nc))
    for i in range(nc):
        D[:, 4 * i:4 * i + 4] = np.column_stack([S[:, i], T[:, i], -S[:, i], -T[:, i]])
    return D


def _single_contact_drop():
    """ngc=6, M=I, one contact pushing along +z, no tangential directions."""
    M = np.eye(6)
    v = np.array([0.0, 0.0, 0.1, 0.0, 0.0, 0.0])
    N = np.array([[0.0, 0.0, 1.0, 0.0, 0.0, 0.0]]).T
    D = np.zeros((6, 4))
    return M, v, N, D


def _random_problem(seed=0):
    """Two contacts with a known, feasible contact impulse z*."""
    rng = np.random.default_rng(seed)
    N = rng.normal(size=(6, 2))
    S = rng.normal(size=(6, 2))
    T = rng.normal(size=(6, 2))
    L = rng.normal(size=(6, 6))
    M = L @ L.T + 6.0 * np.eye(6)

    cn = np.array([0.5, 0.8])
    ct1 = np.array([0.1, -0.2])
    ct2 = np.array([0.3, 0.05])
    cf_true = np.concatenate([cn, ct1, ct2])
    R = np.hstack([N, S, T])

    dt = 0.01
    v_prev = rng.normal(size=6)
    f = rng.normal(size=6)
    v = v_prev + np.linalg.solve(M, R @ cf_true + f * dt)
    return dict(N=N, D=_polyhedral_D(S, T), M=M, dt=dt, v_prev=v_prev, v=v, f=f, cf_true=cf_true)


def _prime(est, v_prev, M, N, D, dt):
    """Run one cycle so the estimator carries v_ = v_prev."""
    est.pre_event(np.zeros_like(v_prev))
    est.post_event(v_prev, N[:, :0], D[:, :0], M, dt)


# ===========================
# scenario from a single vertical impulse
# ===========================

@pytest.mark.parametrize("representation", REPRESENTATIONS)
def test_single_contact_vertical_impulse(representation):
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator(representation=representation)

    est.pre_event(np.zeros(6))
    norm_error = est.post_event(v, N, D, M, 0.01)

    assert norm_error == pytest.approx(0.0, abs=1e-9)
    np.testing.assert_allclose(est.cf, [0.1, 0.0, 0.0], atol=1e-9)
    assert est.MU.shape == (1, 1)
    assert est.MU[0, 0] == pytest.approx(0.0, abs=1e-9)
    assert est.last.nullity == (2 if representation == "reduced" else 4)
    assert est.last.stage_two_ok is True


# ===========================
# exact recovery
# ===========================

@pytest.mark.parametrize("representation", REPRESENTATIONS)
def test_exact_recovery(representation):
    p = _random_problem(seed=1)
    est = FrictionEstimator(representation=representation)
    _prime(est, p["v_prev"], p["M"], p["N"], p["D"], p["dt"])

    est.pre_event(p["f"])
    norm_error = est.post_event(p["v"], p["N"], p["D"], p["M"], p["dt"])

    assert 0.0 <= norm_error < 1e-8
    np.testing.assert_allclose(est.cf, p["cf_true"], atol=1e-6)

    cn, ct1, ct2 = np.split(p["cf_true"], 3)
    np.testing.assert_allclose(est.MU[:, 0], np.sqrt(ct1 ** 2 + ct2 ** 2) / cn, rtol=1e-5)


@pytest.mark.parametrize("representation", REPRESENTATIONS)
def test_stage_one_feasibility(representation):
    """Normals (and polyhedral coefficients) come out non-negative even when jstar pulls."""
    p = _random_problem(seed=2)
    cs = contact_set(p["N"], p["D"], 6, representation)
    R = contact_basis(p["N"], p["D"], cs)
    jstar = -R @ np.concatenate([p["cf_true"][:2], np.zeros(R.shape[1] - 2)])

    s1, _, _ = stage_one(R, jstar, cs)
    assert s1.ok
    A, b = stage_one_constraints(cs)
    assert np.all(A @ s1.z >= b - 1e-8)
    assert s1.norm_error > 0.0


# ===========================
# stage II: minimum-norm split of a duplicated direction
# ===========================

def test_duplicated_tangent_split_evenly():
    M = np.eye(6)
    N = np.array([[0.0, 0.0, 1.0, 0.0, 0.0, 0.0]]).T
    e1 = np.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0])
    D = np.column_stack([e1, e1, -e1, -e1])
    v = np.array([0.2, 0.0, 0.5, 0.0, 0.0, 0.0])

    est = FrictionEstimator(representation="reduced")
    est.pre_event(np.zeros(6))
    norm_error = est.post_event(v, N, D, M, 0.01)

    assert norm_error == pytest.approx(0.0, abs=1e-9)
    assert est.last.nullity == 1
    assert est.last.stage_two_ok is True
    np.testing.assert_allclose(est.cf, [0.5, 0.1, 0.1], atol=1e-8)
    assert est.MU[0, 0] == pytest.approx(np.sqrt(0.02) / 0.5, rel=1e-6)


# ===========================
# friction coefficient extraction
# ===========================

def test_friction_formula_reduced():
    cs = ContactSet(nc=3, nk=4, ngc=6, representation="reduced")
    z = np.array([1.0, 0.0, -0.5, 0.3, 0.2, 0.7, 0.4, -0.1, 0.9])

    cf, mu = friction_coefficients(z, cs)
    np.testing.assert_array_equal(cf, z)
    assert mu[0] == pytest.approx(0.5)
    assert np.isnan(mu[1])
    assert np.isnan(mu[2])


def test_friction_formula_full_antipodal_pairs():
    cs = ContactSet(nc=1, nk=4, ngc=6, representation="full")
    z = np.array([2.0, 0.5, 0.1, 0.2, 0.4])

    cf, mu = friction_coefficients(z, cs)
    np.testing.assert_allclose(cf, [2.0, 0.3, -0.3])
    assert mu[0] == pytest.approx(np.sqrt(0.18) / 2.0)


def test_full_nk8_keeps_diagonal_directions():
    nk = 8
    ang = 2.0 * np.pi * np.arange(nk) / nk
    D = np.zeros((6, nk))
    D[0, :] = np.cos(ang)
    D[1, :] = np.sin(ang)
    cs = ContactSet(nc=1, nk=nk, ngc=6, representation="full")

    z = np.zeros(1 + nk)
    z[0] = 1.0
    z[1 + 1] = 1.0  # 45 degrees

    cf = contact_forces(z, cs, D)
    np.testing.assert_allclose(cf, [1.0, np.sqrt(0.5), np.sqrt(0.5)], atol=1e-12)


def test_reduce_tangents_layout():
    D = np.arange(6 * 8, dtype=float).reshape(6, 8)
    ST = reduce_tangents(D, nc=2, nk=4)
    np.testing.assert_array_equal(ST[:, 0], D[:, 0])
    np.testing.assert_array_equal(ST[:, 1], D[:, 4])
    np.testing.assert_array_equal(ST[:, 2], D[:, 1])
    np.testing.assert_array_equal(ST[:, 3], D[:, 5])


def _octagon_D():
    """One contact, 8 evenly spaced directions in the x-y translation plane."""
    ang = 2.0 * np.pi * np.arange(8) / 8
    D = np.zeros((6, 8))
    D[0, :] = np.cos(ang)
    D[1, :] = np.sin(ang)
    return D


def test_reduce_tangents_quarter_turn_for_nk8():
    D = _octagon_D()
    ST = reduce_tangents(D, nc=1, nk=8)
    np.testing.assert_array_equal(ST[:, 0], D[:, 0])
    np.testing.assert_array_equal(ST[:, 1], D[:, 2])
    assert abs(float(ST[:, 0] @ ST[:, 1])) < 1e-12


@pytest.mark.parametrize("representation", REPRESENTATIONS)
def test_octagon_contact_tangential_magnitude(representation):
    M = np.eye(6)
    N = np.array([[0.0, 0.0, 1.0, 0.0, 0.0, 0.0]]).T
    v = np.array([0.3, -0.4, 0.5, 0.0, 0.0, 0.0])

    est = FrictionEstimator(representation=representation)
    est.pre_event(np.zeros(6))
    norm_error = est.post_event(v, N, _octagon_D(), M, 0.01)

    assert norm_error == pytest.approx(0.0, abs=1e-8)
    np.testing.assert_allclose(est.cf, [0.5, 0.3, -0.4], atol=1e-8)
    assert est.MU[0, 0] == pytest.approx(1.0, rel=1e-6)


# ===========================
# two-phase cycle
# ===========================

def test_phase_transitions():
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()
    assert est.phase == EstimatorPhase.AWAITING_PRE_EVENT

    est.pre_event(np.zeros(6))
    assert est.phase == EstimatorPhase.AWAITING_POST_EVENT

    est.post_event(v, N, D, M, 0.01)
    assert est.phase == EstimatorPhase.AWAITING_PRE_EVENT
    assert est.f_prev is None
    np.testing.assert_array_equal(est.v_prev, v)
    assert est.iteration == 1


def test_post_event_without_pre_event_uses_zero_force():
    M, v, N, D = _single_contact_drop()

    a = FrictionEstimator()
    err_a = a.post_event(v, N, D, M, 0.01)

    b = FrictionEstimator()
    b.pre_event(np.zeros(6))
    err_b = b.post_event(v, N, D, M, 0.01)

    assert err_a == pytest.approx(err_b, abs=1e-12)
    np.testing.assert_allclose(a.cf, b.cf, atol=1e-12)


def test_force_sample_is_consumed():
    """A pre_event force is used by exactly one post_event."""
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()

    # gravity-like force exactly explains the velocity jump: nothing left for the contact
    est.pre_event(np.array([0.0, 0.0, 10.0, 0.0, 0.0, 0.0]))
    est.post_event(v, N, D, M, 0.01)
    np.testing.assert_allclose(est.cf, [0.0, 0.0, 0.0], atol=1e-9)

    # same velocity again, no new sample: dv = 0 and f_ = 0
    err = est.post_event(v, N, D, M, 0.01)
    assert err == pytest.approx(0.0, abs=1e-9)
    np.testing.assert_allclose(est.cf, [0.0, 0.0, 0.0], atol=1e-9)


def test_no_contacts_returns_sentinel():
    M = np.eye(6)
    v = np.ones(6)
    est = FrictionEstimator()
    est.pre_event(np.zeros(6))

    err = est.post_event(v, np.zeros((6, 0)), np.zeros((6, 0)), M, 0.01)
    assert err == -1
    assert est.iteration == 0
    assert est.last is None
    np.testing.assert_array_equal(est.v_prev, v)


def test_estimate_single_call_form():
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()

    err, MU, cf = est.estimate(None, np.zeros(6), 0.01, None, None, None, post_event=False)
    assert err == -1
    assert MU.shape == (0, 1)
    assert cf.shape == (0,)

    err, MU, cf = est.estimate(v, None, 0.01, N, D, M, post_event=True)
    assert err == pytest.approx(0.0, abs=1e-9)
    assert MU.shape == (1, 1)
    np.testing.assert_allclose(cf, [0.1, 0.0, 0.0], atol=1e-9)


def test_module_estimate_keeps_state_in_the_passed_instance():
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()

    estimate(None, np.zeros(6), 0.01, None, None, None, False, estimator=est)
    err, _, cf = estimate(v, None, 0.01, N, D, M, True, estimator=est)
    assert err == pytest.approx(0.0, abs=1e-9)
    assert est.iteration == 1
    np.testing.assert_allclose(cf, est.cf)


def test_module_estimate_needs_an_instance():
    M, v, N, D = _single_contact_drop()
    with pytest.raises(TypeError):
        estimate(v, None, 0.01, N, D, M, True)


def test_instances_are_independent():
    M, v, N, D = _single_contact_drop()
    a = FrictionEstimator()
    b = FrictionEstimator()

    a.pre_event(np.zeros(6))
    a.post_event(v, N, D, M, 0.01)

    b.pre_event(np.zeros(6))
    b.post_event(2.0 * v, N, D, M, 0.01)

    np.testing.assert_allclose(a.cf, [0.1, 0.0, 0.0], atol=1e-9)
    np.testing.assert_allclose(b.cf, [0.2, 0.0, 0.0], atol=1e-9)


def test_reset_clears_state():
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()
    est.pre_event(np.zeros(6))
    est.post_event(v, N, D, M, 0.01)

    est.reset()
    assert est.iteration == 0
    assert est.v_prev is None
    assert est.last is None
    assert est.cf.shape == (0,)


# ===========================
# validation
# ===========================

def test_force_rows_must_match_mass_matrix():
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()
    est.pre_event(np.zeros(5))
    with pytest.raises(InvalidDimension):
        est.post_event(v, N, D, M, 0.01)
    assert est.v_prev is None


def test_friction_columns_must_split_per_contact():
    M, v, _, _ = _single_contact_drop()
    N = np.zeros((6, 2))
    est = FrictionEstimator()
    with pytest.raises(InvalidDimension):
        est.post_event(v, N, np.zeros((6, 5)), M, 0.01)


def test_nk_checks():
    M, v, N, _ = _single_contact_drop()
    with pytest.raises(InvalidDimension):
        FrictionEstimator("reduced").post_event(v, N, np.zeros((6, 3)), M, 0.01)
    with pytest.raises(InvalidDimension):
        FrictionEstimator("reduced").post_event(v, N, np.zeros((6, 2)), M, 0.01)

    err = FrictionEstimator("full").post_event(v, N, np.zeros((6, 2)), M, 0.01)
    assert err == pytest.approx(0.0, abs=1e-9)


@pytest.mark.parametrize("representation", REPRESENTATIONS)
def test_nk_without_perpendicular_direction_rejected(representation):
    """nk = 6 has no direction a quarter turn from the first."""
    M, v, N, _ = _single_contact_drop()
    ang = 2.0 * np.pi * np.arange(6) / 6
    D = np.zeros((6, 6))
    D[0, :] = np.cos(ang)
    D[1, :] = np.sin(ang)
    with pytest.raises(InvalidDimension):
        FrictionEstimator(representation).post_event(v, N, D, M, 0.01)


def test_jacobian_rows_and_dt():
    M, v, N, D = _single_contact_drop()
    with pytest.raises(InvalidDimension):
        FrictionEstimator().post_event(v, N[:5], D, M, 0.01)
    with pytest.raises(InvalidDimension):
        FrictionEstimator().post_event(v, N, D, M, 0.0)
    with pytest.raises(InvalidDimension):
        FrictionEstimator().post_event(v, N, D, np.eye(6)[:5], 0.01)


def test_unknown_representation():
    with pytest.raises(ValueError):
        FrictionEstimator(representation="hexagonal")


# ===========================
# failures stay local
# ===========================

def test_stage_one_failure_keeps_previous_output(monkeypatch):
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()
    est.pre_event(np.zeros(6))
    est.post_event(v, N, D, M, 0.01)
    cf_before = est.cf.copy()
    mu_before = est.MU.copy()

    monkeypatch.setattr(estimator_mod, "solve_qp", lambda Q, c, A, b: (np.zeros(Q.shape[0]), False))

    est.pre_event(np.zeros(6))
    err = est.post_event(2.0 * v, N, D, M, 0.01)

    assert err == -1
    assert est.last.stage_one_ok is False
    np.testing.assert_array_equal(est.cf, cf_before)
    np.testing.assert_array_equal(est.MU, mu_before)
    np.testing.assert_array_equal(est.v_prev, 2.0 * v)


def test_stage_two_failure_keeps_stage_one_result(monkeypatch):
    real_solve_qp = estimator_mod.solve_qp
    calls = []

    def flaky(Q, c, A, b):
        calls.append(Q.shape[0])
        if len(calls) == 1:
            return real_solve_qp(Q, c, A, b)
        return np.zeros(Q.shape[0]), False

    monkeypatch.setattr(estimator_mod, "solve_qp", flaky)

    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator()
    est.pre_event(np.zeros(6))
    err = est.post_event(v, N, D, M, 0.01)

    assert len(calls) == 2
    assert est.last.stage_one_ok is True
    assert est.last.stage_two_ok is False
    assert err == pytest.approx(0.0, abs=1e-9)
    assert est.cf[0] == pytest.approx(0.1, abs=1e-9)


# ===========================
# diagnostics hook / logging
# ===========================

def test_cross_check_against_own_solution():
    p = _random_problem(seed=4)
    est = FrictionEstimator()
    with pytest.raises(RuntimeError):
        est.cross_check(np.zeros(6))

    _prime(est, p["v_prev"], p["M"], p["N"], p["D"], p["dt"])
    est.pre_event(p["f"])
    err = est.post_event(p["v"], p["N"], p["D"], p["M"], p["dt"])

    chk = est.cross_check(est.last.z)
    assert chk.norm_error == pytest.approx(err, abs=1e-10)
    np.testing.assert_allclose(chk.dv, np.linalg.solve(p["M"], est.last.R @ est.last.z), atol=1e-10)

    with pytest.raises(InvalidDimension):
        est.cross_check(np.zeros(3))


def test_verbose_prints_cycle(capsys):
    M, v, N, D = _single_contact_drop()
    est = FrictionEstimator(verbose=True)
    est.pre_event(np.zeros(6))
    est.post_event(v, N, D, M, 0.01)

    out = capsys.readouterr().out
    assert "[FRICEST]" in out
    assert "MU_Estimate" in out
