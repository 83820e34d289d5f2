#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""estimate_demo.py (fricest)

Drop a box on a plane in MuJoCo, optionally shove it sideways, and estimate
the contact forces / Coulomb ratio of every ground contact each step.

Run (from the folder that contains both `fricest/` and `scripts/`):
  export JAX_PLATFORM_NAME=cpu
  python3 scripts/estimate_demo.py --mu 0.5 --push 8.0
  python3 scripts/estimate_demo.py --representation full --nk 8 --out runs/box_mu.npz

While the box slides, the printed mu should sit at the MJCF friction value;
while it sticks, mu is whatever ratio the static load needs (below that value).
"""

from __future__ import annotations

# Make CPU the default BEFORE importing JAX via any module.
import os
os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")

import argparse
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import mujoco

from fricest import FrictionEstimator
from fricest.mujoco_contacts import (
    load_model,
    contact_frames,
    contact_jacobians,
    mass_matrix,
    generalized_force,
    generalized_velocity,
)

BOX_XML = """
<mujoco model="box_on_plane">
  <option timestep="{dt}" gravity="0 0 -9.81" cone="pyramidal"/>
  <worldbody>
    <geom name="floor" type="plane" size="5 5 0.1" friction="{mu} 0.005 0.0001"/>
    <body name="box" pos="0 0 {z0}">
      <freejoint/>
      <geom name="box_geom" type="box" size="0.1 0.1 0.05" mass="{mass}" friction="{mu} 0.005 0.0001"/>
    </body>
  </worldbody>
</mujoco>
"""


def save_npz(out_path: str | Path, payload: Mapping[str, Any]) -> Path:
    """Save payload to an .npz file (suffix appended if missing)."""
    out_path = Path(out_path)
    if out_path.suffix.lower() != ".npz":
        out_path = out_path.with_suffix(".npz")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    np.savez(str(out_path), **dict(payload))
    return out_path


def run_demo(
    dt: float = 0.002,
    steps: int = 1500,
    mu: float = 0.5,
    mass: float = 1.0,
    nk: int = 4,
    representation: str = "reduced",
    push: float = 0.0,
    push_start: float = 1.0,
    print_every: int = 100,
    verbose: bool = False,
) -> dict[str, np.ndarray]:
    model, data = load_model(xml_string=BOX_XML.format(dt=dt, mu=mu, mass=mass, z0=0.06))
    box = mujoco.mj_name2id(model, mujoco.mjtObj.mjOBJ_BODY, "box")
    est = FrictionEstimator(representation=representation, verbose=verbose)

    t_log: list[float] = []
    err_log: list[float] = []
    mu_log: list[float] = []
    nc_log: list[int] = []

    for k in range(int(steps)):
        t = k * dt
        data.xfrc_applied[box, 0] = push if t >= push_start else 0.0

        mujoco.mj_step(model, data)

        # data still holds the forward pass of the step that just ran
        frames = contact_frames(model, data, body=box)
        N, D = contact_jacobians(model, data, nk=nk, frames=frames)
        est.pre_event(generalized_force(model, data))
        norm_error = est.post_event(generalized_velocity(data), N, D, mass_matrix(model, data), dt)

        mu_k = np.asarray(est.MU[:, 0], dtype=np.float64) if norm_error >= 0.0 else np.zeros(0)
        mu_mean = float(np.nanmean(mu_k)) if mu_k.size and np.any(np.isfinite(mu_k)) else float("nan")

        t_log.append(t)
        err_log.append(float(norm_error))
        mu_log.append(mu_mean)
        nc_log.append(len(frames))

        if print_every > 0 and k % print_every == 0:
            print(f"[demo] t={t:7.3f} nc={len(frames)} err={norm_error:.3e} mu_mean={mu_mean:.4f} vx={data.qvel[0]:+.4f}")

    return {
        "t": np.asarray(t_log, dtype=np.float64),
        "norm_error": np.asarray(err_log, dtype=np.float64),
        "mu_mean": np.asarray(mu_log, dtype=np.float64),
        "nc": np.asarray(nc_log, dtype=np.int32),
    }


def main() -> None:
    ap = argparse.ArgumentParser()

    # --- sim ---
    ap.add_argument("--dt", type=float, default=0.002)
    ap.add_argument("--steps", type=int, default=1500)
    ap.add_argument("--mu", type=float, default=0.5)
    ap.add_argument("--mass", type=float, default=1.0)
    ap.add_argument("--push", type=float, default=0.0, help="horizontal force on the box [N]")
    ap.add_argument("--push_start", type=float, default=1.0)

    # --- estimator ---
    ap.add_argument("--nk", type=int, default=4, help="friction directions per contact: a multiple of 4, or 2 with --representation full")
    ap.add_argument("--representation", type=str, default="reduced", choices=["reduced", "full"])
    ap.add_argument("--verbose", action="store_true")

    # --- output ---
    ap.add_argument("--print_every", type=int, default=100)
    ap.add_argument("--out", type=str, default="")

    args = ap.parse_args()

    logs = run_demo(
        dt=args.dt,
        steps=args.steps,
        mu=args.mu,
        mass=args.mass,
        nk=args.nk,
        representation=args.representation,
        push=args.push,
        push_start=args.push_start,
        print_every=args.print_every,
        verbose=args.verbose,
    )

    if args.out:
        out_path = save_npz(args.out, logs)
        print(f"[io] saved NPZ -> {out_path}")


if __name__ == "__main__":
    main()
