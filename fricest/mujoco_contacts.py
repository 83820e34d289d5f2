"""MuJoCo host adapter: N, D, M, v, f for the estimator from an MjModel/MjData pair.

After `mujoco.mj_step`, `data` still holds the kinematics, contacts and
smooth forces of the step that just ran (only qpos/qvel were integrated), so
everything here can be read right after the step:

    mujoco.mj_step(model, data)
    est.pre_event(generalized_force(model, data))
    N, D = contact_jacobians(model, data, nk=4)
    est.post_event(generalized_velocity(data), N, D, mass_matrix(model, data), model.opt.timestep)
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import mujoco

from .config import DEFAULT_NK


@dataclass
class ContactFrame:
    point: np.ndarray      # world
    normal: np.ndarray     # from body1 towards body2
    tangent1: np.ndarray
    tangent2: np.ndarray
    body1: int
    body2: int
    dist: float


def load_model(xml_path: str | None = None, xml_string: str | None = None) -> tuple[mujoco.MjModel, mujoco.MjData]:
    if (xml_path is None) == (xml_string is None):
        raise ValueError("[fricest.mujoco] pass exactly one of xml_path / xml_string")
    if xml_path is not None:
        model = mujoco.MjModel.from_xml_path(xml_path)
    else:
        model = mujoco.MjModel.from_xml_string(xml_string)
    return model, mujoco.MjData(model)


def body_id(model: mujoco.MjModel, body: int | str) -> int:
    if isinstance(body, str):
        bid = mujoco.mj_name2id(model, mujoco.mjtObj.mjOBJ_BODY, body)
        if bid < 0:
            raise ValueError(f"[fricest.mujoco] body '{body}' not found")
        return int(bid)
    return int(body)


def contact_frames(model: mujoco.MjModel, data: mujoco.MjData, body: int | str | None = None) -> list[ContactFrame]:
    """Active contacts, optionally only those touching `body`."""
    bid = None if body is None else body_id(model, body)
    out: list[ContactFrame] = []
    for i in range(int(data.ncon)):
        con = data.contact[i]
        if int(con.efc_address) < 0:
            continue
        b1 = int(model.geom_bodyid[con.geom1])
        b2 = int(model.geom_bodyid[con.geom2])
        if bid is not None and bid not in (b1, b2):
            continue
        frame = np.asarray(con.frame, dtype=np.float64).reshape(3, 3)
        out.append(
            ContactFrame(
                point=np.array(con.pos, dtype=np.float64),
                normal=frame[0].copy(),
                tangent1=frame[1].copy(),
                tangent2=frame[2].copy(),
                body1=b1,
                body2=b2,
                dist=float(con.dist),
            )
        )
    return out


def _relative_point_jacobian(model: mujoco.MjModel, data: mujoco.MjData, point: np.ndarray, b1: int, b2: int) -> np.ndarray:
    """3 x nv map from qvel to the velocity of body2 relative to body1 at `point`."""
    jac1 = np.zeros((3, model.nv), dtype=np.float64)
    jac2 = np.zeros((3, model.nv), dtype=np.float64)
    p = np.asarray(point, dtype=np.float64)
    if b1 > 0:
        mujoco.mj_jac(model, data, jac1, None, p, b1)
    if b2 > 0:
        mujoco.mj_jac(model, data, jac2, None, p, b2)
    return jac2 - jac1


def friction_directions(frame: ContactFrame, nk: int) -> np.ndarray:
    """nk unit directions in the tangent plane; row j + nk/2 is -row j."""
    if nk < 2 or nk % 2 != 0:
        raise ValueError(f"[fricest.mujoco] nk must be even and >= 2, got {nk}")
    ang = 2.0 * np.pi * np.arange(nk, dtype=np.float64) / float(nk)
    dirs = np.cos(ang)[:, None] * frame.tangent1[None, :] + np.sin(ang)[:, None] * frame.tangent2[None, :]
    # exact antipodes
    dirs[nk // 2:] = -dirs[: nk // 2]
    return dirs


def contact_jacobians(
    model: mujoco.MjModel,
    data: mujoco.MjData,
    nk: int = DEFAULT_NK,
    body: int | str | None = None,
    frames: list[ContactFrame] | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """N (nv x nc) and contact-major D (nv x nc*nk)."""
    if frames is None:
        frames = contact_frames(model, data, body)
    nc = len(frames)
    N = np.zeros((model.nv, nc), dtype=np.float64)
    D = np.zeros((model.nv, nc * nk), dtype=np.float64)
    for i, fr in enumerate(frames):
        J = _relative_point_jacobian(model, data, fr.point, fr.body1, fr.body2)
        N[:, i] = J.T @ fr.normal
        D[:, i * nk:(i + 1) * nk] = J.T @ friction_directions(fr, nk).T
    return N, D


def mass_matrix(model: mujoco.MjModel, data: mujoco.MjData) -> np.ndarray:
    M = np.zeros((model.nv, model.nv), dtype=np.float64)
    mujoco.mj_fullM(model, data, M)
    return M


def generalized_force(model: mujoco.MjModel, data: mujoco.MjData) -> np.ndarray:
    """Every known non-contact generalized force: applied, actuator, passive, minus bias."""
    f = (
        np.asarray(data.qfrc_applied, dtype=np.float64)
        + np.asarray(data.qfrc_actuator, dtype=np.float64)
        + np.asarray(data.qfrc_passive, dtype=np.float64)
        - np.asarray(data.qfrc_bias, dtype=np.float64)
    )
    xfrc = np.asarray(data.xfrc_applied, dtype=np.float64)
    for b in range(1, model.nbody):
        if not np.any(xfrc[b]):
            continue
        qfrc = np.zeros(model.nv, dtype=np.float64)
        mujoco.mj_applyFT(
            model,
            data,
            xfrc[b, 0:3].copy(),
            xfrc[b, 3:6].copy(),
            np.array(data.xipos[b], dtype=np.float64),
            b,
            qfrc,
        )
        f += qfrc
    return f


def generalized_velocity(data: mujoco.MjData) -> np.ndarray:
    return np.array(data.qvel, dtype=np.float64)
