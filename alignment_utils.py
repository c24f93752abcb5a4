#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
@author: Kh Tohidul Islam; Monash Biomedical Imaging, Monash University, Clayton, Australia
"""

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Coordinate Utilities for ITAB -> ACPC Alignment
-----------------------------------------------

Helper functions for:
  - Canonical T1 template landmarks (voxel and ACPC head coordinates)
  - Head coordinate systems built from three anatomical points
  - 4x4 homogeneous transform chains between voxel and head spaces
  - Coarse (landmark based) ITAB -> ACPC alignment
  - Summaries of head -> head transforms for quality control

Only homogeneous matrices are touched here; voxel data is never resampled.
"""

from typing import Dict, Tuple
import numpy as np
from scipy.linalg import polar
from scipy.spatial.transform import Rotation


# Voxel -> ACPC head (mm) of the SPM canonical T1 template (2 mm, 91x109x91).
ACPCVOX2ACPCHEAD = np.array([
    [2.0, 0.0, 0.0, -92.0],
    [0.0, 2.0, 0.0, -128.0],
    [0.0, 0.0, 2.0, -74.0],
    [0.0, 0.0, 0.0, 1.0],
])

# Voxel indices of some points in the SPM canonical T1, in the same index
# convention as ACPCVOX2ACPCHEAD.
TEMPLATE_LANDMARKS_VOX = {
    "ac": (46, 64, 37),         # anterior commissure
    "ori": (46, 48, 10),        # approximately between the ears
    "nas": (46, 106, 13),       # approximately the nasion
    "lpa_canal": (5, 48, 10),   # left ear canal
    "rpa_canal": (87, 48, 10),  # right ear canal
}

HEAD_COORDSYS = ("itab", "neuromag", "ctf", "4d", "bti", "yokogawa")


def to_homogeneous(points: np.ndarray) -> np.ndarray:
    """Append a column of ones to (3,) or (N, 3) points."""
    pts = np.atleast_2d(np.asarray(points, dtype=float))
    if pts.shape[1] != 3:
        raise ValueError(f"Expected points with 3 coordinates, got shape {pts.shape}.")
    return np.hstack([pts, np.ones((pts.shape[0], 1))])


def apply_transform(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Apply a 4x4 homogeneous transform to one point (3,) or many points (N, 3).

    The output has the same shape as the input.
    """
    matrix = np.asarray(matrix, dtype=float)
    if matrix.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 matrix, got shape {matrix.shape}.")
    single = np.asarray(points).ndim == 1
    out = (matrix @ to_homogeneous(points).T).T[:, :3]
    return out[0] if single else out


def mldivide(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Return inv(a) @ b, solved rather than explicitly inverted."""
    return np.linalg.solve(np.asarray(a, dtype=float), np.asarray(b, dtype=float))


def mrdivide(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Return a @ inv(b), solved rather than explicitly inverted."""
    return np.linalg.solve(np.asarray(b, dtype=float).T, np.asarray(a, dtype=float).T).T


def template_landmarks_head() -> Dict[str, np.ndarray]:
    """Template landmarks in ACPC head coordinates (mm); AC sits at the origin."""
    return {
        name: apply_transform(ACPCVOX2ACPCHEAD, np.array(vox, dtype=float))
        for name, vox in TEMPLATE_LANDMARKS_VOX.items()
    }


def _unit(vec: np.ndarray, what: str) -> np.ndarray:
    norm = np.linalg.norm(vec)
    if norm < 1e-12:
        raise ValueError(f"Degenerate anatomical points: {what} has zero length.")
    return vec / norm


def _frame_to_matrix(origin, dirx, diry, dirz) -> np.ndarray:
    # rows are the new axes, so rot @ (p - origin) expresses p in the new frame
    rot = np.eye(4)
    rot[:3, :3] = np.vstack([dirx, diry, dirz])
    tra = np.eye(4)
    tra[:3, 3] = -np.asarray(origin, dtype=float)
    return rot @ tra


def head_coordinates(
    nas: np.ndarray,
    lpa: np.ndarray,
    rpa: np.ndarray,
    coordsys: str = "itab",
) -> np.ndarray:
    """
    Build the homogeneous transform into a fiducial based head coordinate system.

    Parameters
    ----------
    nas, lpa, rpa : array-like of 3 floats
        Nasion, left and right pre-auricular points expressed in some input frame.
    coordsys : str
        'itab' or 'neuromag': x axis from LPA to RPA, origin at the projection of
        the nasion on the LPA-RPA line, y axis towards the nasion.
        'ctf', '4d', 'bti' or 'yokogawa': origin between LPA and RPA, x axis
        towards the nasion, z axis perpendicular to the fiducial plane (up).

    Returns
    -------
    h : np.ndarray
        4x4 matrix mapping points from the input frame to the head frame.
    """
    nas = np.asarray(nas, dtype=float)[:3]
    lpa = np.asarray(lpa, dtype=float)[:3]
    rpa = np.asarray(rpa, dtype=float)[:3]
    coordsys = coordsys.lower()

    if coordsys in ("itab", "neuromag"):
        dirx = _unit(rpa - lpa, "lpa->rpa")
        origin = lpa + np.dot(nas - lpa, dirx) * dirx
        diry = _unit(nas - origin, "origin->nas")
        dirz = np.cross(dirx, diry)
    elif coordsys in ("ctf", "4d", "bti", "yokogawa"):
        origin = (lpa + rpa) / 2.0
        dirx = _unit(nas - origin, "origin->nas")
        dirz = _unit(np.cross(dirx, lpa - rpa), "fiducial plane normal")
        diry = np.cross(dirz, dirx)
    else:
        raise ValueError(
            f"Unsupported head coordinate system: {coordsys}. Choose one of {', '.join(HEAD_COORDSYS)}."
        )

    return _frame_to_matrix(origin, dirx, diry, dirz)


def acpc_coordinates(ac: np.ndarray, pc: np.ndarray, midsag: np.ndarray) -> np.ndarray:
    """
    Build the homogeneous transform into ACPC head coordinates.

    The origin is the anterior commissure, y points from PC to AC and z points
    towards the mid-sagittal reference point (orthogonalized against y).
    """
    ac = np.asarray(ac, dtype=float)[:3]
    pc = np.asarray(pc, dtype=float)[:3]
    midsag = np.asarray(midsag, dtype=float)[:3]

    diry = _unit(ac - pc, "pc->ac")
    dirz = midsag - ac
    dirz = _unit(dirz - np.dot(dirz, diry) * diry, "ac->midsag")
    dirx = np.cross(diry, dirz)
    return _frame_to_matrix(ac, dirx, diry, dirz)


def acpchead2itabhead() -> np.ndarray:
    """Transform from template ACPC head coordinates to ITAB head coordinates."""
    lm = template_landmarks_head()
    return head_coordinates(lm["nas"], lm["lpa_canal"], lm["rpa_canal"], coordsys="itab")


def approximate_itab2acpc(mri: dict) -> dict:
    """
    Coarse ITAB -> ACPC alignment from the predefined template landmarks.

    Only the homogeneous transform and the bookkeeping fields change:
      transform, vox2head  -> ITAB voxel to approximate ACPC head
      vox2head_orig        -> original ITAB voxel to ITAB head
      head2head_orig       -> ACPC head to ITAB head
      coordsys             -> 'acpc'

    Returns a new dict; the input is left untouched.
    """
    itabvox2itabhead = np.asarray(mri["transform"], dtype=float)
    acpc2itab = acpchead2itabhead()
    itabvox2acpchead = mldivide(acpc2itab, itabvox2itabhead)

    out = dict(mri)
    out["transform"] = itabvox2acpchead
    out["vox2head_orig"] = itabvox2itabhead.copy()
    out["vox2head"] = itabvox2acpchead.copy()
    out["head2head_orig"] = acpc2itab
    out["coordsys"] = "acpc"
    return out


def describe_affine(matrix: np.ndarray) -> Tuple[float, float, np.ndarray]:
    """
    Summarize a head -> head transform.

    Returns
    -------
    angle_deg : float
        Rotation angle of the rotational part (polar decomposition).
    translation_mm : float
        Length of the translation vector.
    scales : np.ndarray
        Scale factors along the principal stretch directions.
    """
    matrix = np.asarray(matrix, dtype=float)
    rot, stretch = polar(matrix[:3, :3])
    if np.linalg.det(rot) < 0:
        raise ValueError("Transform contains a reflection; expected a head -> head transform.")
    angle_deg = float(np.degrees(Rotation.from_matrix(rot).magnitude()))
    translation_mm = float(np.linalg.norm(matrix[:3, 3]))
    scales = np.sort(np.linalg.eigvalsh(stretch))
    return angle_deg, translation_mm, scales
