#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
@author: Kh Tohidul Islam; Monash Biomedical Imaging, Monash University, Clayton, Australia
Rigid / Affine Refinement of the ITAB -> ACPC Alignment using ANTs
------------------------------------------------------------------
The coarse landmark alignment may be off by a few degrees, because there are
different conventions for where LPA and RPA are placed. This module registers
the coarsely aligned subject volume to a canonical T1 template (e.g., the SPM
T1) and folds the resulting transform back into the voxel -> head matrices.

The subject and template are written to a temporary directory, registered with
ants.registration, the forward transform is read back and the temporary files
are removed. The registration may fail if the initial alignment is not close
enough; in that case the ANTs error propagates to the caller.

Requirements:
    - antspyx  (https://pypi.org/project/antspyx/)
    - nibabel
"""

import os
import shutil
import tempfile
from typing import Optional

import ants
import nibabel as nib
import numpy as np

from alignment_utils import describe_affine, mldivide, mrdivide

# ANTs transform types standing in for spm_affreg (rigid) and spm_normalise
# without non-linear iterations (affine)
ANTS_TRANSFORMS = {
    "rigid": "Rigid",
    "affine": "AffineFast",
}

SPM_TEMPLATES = {
    "SPM8": "T1.nii",
    "SPM2": "T1.mnc",
}

# ITK works in LPS physical space, nibabel affines in RAS
_LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0, 1.0])


def resolve_template(
    template: Optional[str] = None,
    spm_dir: Optional[str] = None,
    spm_version: str = "SPM8",
) -> str:
    """
    Locate the canonical T1 template.

    An explicit template path wins. Otherwise the template is looked up in the
    SPM installation directory (spm_dir, or $SPM_DIR): templates/T1.nii for
    SPM8 and templates/T1.mnc for SPM2.
    """
    if template:
        if not os.path.isfile(template):
            raise FileNotFoundError(f"Template not found: {template}")
        return template

    version = spm_version.upper()
    if version not in SPM_TEMPLATES:
        raise ValueError(f"unsupported SPM version: {spm_version}")

    spm_dir = spm_dir or os.environ.get("SPM_DIR")
    if not spm_dir:
        raise FileNotFoundError("No template given and neither --spm_dir nor $SPM_DIR is set.")

    path = os.path.join(spm_dir, "templates", SPM_TEMPLATES[version])
    if not os.path.isfile(path):
        raise FileNotFoundError(f"{version} template not found: {path}")
    return path


def write_temp_volume(path: str, anatomy: np.ndarray, transform: np.ndarray) -> str:
    """Write a volume to NIfTI with `transform` as its voxel -> world affine."""
    img = nib.Nifti1Image(np.asarray(anatomy, dtype=np.float32), np.asarray(transform, dtype=float))
    img.header.set_xyzt_units("mm")
    nib.save(img, path)
    return path


def itk_affine_to_ras(parameters, fixed_parameters) -> np.ndarray:
    """
    Convert an ITK AffineTransform into a 4x4 RAS-space matrix.

    parameters : [m11, m12, m13, m21, m22, m23, m31, m32, m33, tx, ty, tz]
    fixed_parameters : centre of rotation [cx, cy, cz]

    ITK maps x -> M (x - c) + c + t, from fixed to moving LPS physical points.
    """
    params = np.asarray(parameters, dtype=float)
    if params.size != 12:
        raise ValueError(f"Expected 12 affine parameters, got {params.size}.")
    center = np.asarray(fixed_parameters, dtype=float)[:3] if len(fixed_parameters) >= 3 else np.zeros(3)

    mat = params[:9].reshape(3, 3)
    lps = np.eye(4)
    lps[:3, :3] = mat
    lps[:3, 3] = params[9:12] + center - mat @ center
    return _LPS_TO_RAS @ lps @ _LPS_TO_RAS


def register_to_template(mri: dict, template_mri: dict, method: str = "affine", log=None) -> np.ndarray:
    """
    Register the subject volume to the template with ANTs.

    Both volumes are written to a temporary directory with their current
    transforms as affines. The temporary directory is always removed.

    Returns
    -------
    template2subject : np.ndarray
        4x4 matrix mapping template head (RAS, mm) to subject head coordinates.
    """
    if method not in ANTS_TRANSFORMS:
        raise ValueError(f"Unsupported refinement method: {method}. Choose one of {', '.join(ANTS_TRANSFORMS)}.")

    tmp_dir = tempfile.mkdtemp(prefix="itab2acpc_")
    try:
        subject_path = write_temp_volume(os.path.join(tmp_dir, "subject.nii.gz"), mri["anatomy"], mri["transform"])
        template_path = write_temp_volume(
            os.path.join(tmp_dir, "template.nii.gz"), template_mri["anatomy"], template_mri["transform"]
        )

        fixed = ants.image_read(template_path)
        moving = ants.image_read(subject_path)

        if log:
            log(f"  Running ANTs {ANTS_TRANSFORMS[method]} registration to template...")
        reg = ants.registration(
            fixed=fixed,
            moving=moving,
            type_of_transform=ANTS_TRANSFORMS[method],
            initial_transform="Identity",
            outprefix=os.path.join(tmp_dir, "reg_"),
            verbose=False,
        )

        fwd = [tf for tf in reg["fwdtransforms"] if tf.endswith(".mat")]
        if not fwd:
            raise RuntimeError("ANTs registration returned no affine transform.")
        tfm = ants.read_transform(fwd[0])
        return itk_affine_to_ras(tfm.parameters, tfm.fixed_parameters)
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


def refine_itab2acpc(mri: dict, template_mri: dict, method: str = "affine", log=None) -> dict:
    """
    Refine a coarsely aligned volume (see approximate_itab2acpc) against the template.

    transform, vox2head -> refined ITAB voxel to ACPC head
    head2head_orig      -> refined ACPC head to ITAB head
    vox2head_orig       -> unchanged
    """
    if "vox2head_orig" not in mri:
        raise ValueError("Run the approximate alignment before refining it.")

    template2subject = register_to_template(mri, template_mri, method=method, log=log)
    if log:
        angle, shift, scales = describe_affine(template2subject)
        log(
            f"  Refinement moved the coarse solution by {angle:.2f} deg, {shift:.2f} mm "
            f"(scales {', '.join(f'{s:.3f}' for s in scales)})"
        )

    itabvox2acpchead2 = mldivide(template2subject, mri["transform"])
    acpchead2itabhead2 = mrdivide(mri["vox2head_orig"], itabvox2acpchead2)

    out = dict(mri)
    out["transform"] = itabvox2acpchead2
    out["vox2head"] = itabvox2acpchead2.copy()
    out["head2head_orig"] = acpchead2itabhead2
    return out
