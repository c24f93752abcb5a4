#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
@author: Kh Tohidul Islam; Monash Biomedical Imaging, Monash University, Clayton, Australia
"""

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Align ITAB Anatomical Volumes towards ACPC Coordinates
------------------------------------------------------

This script batch-processes 3D anatomical volumes acquired in ITAB head
coordinates:
  1) Approximate coregistration from predefined landmark locations
     (nasion, ear canals) of the canonical SPM T1 template
  2) Optionally refines the alignment by registering to the template
     with ANTs (rigid, or affine)
  3) Saves the volume with the updated voxel -> head affine and a JSON
     sidecar holding the original and new transforms

Only the homogeneous transformation matrix is modified; voxel data are
written back untouched.

Methods:
    approximate (0) : landmark based coregistration only
    rigid       (1) : approximate, followed by ANTs rigid registration
    affine      (2) : approximate, followed by ANTs affine registration (default)

Requirements:
    - Python 3.8+
    - nibabel
    - numpy
    - scipy
    - antspyx (for the rigid / affine refinement)
    - tqdm

Example:
    python align_itab_to_acpc.py \
        --input_dir /path/to/itab_nifti \
        --output_dir /path/to/acpc_nifti \
        --method affine \
        --spm_dir /opt/spm8
"""

import os
import sys
import json
import argparse
from datetime import datetime
from typing import Optional, Union

import nibabel as nib
import numpy as np
from tqdm import tqdm

from alignment_utils import approximate_itab2acpc
from ants_refine_registration import refine_itab2acpc, resolve_template

METHODS = ("approximate", "rigid", "affine")


def log(msg: str):
    print(f"[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}] {msg}")


def normalize_method(method: Union[str, int]) -> str:
    """Accept 'approximate' | 'rigid' | 'affine' or the numeric options 0 | 1 | 2."""
    if isinstance(method, (int, np.integer)) and not isinstance(method, bool):
        if 0 <= method < len(METHODS):
            return METHODS[method]
        raise ValueError(f"Unsupported alignment option: {method}. Choose 0, 1 or 2.")
    name = str(method).strip().lower()
    if name.isdigit():
        return normalize_method(int(name))
    if name not in METHODS:
        raise ValueError(f"Unsupported alignment method: {method}. Choose {' | '.join(METHODS)}.")
    return name


def load_mri(path: str, coordsys: str = "itab") -> dict:
    """Read a NIfTI (or MINC) volume into an mri dict."""
    img = nib.load(path)
    data = img.get_fdata(dtype=np.float32)
    if data.ndim != 3:
        raise ValueError(f"Only 3D volumes are supported, got shape {data.shape}: {path}")
    return {
        "anatomy": data,
        "transform": np.asarray(img.affine, dtype=float),
        "dim": data.shape,
        "coordsys": coordsys,
    }


def sidecar_path(out_path: str) -> str:
    base = out_path
    for ext in (".nii.gz", ".nii"):
        if base.lower().endswith(ext):
            base = base[: -len(ext)]
            break
    return f"{base}_transforms.json"


def save_mri(mri: dict, out_path: str, method: Optional[str] = None) -> str:
    """
    Save the volume with mri['transform'] as its affine, plus a JSON sidecar
    with the bookkeeping transforms. Returns the sidecar path.
    """
    out_img = nib.Nifti1Image(np.asarray(mri["anatomy"], dtype=np.float32), mri["transform"])
    out_img.header.set_xyzt_units("mm")
    nib.save(out_img, out_path)

    meta = {"coordsys": mri.get("coordsys"), "method": method}
    for key in ("transform", "vox2head_orig", "vox2head", "head2head_orig"):
        if key in mri:
            meta[key] = np.asarray(mri[key], dtype=float).tolist()

    json_path = sidecar_path(out_path)
    with open(json_path, "w") as f:
        json.dump(meta, f, indent=2)
    return json_path


def align_itab2acpc(mri: dict, method: Union[str, int] = "affine", template_mri: Optional[dict] = None) -> dict:
    """
    Approximate alignment of an ITAB anatomical volume towards ACPC coordinates.

    Parameters
    ----------
    mri : dict
        Volume with at least 'anatomy' and 'transform' (ITAB voxel -> ITAB head).
    method : str or int
        'approximate' (0), 'rigid' (1) or 'affine' (2, default).
    template_mri : dict, optional
        Canonical T1 template, required for 'rigid' and 'affine'.

    Returns
    -------
    dict
        New mri dict with transform, vox2head, vox2head_orig, head2head_orig
        and coordsys='acpc'.
    """
    method = normalize_method(method)
    if method != "approximate" and template_mri is None:
        raise ValueError(f"Method '{method}' requires a template volume.")

    aligned = approximate_itab2acpc(mri)
    if method == "approximate":
        return aligned
    return refine_itab2acpc(aligned, template_mri, method=method, log=log)


def process_one(
    in_path: str,
    out_path: str,
    method: str = "affine",
    template_mri: Optional[dict] = None,
):
    """Load one volume, align it towards ACPC and save it with its transforms sidecar."""
    mri = load_mri(in_path)
    aligned = align_itab2acpc(mri, method=method, template_mri=template_mri)
    save_mri(aligned, out_path, method=normalize_method(method))


def main(argv=None):
    ap = argparse.ArgumentParser(
        description="Align ITAB anatomical volumes towards ACPC coordinates (affine only, no resampling)."
    )
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--input_dir", type=str, help="Folder containing input .nii or .nii.gz files.")
    src.add_argument("--input_file", type=str, help="A single input .nii or .nii.gz file.")
    ap.add_argument("--output_dir", required=True, type=str, help="Folder to write aligned NIfTI files.")
    ap.add_argument("--method", type=str, default="affine", help="approximate | rigid | affine, or 0 | 1 | 2 (default: affine).")
    ap.add_argument("--template", type=str, default=None, help="Canonical T1 template (overrides --spm_dir).")
    ap.add_argument("--spm_dir", type=str, default=None, help="SPM installation directory (default: $SPM_DIR).")
    ap.add_argument("--spm_version", type=str, default="SPM8", choices=["SPM8", "SPM2"], help="SPM template flavour (default: SPM8).")
    ap.add_argument("--suffix", type=str, default="_acpc", help="Filename suffix before extension (default: _acpc).")
    ap.add_argument("--threads", type=int, default=0, help="Number of threads for ANTs. 0 uses ANTs default.")

    args = ap.parse_args(argv)

    try:
        method = normalize_method(args.method)
    except ValueError as e:
        log(f"ERROR: {e}")
        sys.exit(1)

    if args.threads and args.threads > 0:
        os.environ["ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS"] = str(args.threads)
        log(f"Set ITK threads to {args.threads}")

    if args.input_dir is not None:
        if not os.path.isdir(args.input_dir):
            log(f"ERROR: --input_dir does not exist: {args.input_dir}")
            sys.exit(1)
        in_paths = sorted(
            os.path.join(args.input_dir, f) for f in os.listdir(args.input_dir)
            if f.lower().endswith((".nii", ".nii.gz")) and not f.startswith(".")
        )
    else:
        if not os.path.isfile(args.input_file):
            log(f"ERROR: --input_file does not exist: {args.input_file}")
            sys.exit(1)
        in_paths = [args.input_file]
    os.makedirs(args.output_dir, exist_ok=True)

    if not in_paths:
        log("No NIfTI files found in input directory.")
        sys.exit(0)

    template_mri = None
    if method != "approximate":
        try:
            template_path = resolve_template(args.template, args.spm_dir, args.spm_version)
        except (ValueError, FileNotFoundError) as e:
            log(f"ERROR: {e}")
            sys.exit(1)
        log(f"Loading template: {template_path}")
        template_mri = load_mri(template_path, coordsys="acpc")

    log(f"Found {len(in_paths)} file(s). Method: {method}. Writing to: {args.output_dir}")

    n_failed = 0
    for in_path in tqdm(in_paths, desc="Aligning to ACPC"):
        fname = os.path.basename(in_path)
        stem = fname[:-7] if fname.lower().endswith(".nii.gz") else fname[:-4]
        out_path = os.path.join(args.output_dir, f"{stem}{args.suffix}.nii.gz")

        try:
            process_one(in_path, out_path, method=method, template_mri=template_mri)
            log(f"✅ Saved: {out_path}")
        except Exception as e:
            n_failed += 1
            log(f"❌ Failed: {in_path} -> {e}")

    log(f"Done. {len(in_paths) - n_failed} aligned, {n_failed} failed.")


if __name__ == "__main__":
    main()
