import json
import os

import nibabel as nib
import numpy as np
import pytest

import align_itab_to_acpc as aia
from alignment_utils import approximate_itab2acpc


@pytest.mark.parametrize(
    "value, expected",
    [(0, "approximate"), (1, "rigid"), (2, "affine"), ("2", "affine"), ("Rigid", "rigid"), ("affine", "affine")],
)
def test_normalize_method(value, expected):
    assert aia.normalize_method(value) == expected


@pytest.mark.parametrize("value", [3, -1, "normalise", "", True])
def test_normalize_method_rejects(value):
    with pytest.raises(ValueError):
        aia.normalize_method(value)


def test_load_mri(tmp_path, write_nifti, itab_mri):
    path = write_nifti(tmp_path / "sub.nii.gz", itab_mri["anatomy"], itab_mri["transform"])
    mri = aia.load_mri(path)
    assert mri["coordsys"] == "itab"
    assert mri["dim"] == itab_mri["anatomy"].shape
    np.testing.assert_allclose(mri["transform"], itab_mri["transform"], atol=1e-4)


def test_load_mri_rejects_4d(tmp_path, write_nifti):
    path = write_nifti(tmp_path / "bold.nii.gz", np.zeros((4, 4, 4, 2)), np.eye(4))
    with pytest.raises(ValueError):
        aia.load_mri(path)


def test_save_mri_writes_sidecar(tmp_path, itab_mri):
    aligned = approximate_itab2acpc(itab_mri)
    out_path = str(tmp_path / "sub_acpc.nii.gz")
    json_path = aia.save_mri(aligned, out_path, method="approximate")

    assert json_path == str(tmp_path / "sub_acpc_transforms.json")
    img = nib.load(out_path)
    np.testing.assert_allclose(img.affine, aligned["transform"], atol=1e-4)
    np.testing.assert_allclose(img.get_fdata(), itab_mri["anatomy"], atol=1e-6)

    with open(json_path) as f:
        meta = json.load(f)
    assert meta["coordsys"] == "acpc"
    assert meta["method"] == "approximate"
    np.testing.assert_allclose(meta["vox2head_orig"], itab_mri["transform"])
    np.testing.assert_allclose(meta["head2head_orig"], aligned["head2head_orig"])


def test_align_itab2acpc_approximate(itab_mri):
    aligned = aia.align_itab2acpc(itab_mri, method=0)
    np.testing.assert_allclose(aligned["transform"], approximate_itab2acpc(itab_mri)["transform"])


def test_align_itab2acpc_requires_template(itab_mri):
    with pytest.raises(ValueError):
        aia.align_itab2acpc(itab_mri, method="rigid")
    with pytest.raises(ValueError):
        aia.align_itab2acpc(itab_mri)


def test_align_itab2acpc_refines(monkeypatch, itab_mri, template_mri):
    calls = {}

    def fake_refine(mri, template, method, log=None):
        calls["method"] = method
        calls["coordsys"] = mri["coordsys"]
        out = dict(mri)
        out["refined"] = True
        return out

    monkeypatch.setattr(aia, "refine_itab2acpc", fake_refine)
    aligned = aia.align_itab2acpc(itab_mri, method=1, template_mri=template_mri)
    assert aligned["refined"]
    assert calls == {"method": "rigid", "coordsys": "acpc"}


def test_main_approximate_batch(tmp_path, write_nifti, itab_mri):
    in_dir = tmp_path / "in"
    out_dir = tmp_path / "out"
    in_dir.mkdir()
    write_nifti(in_dir / "sub01.nii.gz", itab_mri["anatomy"], itab_mri["transform"])
    write_nifti(in_dir / "sub02.nii", itab_mri["anatomy"], itab_mri["transform"])
    (in_dir / "notes.txt").write_text("ignored")

    aia.main(["--input_dir", str(in_dir), "--output_dir", str(out_dir), "--method", "approximate"])

    assert sorted(os.listdir(out_dir)) == [
        "sub01_acpc.nii.gz",
        "sub01_acpc_transforms.json",
        "sub02_acpc.nii.gz",
        "sub02_acpc_transforms.json",
    ]
    img = nib.load(str(out_dir / "sub01_acpc.nii.gz"))
    expected = approximate_itab2acpc(aia.load_mri(str(in_dir / "sub01.nii.gz")))["transform"]
    np.testing.assert_allclose(img.affine, expected, atol=1e-4)


def test_main_uses_template(monkeypatch, tmp_path, write_nifti, itab_mri, template_mri):
    template = write_nifti(tmp_path / "T1.nii", template_mri["anatomy"], template_mri["transform"])
    subject = write_nifti(tmp_path / "sub.nii.gz", itab_mri["anatomy"], itab_mri["transform"])
    seen = {}

    def fake_refine(mri, template_vol, method, log=None):
        seen["method"] = method
        seen["template_coordsys"] = template_vol["coordsys"]
        return mri

    monkeypatch.setattr(aia, "refine_itab2acpc", fake_refine)
    aia.main(["--input_file", subject, "--output_dir", str(tmp_path / "out"), "--template", template, "--method", "2"])

    assert seen == {"method": "affine", "template_coordsys": "acpc"}
    assert os.path.isfile(tmp_path / "out" / "sub_acpc.nii.gz")


def test_main_failure_is_logged_and_batch_continues(monkeypatch, tmp_path, write_nifti, itab_mri, capsys):
    in_dir = tmp_path / "in"
    in_dir.mkdir()
    write_nifti(in_dir / "good.nii.gz", itab_mri["anatomy"], itab_mri["transform"])
    write_nifti(in_dir / "bad.nii.gz", np.zeros((2, 2, 2, 2)), np.eye(4))

    aia.main(["--input_dir", str(in_dir), "--output_dir", str(tmp_path / "out"), "--method", "0"])

    out = capsys.readouterr().out
    assert "Failed" in out and "bad.nii.gz" in out
    assert "1 aligned, 1 failed" in out
    assert os.path.isfile(tmp_path / "out" / "good_acpc.nii.gz")


@pytest.mark.parametrize(
    "argv",
    [
        ["--input_dir", "/does/not/exist", "--output_dir", "out"],
        ["--input_file", "/does/not/exist.nii", "--output_dir", "out"],
        ["--input_dir", ".", "--output_dir", "out", "--method", "syn"],
    ],
)
def test_main_invalid_arguments_exit(argv, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(SystemExit) as exc:
        aia.main(argv)
    assert exc.value.code == 1


def test_main_missing_template_exits(tmp_path, write_nifti, itab_mri, monkeypatch):
    monkeypatch.delenv("SPM_DIR", raising=False)
    subject = write_nifti(tmp_path / "sub.nii.gz", itab_mri["anatomy"], itab_mri["transform"])
    with pytest.raises(SystemExit) as exc:
        aia.main(["--input_file", subject, "--output_dir", str(tmp_path / "out"), "--method", "rigid"])
    assert exc.value.code == 1
