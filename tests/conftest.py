import nibabel as nib
import numpy as np
import pytest


@pytest.fixture
def itab_affine():
    # 1 mm voxels, slightly rotated about z, shifted into ITAB head space
    theta = np.deg2rad(5.0)
    aff = np.eye(4)
    aff[:3, :3] = [
        [np.cos(theta), -np.sin(theta), 0.0],
        [np.sin(theta), np.cos(theta), 0.0],
        [0.0, 0.0, 1.0],
    ]
    aff[:3, 3] = [-80.0, -60.0, -40.0]
    return aff


@pytest.fixture
def itab_mri(itab_affine):
    rng = np.random.default_rng(0)
    anatomy = rng.random((12, 14, 10)).astype(np.float32)
    return {"anatomy": anatomy, "transform": itab_affine, "dim": anatomy.shape, "coordsys": "itab"}


@pytest.fixture
def template_mri():
    anatomy = np.ones((8, 9, 7), dtype=np.float32)
    aff = np.array([
        [2.0, 0.0, 0.0, -92.0],
        [0.0, 2.0, 0.0, -128.0],
        [0.0, 0.0, 2.0, -74.0],
        [0.0, 0.0, 0.0, 1.0],
    ])
    return {"anatomy": anatomy, "transform": aff, "dim": anatomy.shape, "coordsys": "acpc"}


@pytest.fixture
def write_nifti():
    def _write(path, anatomy, affine):
        nib.save(nib.Nifti1Image(np.asarray(anatomy, dtype=np.float32), affine), str(path))
        return str(path)
    return _write
