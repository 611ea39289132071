from __future__ import annotations

from pathlib import Path

import nibabel as nib
import numpy as np


def _load_nifti(img: nib.Nifti1Image | str | Path) -> nib.Nifti1Image:
    """Return a NIfTI image, loading it from disk when a path is given."""
    if isinstance(img, nib.Nifti1Image):
        return img
    return nib.load(str(img))


def _channel_planes(img: nib.Nifti1Image) -> list[np.ndarray]:
    """Split a slice image into 2D channel planes in (row, column) order.

    NIfTI stores the x axis first; planes are transposed so rows follow the
    image y axis. Singleton axes (a one-voxel-thick slice) are dropped and the
    last remaining axis is taken as the channel axis.
    """
    data = np.asarray(img.dataobj)
    data = data.reshape([size for size in data.shape if size != 1] or [1])
    if data.ndim == 2:
        return [data.T]
    if data.ndim != 3:
        raise ValueError(f"Expected a 2D slice with an optional channel axis, got shape {img.shape}")
    return [data[..., index].T for index in range(data.shape[-1])]
