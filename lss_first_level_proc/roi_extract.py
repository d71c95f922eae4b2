#!/usr/bin/env python3

# ============================================================================
# ROI COORDINATE EXTRACTION AND SUMMARY STATISTICS
# 1. Finds the voxel coordinates of a mask above a threshold
# 2. Remaps them through the mask affine and the inverse target affine(s)
# 3. Samples a target volume at those coordinates and averages over the ROI
#
# Version: 1.0
# ============================================================================

import os
import logging

import numpy as np
import nibabel as nib

from .first_level_utils import (
    MissingInput,
    InvalidInput,
    SingularTransform,
    MASK_FILE,
    RESMS_FILE,
)

def load_volume(volume):
    """Return a nibabel image for a path or an already loaded image."""
    if isinstance(volume, (str, os.PathLike)):
        if not os.path.exists(volume):
            raise MissingInput(f"Image file not found: {volume}")
        return nib.load(volume)
    return volume

def _volume_data(img):
    data = img.get_fdata()
    # Drop trailing singleton dimensions (e.g. 3D data stored as X*Y*Z*1)
    while data.ndim > 3 and data.shape[-1] == 1:
        data = data[..., 0]
    if data.ndim != 3:
        raise InvalidInput(f"Expected a 3D volume, got data of shape {data.shape}.")
    return data

def find_index(mask, thresh=0):
    """
    Voxel coordinates of a mask volume with values strictly above thresh.

    NaNs count as zero. Slices along the third axis are scanned in ascending
    order; within a slice, x increases fastest, then y (column-major order).

    Parameters
    ----------
    mask : str or nibabel image
        Mask (or labeled ROI) volume.
    thresh : float
        Threshold, defaults to 0.

    Returns
    -------
    xyz : np.ndarray
        3 x N integer array of 0-based voxel indices.
    affine : np.ndarray
        4 x 4 voxel-to-world affine of the mask.
    """
    img = load_volume(mask)
    data = _volume_data(img)
    data = np.where(np.isnan(data), 0.0, data)

    columns = []
    for z in range(data.shape[2]):
        # nonzero on the transposed slice orders hits by y, then x
        yy, xx = np.nonzero(data[:, :, z].T > thresh)
        if len(xx) > 0:
            columns.append(np.vstack([xx, yy, np.full(len(xx), z)]))

    if columns:
        xyz = np.hstack(columns).astype(int)
    else:
        xyz = np.zeros((3, 0), dtype=int)
    return xyz, np.asarray(img.affine, dtype=np.float64)

def _target_affine(target):
    if isinstance(target, np.ndarray):
        return np.asarray(target, dtype=np.float64)
    return np.asarray(load_volume(target).affine, dtype=np.float64)

def _invert_affine(affine):
    if affine.shape != (4, 4):
        raise InvalidInput(f"Affine must be a 4x4 matrix, got shape {affine.shape}.")
    if not np.all(np.isfinite(affine)):
        raise SingularTransform(f"Affine is not finite:\n{affine}")
    if np.linalg.det(affine) == 0:
        raise SingularTransform(f"Affine has zero determinant:\n{affine}")
    try:
        inv = np.linalg.inv(affine)
    except np.linalg.LinAlgError as e:
        raise SingularTransform(f"Affine could not be inverted: {e}")
    if not np.all(np.isfinite(inv)):
        raise SingularTransform(f"Affine inverse is not finite:\n{affine}")
    return inv

def remap(xyz, mask_affine, targets):
    """
    Map mask voxel coordinates into the voxel space of each target volume.

    Parameters
    ----------
    xyz : np.ndarray
        3 x N voxel coordinates in mask space (from find_index).
    mask_affine : np.ndarray
        4 x 4 affine of the mask.
    targets : image, path, 4 x 4 array, or a list of these
        Target volume(s) (or their affines).

    Returns
    -------
    list of np.ndarray
        One 3 x N float array per target.

    Raises
    ------
    SingularTransform
        If any target affine cannot be inverted. Nothing is returned in that
        case, even if other targets were fine.
    InvalidInput
        If a target affine is not 4 x 4.
    """
    if not isinstance(targets, (list, tuple)):
        targets = [targets]

    inverses = [_invert_affine(_target_affine(t)) for t in targets]

    xyz = np.asarray(xyz, dtype=np.float64).reshape(3, -1)
    homogeneous = np.vstack([xyz, np.ones((1, xyz.shape[1]))])
    world = np.asarray(mask_affine, dtype=np.float64) @ homogeneous
    return [(inv @ world)[:3, :] for inv in inverses]

def sample_volume(volume, coords):
    """
    Values of a 3D volume at (possibly off-grid) voxel coordinates.

    Coordinates are rounded to the nearest voxel; samples outside the grid
    are NaN.
    """
    data = _volume_data(load_volume(volume))
    coords = np.asarray(coords, dtype=np.float64).reshape(3, -1)
    idx = np.rint(coords).astype(int)

    shape = np.array(data.shape).reshape(3, 1)
    inside = np.all((idx >= 0) & (idx < shape), axis=0)
    values = np.full(idx.shape[1], np.nan)
    values[inside] = data[idx[0, inside], idx[1, inside], idx[2, inside]]
    return values

def mean_over_roi(values):
    """Mean of ROI samples with NaN counted as 0. Empty input gives NaN."""
    values = np.asarray(values, dtype=np.float64).ravel()
    if values.size == 0:
        return float("nan")
    return float(np.mean(np.where(np.isnan(values), 0.0, values)))

def roi_mean(mask, volume, thresh=0):
    """Mean of a volume over the voxels of a mask (find_index, remap, sample)."""
    xyz, mask_affine = find_index(mask, thresh)
    img = load_volume(volume)
    coords = remap(xyz, mask_affine, img)[0]
    return mean_over_roi(sample_volume(img, coords))

def mean_residual_variance(model_dir, thresh=0, logger=None):
    """Mean of a model's ResMS image over its analysis mask."""
    _log = logger or logging.getLogger(__name__)
    mask_path = os.path.join(model_dir, MASK_FILE)
    resms_path = os.path.join(model_dir, RESMS_FILE)
    for path in (mask_path, resms_path):
        if not os.path.exists(path):
            raise MissingInput(f"Cannot find {path}.")

    mean_resms = roi_mean(mask_path, resms_path, thresh)
    _log.info("Mean ResMS for %s: %.6g", model_dir, mean_resms)
    return mean_resms
