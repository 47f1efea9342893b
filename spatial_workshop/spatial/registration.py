"""Landmark-based registration of spatial coordinates and tissue images."""

import logging
from pathlib import Path
from typing import Literal, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd
from scipy import ndimage

from ..io.readers import get_image, get_library_id

logger = logging.getLogger(__name__)

LANDMARK_COLUMNS = ["source_x", "source_y", "target_x", "target_y"]
MIN_LANDMARKS = {"affine": 3, "similarity": 2, "rigid": 2}


def _check_landmarks(source_points, target_points, kind: str) -> Tuple[np.ndarray, np.ndarray]:
    if kind not in MIN_LANDMARKS:
        raise ValueError(f"Unknown transform kind '{kind}'. Use one of {list(MIN_LANDMARKS)}")

    source = np.asarray(source_points, dtype=float)
    target = np.asarray(target_points, dtype=float)

    if source.ndim != 2 or source.shape[1] != 2:
        raise ValueError(f"Landmarks must be N x 2 arrays, got shape {source.shape}")
    if source.shape != target.shape:
        raise ValueError(
            f"Source and target landmarks differ in shape: {source.shape} vs {target.shape}"
        )
    if source.shape[0] < MIN_LANDMARKS[kind]:
        raise ValueError(
            f"A {kind} transform needs at least {MIN_LANDMARKS[kind]} landmarks, "
            f"got {source.shape[0]}"
        )
    return source, target


def _umeyama(source: np.ndarray, target: np.ndarray, with_scale: bool) -> np.ndarray:
    """Least-squares rotation, translation and optional uniform scale."""
    n = source.shape[0]
    mu_s = source.mean(axis=0)
    mu_t = target.mean(axis=0)
    src_c = source - mu_s
    tgt_c = target - mu_t

    cov = tgt_c.T @ src_c / n
    U, S, Vt = np.linalg.svd(cov)

    # Reflection guard
    D = np.eye(2)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        D[1, 1] = -1

    R = U @ D @ Vt
    scale = 1.0
    if with_scale:
        var_s = (src_c ** 2).sum() / n
        if var_s == 0:
            raise ValueError("Source landmarks are all identical")
        scale = np.trace(np.diag(S) @ D) / var_s

    matrix = np.eye(3)
    matrix[:2, :2] = scale * R
    matrix[:2, 2] = mu_t - scale * R @ mu_s
    return matrix


def estimate_transform(
    source_points,
    target_points,
    kind: Literal["affine", "similarity", "rigid"] = "affine",
) -> np.ndarray:
    """
    Estimate a 2D transform mapping source landmarks onto target landmarks.

    Parameters
    ----------
    source_points, target_points : array-like
        N x 2 arrays of corresponding (x, y) points.
    kind : {'affine', 'similarity', 'rigid'}
        'affine' is fitted by least squares (needs 3 landmarks), 'similarity'
        (rotation, translation, uniform scale) and 'rigid' (rotation and
        translation) by the Umeyama method (need 2 landmarks).

    Returns
    -------
    np.ndarray
        3 x 3 homogeneous transformation matrix.
    """
    source, target = _check_landmarks(source_points, target_points, kind)

    if kind == "affine":
        design = np.hstack([source, np.ones((source.shape[0], 1))])
        params, _, rank, _ = np.linalg.lstsq(design, target, rcond=None)
        if rank < 3:
            raise ValueError("Affine landmarks are degenerate (collinear points)")
        matrix = np.eye(3)
        matrix[:2, :] = params.T
    else:
        matrix = _umeyama(source, target, with_scale=(kind == "similarity"))

    logger.info(f"Estimated {kind} transform from {source.shape[0]} landmarks")
    return matrix


def apply_transform(coords, matrix: np.ndarray) -> np.ndarray:
    """Apply a 3 x 3 homogeneous transform to N x 2 coordinates."""
    coords = np.asarray(coords, dtype=float)
    matrix = np.asarray(matrix, dtype=float)
    return coords @ matrix[:2, :2].T + matrix[:2, 2]


def registration_error(source_points, target_points, matrix: np.ndarray) -> float:
    """Root mean squared distance between transformed source and target landmarks."""
    source = np.asarray(source_points, dtype=float)
    target = np.asarray(target_points, dtype=float)
    residuals = apply_transform(source, matrix) - target
    return float(np.sqrt(np.mean(np.sum(residuals ** 2, axis=1))))


def load_landmarks(csv_path: Union[str, Path]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read landmark pairs from a CSV file.

    The file needs columns source_x, source_y, target_x and target_y.

    Returns
    -------
    tuple of np.ndarray
        (source_points, target_points)
    """
    csv_path = Path(csv_path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Landmark file not found: {csv_path}")

    df = pd.read_csv(csv_path)
    missing = [c for c in LANDMARK_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Landmark file is missing columns: {missing}")

    df = df[LANDMARK_COLUMNS].dropna()
    logger.info(f"Loaded {len(df)} landmark pairs from {csv_path}")
    return (
        df[["source_x", "source_y"]].to_numpy(dtype=float),
        df[["target_x", "target_y"]].to_numpy(dtype=float),
    )


def warp_image(
    image: np.ndarray,
    matrix: np.ndarray,
    output_shape: Tuple[int, int],
    order: int = 1,
) -> np.ndarray:
    """
    Resample an image under a transform given in (x, y) pixel coordinates.

    Parameters
    ----------
    image : np.ndarray
        2D (grayscale) or 3D (height x width x channels) image.
    matrix : np.ndarray
        3 x 3 transform mapping source pixel (x, y) to output pixel (x, y).
    output_shape : tuple of int
        (height, width) of the output image.
    order : int
        Spline interpolation order.

    Returns
    -------
    np.ndarray
        Warped image with the input dtype; pixels outside the source are 0.
    """
    inverse = np.linalg.inv(np.asarray(matrix, dtype=float))

    # ndimage works in (row, col) = (y, x) order and maps output to input
    rc_matrix = np.array(
        [[inverse[1, 1], inverse[1, 0]], [inverse[0, 1], inverse[0, 0]]]
    )
    rc_offset = np.array([inverse[1, 2], inverse[0, 2]])
    out_hw = tuple(int(v) for v in output_shape[:2])

    def _warp_channel(channel):
        return ndimage.affine_transform(
            channel.astype(float),
            rc_matrix,
            offset=rc_offset,
            output_shape=out_hw,
            order=order,
            cval=0.0,
        )

    if image.ndim == 2:
        warped = _warp_channel(image)
    elif image.ndim == 3:
        warped = np.stack(
            [_warp_channel(image[..., c]) for c in range(image.shape[2])], axis=-1
        )
    else:
        raise ValueError(f"Expected a 2D or 3D image, got {image.ndim} dimensions")

    if np.issubdtype(image.dtype, np.integer):
        info = np.iinfo(image.dtype)
        warped = np.clip(np.rint(warped), info.min, info.max)
    return warped.astype(image.dtype)


def register_spatial_data(
    adata: anndata.AnnData,
    source_points,
    target_points,
    kind: Literal["affine", "similarity", "rigid"] = "affine",
    spatial_key: str = "spatial",
    key_added: str = "spatial_registered",
    reference: Optional[anndata.AnnData] = None,
    img_key: Optional[str] = None,
    reference_img_key: Optional[str] = None,
) -> anndata.AnnData:
    """
    Register observations (and optionally their image) onto a reference frame.

    Landmarks are given in the coordinate systems of ``obsm[spatial_key]``
    of ``adata`` (source) and of the reference (target).

    Parameters
    ----------
    adata : anndata.AnnData
        Object to register.
    source_points, target_points : array-like
        N x 2 corresponding landmarks.
    kind : {'affine', 'similarity', 'rigid'}
        Transform family.
    spatial_key : str
        Coordinates to transform.
    key_added : str
        obsm key for the registered coordinates.
    reference : anndata.AnnData, optional
        Reference object. Together with ``img_key`` the source image is warped
        into the reference image frame.
    img_key : str, optional
        Image of ``adata`` to warp.
    reference_img_key : str, optional
        Reference image defining the output frame. Defaults to the first
        reference image.

    Returns
    -------
    anndata.AnnData
        The same object with obsm[key_added] and uns['registration'].
    """
    if spatial_key not in adata.obsm:
        raise ValueError(f"Spatial key '{spatial_key}' not found in adata.obsm")

    matrix = estimate_transform(source_points, target_points, kind=kind)
    rmse = registration_error(source_points, target_points, matrix)

    adata.obsm[key_added] = apply_transform(np.asarray(adata.obsm[spatial_key])[:, :2], matrix)
    adata.uns["registration"] = {
        "matrix": matrix,
        "kind": kind,
        "rmse": rmse,
        "n_landmarks": int(np.asarray(source_points).shape[0]),
        "spatial_key": spatial_key,
        "key_added": key_added,
    }
    logger.info(f"Registered {adata.n_obs} observations ({kind}, landmark RMSE {rmse:.3f})")

    if reference is not None and img_key is not None:
        library_id, image, src_scalef = get_image(adata, img_key)

        if reference_img_key is None:
            ref_lib = get_library_id(reference)
            ref_images = reference.uns["spatial"][ref_lib].get("images", {}) if ref_lib else {}
            if not ref_images:
                raise ValueError("Reference has no images to register onto")
            reference_img_key = next(iter(ref_images))
        _, ref_image, ref_scalef = get_image(reference, reference_img_key)

        # Coordinates to pixels: source pixels -> source coords -> target coords -> target pixels
        to_src = np.diag([1.0 / src_scalef, 1.0 / src_scalef, 1.0])
        to_ref_px = np.diag([ref_scalef, ref_scalef, 1.0])
        pixel_matrix = to_ref_px @ matrix @ to_src

        warped = warp_image(image, pixel_matrix, ref_image.shape[:2])
        entry = adata.uns["spatial"][library_id]
        entry["images"]["registered"] = warped
        entry["scalefactors"]["tissue_registered_scalef"] = ref_scalef
        adata.uns["registration"]["reference_img_key"] = reference_img_key

        logger.info(f"Warped image '{img_key}' into reference frame {ref_image.shape[:2]}")

    return adata
