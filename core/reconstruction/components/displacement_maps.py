"""
Per-pixel maps derived from the source image.

Height, normal, edge and depth maps are computed with vectorised numpy over
the RGB pixels.  Values are quantised to ``uint8`` the same way a clamped
8-bit canvas would store them (round half to even, clamp to [0, 255]), with
the normal map using floor encoding.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from PIL import Image

from core.reconstruction.tuning import ReconstructionTuning

logger = logging.getLogger(__name__)

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


@dataclass
class DisplacementMapSet:
    """Same-resolution buffers derived from one image.

    ``height_map``, ``edge_map`` and ``depth_map`` are ``(H, W)`` uint8;
    ``normal_map`` is ``(H, W, 3)`` uint8 in tangent-space RGB encoding.
    """

    height_map: Optional[np.ndarray]
    normal_map: Optional[np.ndarray]
    edge_map: Optional[np.ndarray]
    depth_map: Optional[np.ndarray]

    @property
    def shape(self) -> tuple:
        return self.height_map.shape

    def to_images(self) -> Dict[str, Image.Image]:
        """Encode the maps as Pillow images (L for scalar maps, RGB for normals)."""
        return {
            "height": Image.fromarray(self.height_map),
            "normal": Image.fromarray(self.normal_map),
            "edge": Image.fromarray(self.edge_map),
            "depth": Image.fromarray(self.depth_map),
        }

    def release(self) -> None:
        self.height_map = self.normal_map = self.edge_map = self.depth_map = None


def _to_uint8(values: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


def luminance(rgb: np.ndarray) -> np.ndarray:
    """Rec. 601 luma of an ``(H, W, 3)`` array, as float64."""
    return rgb.astype(np.float64) @ LUMA_WEIGHTS


def compute_height_map(rgb: np.ndarray, tuning: ReconstructionTuning) -> np.ndarray:
    rgb = rgb.astype(np.float64)
    lum = rgb @ LUMA_WEIGHTS
    saturation = rgb.max(axis=2) - rgb.min(axis=2)
    height = lum * tuning.height_luminance_weight + saturation * tuning.height_saturation_weight
    height = np.power(height / 255.0, tuning.height_contrast_exponent) * 255.0
    return _to_uint8(height)


def compute_normal_map(lum: np.ndarray, tuning: ReconstructionTuning) -> np.ndarray:
    """Sobel-gradient normal map; border pixels hold the flat normal."""
    h, w = lum.shape
    normal = np.empty((h, w, 3), dtype=np.uint8)
    normal[...] = (127, 127, 255)
    if h < 3 or w < 3:
        return normal

    tl, tm, tr = lum[:-2, :-2], lum[:-2, 1:-1], lum[:-2, 2:]
    ml, mr = lum[1:-1, :-2], lum[1:-1, 2:]
    bl, bm, br = lum[2:, :-2], lum[2:, 1:-1], lum[2:, 2:]

    sobel_x = (tr + 2 * mr + br) - (tl + 2 * ml + bl)
    sobel_y = (bl + 2 * bm + br) - (tl + 2 * tm + tr)

    nx = sobel_x / 255.0 * tuning.normal_strength
    ny = sobel_y / 255.0 * tuning.normal_strength
    slope_sq = nx * nx + ny * ny

    # Slopes steeper than unit length lie in the plane: nz = 0, (nx, ny) normalised.
    steep = slope_sq > 1.0
    scale = np.ones_like(slope_sq)
    scale[steep] = 1.0 / np.sqrt(slope_sq[steep])
    nx = nx * scale
    ny = ny * scale
    nz = np.sqrt(np.maximum(0.0, 1.0 - nx * nx - ny * ny))

    encoded = np.stack([nx, ny, nz], axis=-1)
    normal[1:-1, 1:-1] = np.clip(np.floor((encoded + 1.0) * 127.5), 0, 255).astype(np.uint8)
    return normal


def compute_edge_map(lum: np.ndarray) -> np.ndarray:
    """Absolute 4-neighbour Laplacian of luminance; border pixels are 0."""
    h, w = lum.shape
    edge = np.zeros((h, w), dtype=np.float64)
    if h >= 3 and w >= 3:
        center = lum[1:-1, 1:-1]
        edge[1:-1, 1:-1] = np.abs(
            4 * center - lum[:-2, 1:-1] - lum[2:, 1:-1] - lum[1:-1, :-2] - lum[1:-1, 2:]
        )
    return _to_uint8(np.minimum(edge, 255.0))


def compute_depth_map(rgb: np.ndarray, tuning: ReconstructionTuning) -> np.ndarray:
    rgb = rgb.astype(np.float64)
    r, b = rgb[..., 0], rgb[..., 2]
    lum = rgb @ LUMA_WEIGHTS
    warmth = (r - b) / 255.0
    contrast = rgb.max(axis=2) - rgb.min(axis=2)
    depth = (
        lum * tuning.depth_luminance_weight
        + (warmth + 1.0) * 127.5 * tuning.depth_warmth_weight
        + contrast * tuning.depth_contrast_weight
    )
    return _to_uint8(depth)


def build_displacement_maps(rgb: np.ndarray, tuning: Optional[ReconstructionTuning] = None) -> DisplacementMapSet:
    """Compute all four maps from an ``(H, W, 3)`` uint8 pixel array."""
    tuning = tuning or ReconstructionTuning()
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected an (H, W, 3) RGB array, got shape {rgb.shape}")
    lum = luminance(rgb)
    maps = DisplacementMapSet(
        height_map=compute_height_map(rgb, tuning),
        normal_map=compute_normal_map(lum, tuning),
        edge_map=compute_edge_map(lum),
        depth_map=compute_depth_map(rgb, tuning),
    )
    logger.debug("Displacement maps built at %dx%d", rgb.shape[1], rgb.shape[0])
    return maps
