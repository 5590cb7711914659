"""
MeshBuilder component.

Turns a :class:`DisplacementMapSet` into a displaced planar grid mesh with a
PBR material.  The grid keeps the image aspect ratio, is displaced along +Z
with a radial falloff so the silhouette stays flat, and is smoothed once to
remove per-pixel sampling noise.
"""

import logging
import math
from typing import Dict, Tuple

import numpy as np
import trimesh
from PIL import Image
from trimesh.visual import TextureVisuals
from trimesh.visual.material import PBRMaterial

from core.reconstruction.components.displacement_maps import DisplacementMapSet
from core.reconstruction.tuning import ReconstructionTuning

logger = logging.getLogger(__name__)


class MeshBuilder:
    """Build the relief mesh used by local reconstruction."""

    def __init__(self, tuning: ReconstructionTuning = None):
        self.tuning = tuning or ReconstructionTuning()

    def grid_dimensions(self, image_width: int, image_height: int) -> Tuple[float, float, int, int]:
        """Plane size and segment counts for an image.

        The longer image axis gets ``grid_segments`` subdivisions; the shorter
        one is scaled down by the aspect ratio.

        Returns:
            ``(plane_width, plane_height, segments_x, segments_y)``
        """
        aspect = image_width / image_height
        plane_width = self.tuning.plane_width
        plane_height = plane_width / aspect
        segments = self.tuning.grid_segments
        if aspect >= 1.0:
            return plane_width, plane_height, segments, max(1, math.floor(segments / aspect))
        return plane_width, plane_height, max(1, math.floor(segments * aspect)), segments

    def build_grid(self, image_width: int, image_height: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Flat grid in the XY plane, rows ordered top to bottom.

        Returns:
            ``(positions (rows, cols, 3), uv (rows, cols, 2), faces (F, 3))``
        """
        plane_w, plane_h, seg_x, seg_y = self.grid_dimensions(image_width, image_height)
        u = np.arange(seg_x + 1) / seg_x
        row = np.arange(seg_y + 1) / seg_y
        uu, rr = np.meshgrid(u, row)
        vv = 1.0 - rr

        positions = np.zeros((seg_y + 1, seg_x + 1, 3), dtype=np.float64)
        positions[..., 0] = (uu - 0.5) * plane_w
        positions[..., 1] = (0.5 - rr) * plane_h
        uv = np.stack([uu, vv], axis=-1)

        cols = seg_x + 1
        ix, iy = np.meshgrid(np.arange(seg_x), np.arange(seg_y))
        a = (iy * cols + ix).ravel()
        b = a + cols
        c = b + 1
        d = a + 1
        faces = np.stack([a, b, d, b, c, d], axis=1).reshape(-1, 3)
        return positions, uv, faces

    def displacement(self, uv: np.ndarray, maps: DisplacementMapSet) -> np.ndarray:
        """Z offset per grid vertex from the height and edge maps."""
        t = self.tuning
        img_h, img_w = maps.height_map.shape
        u, v = uv[..., 0], uv[..., 1]
        px = np.floor(u * (img_w - 1)).astype(np.int64)
        py = np.floor((1.0 - v) * (img_h - 1)).astype(np.int64)

        height = maps.height_map[py, px].astype(np.float64) / 255.0
        edge = maps.edge_map[py, px].astype(np.float64) / 255.0
        total = height * t.height_displacement_weight + edge * t.edge_displacement_weight
        displaced = np.power(total, t.displacement_exponent) * t.displacement_intensity

        dist = np.sqrt(((u - 0.5) * 2.0) ** 2 + ((v - 0.5) * 2.0) ** 2)
        falloff = 1.0 - np.minimum(1.0, np.power(dist, t.falloff_exponent))
        return displaced * falloff

    @staticmethod
    def smooth(z: np.ndarray) -> np.ndarray:
        """Average each interior vertex with its four neighbours (one pass)."""
        smoothed = z.copy()
        smoothed[1:-1, 1:-1] = (
            z[1:-1, :-2] + z[1:-1, 2:] + z[:-2, 1:-1] + z[2:, 1:-1] + z[1:-1, 1:-1]
        ) / 5.0
        return smoothed

    def build_material(self, albedo: Image.Image, maps: DisplacementMapSet) -> PBRMaterial:
        """PBR material: albedo, tangent-space normals, edge-driven roughness."""
        edge = maps.edge_map
        # glTF metallic-roughness packing: G = roughness, B = metalness.
        packed = np.empty(edge.shape + (3,), dtype=np.uint8)
        packed[..., 0] = 255
        packed[..., 1] = edge
        packed[..., 2] = 255
        return PBRMaterial(
            name="local-relief",
            baseColorTexture=albedo,
            normalTexture=Image.fromarray(maps.normal_map),
            metallicRoughnessTexture=Image.fromarray(packed),
            roughnessFactor=self.tuning.roughness,
            metallicFactor=self.tuning.metalness,
            doubleSided=True,
        )

    def build(self, albedo: Image.Image, maps: DisplacementMapSet) -> trimesh.Trimesh:
        """Build the displaced, smoothed, textured mesh."""
        width, height = albedo.size
        positions, uv, faces = self.build_grid(width, height)
        z = self.displacement(uv, maps)
        for _ in range(self.tuning.smoothing_passes):
            z = self.smooth(z)
        positions[..., 2] = z

        mesh = trimesh.Trimesh(
            vertices=positions.reshape(-1, 3),
            faces=faces,
            visual=TextureVisuals(
                uv=uv.reshape(-1, 2),
                material=self.build_material(albedo, maps),
            ),
            process=False,
        )
        # Touch the cache so normals reflect the final positions.
        _ = mesh.vertex_normals
        logger.debug("Relief mesh: %d vertices, %d faces", len(mesh.vertices), len(mesh.faces))
        return mesh

    @staticmethod
    def material_maps(albedo: Image.Image, maps: DisplacementMapSet) -> Dict[str, Image.Image]:
        """Named texture maps handed to the caller alongside the mesh."""
        images = maps.to_images()
        return {
            "albedo": albedo,
            "displacement": images["height"],
            "normal": images["normal"],
            "roughness": images["edge"],
            "depth": images["depth"],
        }
