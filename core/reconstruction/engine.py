"""
ReconstructionEngine — local, provider-free image-to-relief reconstruction.

Pipeline: decode → height / normal / edge / depth maps → displaced grid →
smoothing → vertex normals → PBR material → GLB.  Deterministic and free of
I/O beyond the already-fetched image bytes; any failure is fatal for the
session because nothing comes after it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import trimesh
from PIL import Image, UnidentifiedImageError

from core.generation.base_adapter import RawModelAsset
from core.generation.cancellation import ResourceScope
from core.generation.provider_selector import LOCAL_PROVIDER_ID
from core.reconstruction.components.displacement_maps import DisplacementMapSet, build_displacement_maps
from core.reconstruction.components.mesh_builder import MeshBuilder
from core.reconstruction.tuning import ReconstructionTuning
from image2mesh.errors import ReconstructionError
from image2mesh.source_image import SourceImage

logger = logging.getLogger(__name__)


@dataclass
class LocalReconstruction:
    """In-memory result of one reconstruction."""

    mesh: trimesh.Trimesh
    maps: DisplacementMapSet
    material_maps: Dict[str, Image.Image] = field(default_factory=dict)

    def to_asset(self) -> RawModelAsset:
        scene = trimesh.Scene()
        scene.add_geometry(self.mesh, node_name="relief", geom_name="relief")
        data = scene.export(file_type="glb", include_normals=True)
        return RawModelAsset(
            data=data,
            format="glb",
            source_provider_id=LOCAL_PROVIDER_ID,
            material_maps=dict(self.material_maps),
        )


class ReconstructionEngine:
    """Builds a displaced relief mesh directly from image pixels."""

    def __init__(self, tuning: Optional[ReconstructionTuning] = None):
        self.tuning = tuning or ReconstructionTuning()
        self._builder = MeshBuilder(self.tuning)

    @classmethod
    def from_config(cls, config) -> "ReconstructionEngine":
        return cls(ReconstructionTuning.from_config(config))

    def decode_pixels(self, image: SourceImage, resources: Optional[ResourceScope] = None) -> np.ndarray:
        """Decode to an ``(H, W, 3)`` uint8 array.

        Raises:
            ReconstructionError: If the bytes cannot be decoded.
        """
        try:
            decoded = image.decode()
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise ReconstructionError(f"Unreadable image data: {exc}", provider_id=LOCAL_PROVIDER_ID) from exc
        if resources is not None:
            resources.track("decoded-image", decoded, decoded.close)
        pixels = np.asarray(decoded, dtype=np.uint8)
        if resources is None:
            decoded.close()
        return pixels

    def build(self, image: SourceImage, resources: Optional[ResourceScope] = None) -> LocalReconstruction:
        """Run the full pipeline and keep the intermediate maps.

        Raises:
            ReconstructionError: On undecodable input or a pipeline failure.
        """
        pixels = self.decode_pixels(image, resources)
        try:
            maps = build_displacement_maps(pixels, self.tuning)
            if resources is not None:
                resources.track("displacement-maps", maps, maps.release)
            albedo = Image.fromarray(pixels)
            mesh = self._builder.build(albedo, maps)
            material_maps = MeshBuilder.material_maps(albedo, maps)
        except (ValueError, MemoryError, IndexError) as exc:
            raise ReconstructionError(f"Local reconstruction failed: {exc}", provider_id=LOCAL_PROVIDER_ID) from exc

        logger.info(
            "Local reconstruction: %dx%d image -> %d vertices",
            pixels.shape[1],
            pixels.shape[0],
            len(mesh.vertices),
        )
        return LocalReconstruction(mesh=mesh, maps=maps, material_maps=material_maps)

    def reconstruct(self, image: SourceImage, resources: Optional[ResourceScope] = None) -> RawModelAsset:
        """Reconstruct and serialise to a GLB :class:`RawModelAsset` tagged ``local``."""
        result = self.build(image, resources)
        try:
            asset = result.to_asset()
        except (ValueError, OSError) as exc:
            raise ReconstructionError(f"GLB export failed: {exc}", provider_id=LOCAL_PROVIDER_ID) from exc
        logger.info("Local model exported: %d bytes", asset.size_bytes)
        return asset


def save_material_maps(material_maps: Dict[str, Image.Image], directory) -> Dict[str, str]:
    """Write material maps as PNG files; returns name → path."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    written = {}
    for name, img in material_maps.items():
        path = directory / f"{name}.png"
        img.save(path, format="PNG")
        written[name] = str(path)
    return written
