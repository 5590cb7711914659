"""
AssetNormalizer — uniform scale / centre / orientation for any produced model.

Whatever produced a :class:`RawModelAsset` (a remote provider or local
reconstruction), the viewer receives a scene whose largest extent equals the
target size and whose bounding-box centre sits at the origin.  A small
per-provider yaw is recorded in the transform and applied to the scene root
on export, so normalizing an already-normalized scene is a no-op.
"""
from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
import trimesh
from trimesh import transformations
from trimesh.visual.material import PBRMaterial

from core.generation.base_adapter import RawModelAsset
from core.generation.provider_selector import LOCAL_PROVIDER_ID, ProviderId
from image2mesh.errors import MalformedResponse

logger = logging.getLogger(__name__)

DEFAULT_TARGET_SIZE = 2.5

# Cosmetic: lets a tester tell sources apart at a glance.
INITIAL_YAW: Dict[str, float] = {
    ProviderId.HUGGINGFACE.value: math.pi / 6,
    ProviderId.RODIN.value: math.pi / 6,
    ProviderId.MESHY.value: math.pi / 8,
    ProviderId.CSM.value: math.pi / 12,
    LOCAL_PROVIDER_ID: 0.0,
}


@dataclass(frozen=True)
class MaterialTweak:
    roughness: float
    metalness: float
    env_map_intensity: float = 1.0
    emissive: int = 0x000000

    @property
    def emissive_factor(self) -> Tuple[float, float, float]:
        return (
            ((self.emissive >> 16) & 0xFF) / 255.0,
            ((self.emissive >> 8) & 0xFF) / 255.0,
            (self.emissive & 0xFF) / 255.0,
        )


MATERIAL_TWEAKS: Dict[str, MaterialTweak] = {
    ProviderId.HUGGINGFACE.value: MaterialTweak(0.4, 0.6, 1.3, 0x141414),
    ProviderId.MESHY.value: MaterialTweak(0.3, 0.7, 1.4, 0x222222),
    ProviderId.RODIN.value: MaterialTweak(0.35, 0.65, 1.3, 0x1A1A1A),
    ProviderId.CSM.value: MaterialTweak(0.45, 0.55, 1.1, 0x0F0F0F),
    LOCAL_PROVIDER_ID: MaterialTweak(0.7, 0.1),
}


@dataclass(frozen=True)
class ModelTransform:
    """What normalization did: ``v' = (v + center_offset) * scale``, then yaw."""

    scale: float
    center_offset: Tuple[float, float, float]
    initial_rotation: float

    def rotation_matrix(self) -> np.ndarray:
        return transformations.rotation_matrix(self.initial_rotation, [0.0, 1.0, 0.0])


@dataclass
class NormalizedModel:
    """Viewer-ready model tagged with the id of the stage that produced it."""

    geometry: trimesh.Scene
    transform: ModelTransform
    source_id: str
    material_maps: Dict[str, Any] = field(default_factory=dict)
    env_map_intensity: float = 1.0

    @property
    def extents(self) -> np.ndarray:
        return self.geometry.extents

    def to_scene(self) -> trimesh.Scene:
        """Copy of the geometry with the initial yaw applied to the root."""
        scene = self.geometry.copy()
        if self.transform.initial_rotation:
            scene.apply_transform(self.transform.rotation_matrix())
        return scene

    def to_glb(self) -> bytes:
        return self.to_scene().export(file_type="glb")

    def export(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_glb())
        logger.info("Exported %s model to %s", self.source_id, path)
        return path


class AssetNormalizer:
    """Load, scale, centre and orient a :class:`RawModelAsset`."""

    def __init__(self, target_size: float = DEFAULT_TARGET_SIZE):
        if target_size <= 0:
            raise ValueError("target_size must be positive")
        self.target_size = float(target_size)

    @classmethod
    def from_config(cls, config) -> "AssetNormalizer":
        if config is None:
            return cls()
        return cls(float(config.get("normalizer.target_size", DEFAULT_TARGET_SIZE)))

    def load(self, asset: RawModelAsset) -> trimesh.Scene:
        """Parse the asset bytes into a scene.

        Raises:
            MalformedResponse: Empty or unparseable data.
        """
        if not asset.data:
            raise MalformedResponse("Model payload is empty", provider_id=asset.source_provider_id)
        try:
            scene = trimesh.load(io.BytesIO(asset.data), file_type=asset.format, force="scene")
        except Exception as exc:
            # trimesh loaders raise whatever the format parser hits first.
            raise MalformedResponse(
                f"Could not parse {asset.format} model: {type(exc).__name__}: {exc}",
                provider_id=asset.source_provider_id,
            ) from exc
        if scene.is_empty:
            raise MalformedResponse("Model contains no geometry", provider_id=asset.source_provider_id)
        return scene

    def normalize(self, asset: RawModelAsset) -> NormalizedModel:
        """Normalize *asset*; ownership of its bytes ends here."""
        scene = self.load(asset)
        model = self.normalize_scene(scene, asset.source_provider_id)
        model.material_maps = dict(asset.material_maps)
        return model

    def normalize_scene(self, scene: trimesh.Scene, source_id: str) -> NormalizedModel:
        """Scale and centre *scene* in place.

        Raises:
            MalformedResponse: The scene has no volume to scale, or trimesh
                fails on its geometry or materials.
        """
        try:
            bounds = scene.bounds
        except Exception as exc:
            raise MalformedResponse(f"Model bounds unreadable: {exc}", provider_id=source_id) from exc
        if bounds is None:
            raise MalformedResponse("Model has no bounds", provider_id=source_id)
        extents = bounds[1] - bounds[0]
        largest = float(np.max(extents))
        if not np.isfinite(largest) or largest <= 0.0:
            raise MalformedResponse("Model is degenerate (zero extent)", provider_id=source_id)

        center = (bounds[0] + bounds[1]) / 2.0
        scale = self.target_size / largest
        matrix = np.eye(4)
        matrix[:3, :3] *= scale
        matrix[:3, 3] = -center * scale

        tweak = MATERIAL_TWEAKS.get(source_id)
        try:
            scene.apply_transform(matrix)
            if tweak is not None:
                self.apply_material_tweak(scene, tweak)
        except Exception as exc:
            raise MalformedResponse(
                f"Could not normalize model: {type(exc).__name__}: {exc}", provider_id=source_id
            ) from exc

        transform = ModelTransform(
            scale=scale,
            center_offset=tuple(float(c) for c in -center),
            initial_rotation=INITIAL_YAW.get(source_id, 0.0),
        )
        logger.info("Normalized %s model: scale %.4f, extents %s", source_id, scale, np.round(extents, 4).tolist())
        return NormalizedModel(
            geometry=scene,
            transform=transform,
            source_id=source_id,
            env_map_intensity=tweak.env_map_intensity if tweak else 1.0,
        )

    @staticmethod
    def apply_material_tweak(scene: trimesh.Scene, tweak: MaterialTweak) -> int:
        """Set roughness / metalness / emissive on every PBR material; returns count."""
        count = 0
        for geometry in scene.geometry.values():
            visual = getattr(geometry, "visual", None)
            material = getattr(visual, "material", None)
            if material is None:
                continue
            if not isinstance(material, PBRMaterial):
                if not hasattr(material, "to_pbr"):
                    continue
                material = material.to_pbr()
                visual.material = material
            material.roughnessFactor = tweak.roughness
            material.metallicFactor = tweak.metalness
            if tweak.emissive:
                material.emissiveFactor = tweak.emissive_factor
            count += 1
        return count


def normalize_asset(asset: RawModelAsset, target_size: Optional[float] = None) -> NormalizedModel:
    return AssetNormalizer(target_size or DEFAULT_TARGET_SIZE).normalize(asset)
