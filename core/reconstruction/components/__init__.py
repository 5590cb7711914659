"""Map and mesh building blocks for local reconstruction."""

from core.reconstruction.components.displacement_maps import DisplacementMapSet, build_displacement_maps
from core.reconstruction.components.mesh_builder import MeshBuilder

__all__ = [
    "DisplacementMapSet",
    "build_displacement_maps",
    "MeshBuilder",
]
