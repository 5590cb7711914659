"""
Local, provider-free reconstruction.

Provides:
- Tuning constants for the displacement pipeline
- Height / normal / edge / depth map computation
- Displaced grid mesh construction
- ReconstructionEngine producing a GLB asset tagged ``local``
"""

from core.reconstruction.tuning import ReconstructionTuning
from core.reconstruction.components import (
    DisplacementMapSet,
    build_displacement_maps,
    MeshBuilder,
)
from core.reconstruction.engine import LocalReconstruction, ReconstructionEngine

__all__ = [
    "ReconstructionTuning",
    "DisplacementMapSet",
    "build_displacement_maps",
    "MeshBuilder",
    "LocalReconstruction",
    "ReconstructionEngine",
]
