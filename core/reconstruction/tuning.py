"""
Tuning constants for the local displacement reconstruction.

The defaults were chosen empirically; they are exposed so they can be
adjusted from config without touching the pipeline code.

One deliberate departure from the first version of this relief generator:
the normal map encodes all three components as ``floor((c + 1) * 127.5)``
(B included) and border pixels carry the encoded flat normal (127, 127, 255).
The earlier encoding wrote B as ``floor(nz * 255)`` and left borders at 0,
which made the border read as a normal pointing into the surface.
"""
from __future__ import annotations

from dataclasses import dataclass, fields


@dataclass(frozen=True)
class ReconstructionTuning:
    # Height map
    height_luminance_weight: float = 0.7
    height_saturation_weight: float = 0.3
    height_contrast_exponent: float = 0.8

    # Normal map
    normal_strength: float = 4.0

    # Depth map (warm colours assumed nearer)
    depth_luminance_weight: float = 0.4
    depth_warmth_weight: float = 0.3
    depth_contrast_weight: float = 0.3

    # Mesh
    plane_width: float = 3.0
    grid_segments: int = 200
    height_displacement_weight: float = 0.5
    edge_displacement_weight: float = 0.2
    displacement_exponent: float = 1.2
    displacement_intensity: float = 2.0
    falloff_exponent: float = 1.2
    smoothing_passes: int = 1

    # Material
    roughness: float = 0.7
    metalness: float = 0.1

    @classmethod
    def from_config(cls, config) -> "ReconstructionTuning":
        """Build from the ``reconstruction`` config section; missing keys keep defaults."""
        if config is None:
            return cls()
        overrides = {}
        for f in fields(cls):
            value = config.get(f"reconstruction.{f.name}")
            if value is not None:
                overrides[f.name] = int(value) if f.type in ("int", int) else float(value)
        return cls(**overrides)
