from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple


# Edge length (px) of every tile served by the provider and of every composite.
TILE_SIZE = 256

LayerID = str


@dataclass(frozen=True, slots=True)
class TileCoord:
    """
    Tile address in the standard XYZ (slippy map) pyramid.

    Attributes:
        z: zoom level, >= 0
        x: column, 0 <= x < 2**z
        y: row, 0 <= y < 2**z
    """
    z: int
    x: int
    y: int

    def __post_init__(self) -> None:
        for name in ("z", "x", "y"):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, int):
                raise TypeError(f"{name} must be an int")
            if v < 0:
                raise ValueError(f"{name} must be >= 0")
        n = 1 << self.z
        if self.x >= n or self.y >= n:
            raise ValueError(f"x/y out of range for zoom {self.z} (max {n - 1})")

    @property
    def zxy(self) -> Tuple[int, int, int]:
        return (self.z, self.x, self.y)

    def to_dict(self) -> Dict[str, Any]:
        return {"z": self.z, "x": self.x, "y": self.y}

    def __str__(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"
