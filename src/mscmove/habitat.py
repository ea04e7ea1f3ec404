"""Habitat raster and point-in-region lookup."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np


@dataclass
class HabitatMap:
    """Regular raster of habitat ids 1..H.

    Row ``i`` covers y in [y0 + i*cell, y0 + (i+1)*cell), column ``j`` covers
    x in [x0 + j*cell, x0 + (j+1)*cell). Points outside the raster take the
    id of the nearest edge cell.
    """

    raster: np.ndarray  # (rows, cols) int
    origin: Tuple[float, float] = (0.0, 0.0)
    cell_size: float = 1.0

    def __post_init__(self):
        self.raster = np.atleast_2d(np.asarray(self.raster, dtype=np.int64))
        ids = np.unique(self.raster)
        if not np.array_equal(ids, np.arange(1, ids.size + 1)):
            raise ValueError(f"habitat ids must be 1..H without gaps, got {ids.tolist()}")
        if not self.cell_size > 0.0:
            raise ValueError("cell_size must be positive")

    @property
    def n_habitats(self) -> int:
        return int(self.raster.max())

    def find_region(self, xy: np.ndarray) -> np.ndarray:
        """Habitat id at each position of ``xy`` with shape (..., 2)."""

        xy = np.asarray(xy, dtype=np.float64)
        rows, cols = self.raster.shape
        col = np.floor((xy[..., 0] - self.origin[0]) / self.cell_size).astype(np.int64)
        row = np.floor((xy[..., 1] - self.origin[1]) / self.cell_size).astype(np.int64)
        return self.raster[np.clip(row, 0, rows - 1), np.clip(col, 0, cols - 1)]


def find_region(xy: np.ndarray, habitat_map: HabitatMap | None) -> np.ndarray:
    """Habitat ids of ``xy``; all zeros when the model has no habitat map."""

    xy = np.asarray(xy, dtype=np.float64)
    if habitat_map is None:
        return np.zeros(xy.shape[:-1], dtype=np.int64)
    return habitat_map.find_region(xy)


__all__ = [name for name in globals() if not name.startswith("_")]
