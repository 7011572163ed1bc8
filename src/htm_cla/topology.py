import itertools
import math
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np


class Topology:
    """Maps flat indices of an n-dimensional grid to coordinates and back."""

    def __init__(self, dimensions: Sequence[int]) -> None:
        self.dimensions: Tuple[int, ...] = tuple(int(d) for d in dimensions)
        self.num_elements: int = math.prod(self.dimensions)
        self._neighborhoods: Dict[Tuple[int, int, bool], np.ndarray] = {}
        self._cached_radius: Optional[int] = None

    def __repr__(self) -> str:
        return f"Topology(dimensions={self.dimensions})"

    def __getstate__(self) -> Dict[str, Any]:
        state = self.__dict__.copy()
        state["_neighborhoods"] = {}
        state["_cached_radius"] = None
        return state

    def coordinates_from_index(self, index: int) -> Tuple[int, ...]:
        return tuple(int(c) for c in np.unravel_index(int(index), self.dimensions))

    def index_from_coordinates(self, coordinates: Sequence[int]) -> int:
        return int(np.ravel_multi_index(tuple(int(c) for c in coordinates), self.dimensions))

    def neighborhood(self, center: int, radius: int) -> np.ndarray:
        """Indices within `radius` of `center` along every axis, clipped at the edges."""
        return self._cached(center, radius, wrap=False)

    def wrapping_neighborhood(self, center: int, radius: int) -> np.ndarray:
        """Like `neighborhood`, but coordinates past an edge continue on the other side."""
        return self._cached(center, radius, wrap=True)

    def _cached(self, center: int, radius: int, wrap: bool) -> np.ndarray:
        key = (int(center), int(radius), wrap)
        if key[1] != self._cached_radius:
            # Only one radius is live at a time; drop entries for the old one.
            self._neighborhoods.clear()
            self._cached_radius = key[1]
        found = self._neighborhoods.get(key)
        if found is None:
            found = self._compute_neighborhood(*key)
            found.setflags(write=False)
            self._neighborhoods[key] = found
        return found

    def _compute_neighborhood(self, center: int, radius: int, wrap: bool) -> np.ndarray:
        center_coords = self.coordinates_from_index(center)
        ranges = []
        for c, dim in zip(center_coords, self.dimensions):
            if wrap:
                # A radius wider than the axis would visit the same coordinate twice.
                span = range(c - radius, c + radius + 1) if 2 * radius + 1 < dim else range(dim)
                ranges.append(sorted({i % dim for i in span}))
            else:
                ranges.append(range(max(0, c - radius), min(dim - 1, c + radius) + 1))
        coords = np.array(list(itertools.product(*ranges)), dtype=np.int64)
        flat = np.ravel_multi_index(tuple(coords.T), self.dimensions)
        return np.unique(flat)
