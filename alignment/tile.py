from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Set, Type

import numpy as np

from common.types import BoundingBox, Patch, Point, PointMatch
from models.transforms import AbstractModel2D, RigidModel2D


class Tile:
    """
    Optimization unit: one patch, one mutable model, its incident matches.

    Tiles live in an arena (a plain list) and refer to each other only by
    their stable `index`. Matches are kept as parallel arrays:
        p1[k]      local point in this tile
        p2[k]      local point in tile `partner[k]`
        weight[k]  in (0, 1]
    `distance` / `error` are the weighted mean and mean squared world-space
    residuals as of the last `update`.
    """

    def __init__(
        self,
        index: int,
        model: AbstractModel2D,
        width: float,
        height: float,
        patch: Optional[Patch] = None,
    ):
        self.index = int(index)
        self.model = model
        self.width = float(width)
        self.height = float(height)
        self.patch = patch
        self.p1 = np.zeros((0, 2), dtype=np.float64)
        self.p2 = np.zeros((0, 2), dtype=np.float64)
        self.weight = np.zeros(0, dtype=np.float64)
        self.partner = np.zeros(0, dtype=np.int64)
        self.connected: Set[int] = set()
        self.distance = 0.0
        self.error = 0.0

    @classmethod
    def from_patch(cls, index: int, patch: Patch, model_cls: Type[AbstractModel2D] = RigidModel2D) -> "Tile":
        """Start from the patch's current placement."""
        model = model_cls()
        model.set(patch.affine)
        return cls(index, model, patch.width, patch.height, patch)

    def __repr__(self) -> str:
        pid = self.patch.id if self.patch is not None else None
        return f"Tile(index={self.index}, patch={pid!r}, matches={self.num_matches}, distance={self.distance:.4g})"

    # -----------------------------
    # Matches
    # -----------------------------

    @property
    def num_matches(self) -> int:
        return int(self.weight.size)

    def add_match_arrays(self, partner: int, p1: np.ndarray, p2: np.ndarray, w: np.ndarray) -> None:
        p1 = np.asarray(p1, dtype=np.float64).reshape(-1, 2)
        p2 = np.asarray(p2, dtype=np.float64).reshape(-1, 2)
        w = np.asarray(w, dtype=np.float64).ravel()
        if not (len(p1) == len(p2) == len(w)):
            raise ValueError("p1, p2 and w must have the same length")
        if len(w) == 0:
            return
        self.p1 = np.vstack([self.p1, p1])
        self.p2 = np.vstack([self.p2, p2])
        self.weight = np.concatenate([self.weight, w])
        self.partner = np.concatenate([self.partner, np.full(len(w), int(partner), dtype=np.int64)])
        self.connected.add(int(partner))

    def add_matches(self, partner: int, matches: Sequence[PointMatch]) -> None:
        """Attach matches whose p1 lies in this tile and p2 in `partner`."""
        if not matches:
            return
        p1, p2, w = PointMatch.to_arrays(matches)
        self.add_match_arrays(partner, p1, p2, w)

    def matches_with(self, partner: int) -> List[PointMatch]:
        sel = np.flatnonzero(self.partner == int(partner))
        return [
            PointMatch(Point(*self.p1[k]), Point(*self.p2[k]), float(self.weight[k]))
            for k in sel
        ]

    def count_matches_within(self, members: Iterable[int]) -> int:
        """Number of incident matches whose partner is in `members`."""
        if self.num_matches == 0:
            return 0
        return int(np.isin(self.partner, np.fromiter(members, dtype=np.int64)).sum())

    # -----------------------------
    # Geometry
    # -----------------------------

    def local_corners(self) -> np.ndarray:
        w, h = self.width, self.height
        return np.array([[0.0, 0.0], [w, 0.0], [w, h], [0.0, h]], dtype=np.float64)

    def world_bbox(self) -> BoundingBox:
        return BoundingBox.from_points(self.model.apply(self.local_corners()))

    def world_center(self) -> np.ndarray:
        return self.model.apply(np.array([[0.5 * self.width, 0.5 * self.height]]))[0]

    def _targets(self, tiles: Sequence["Tile"]) -> np.ndarray:
        """World positions of the partner-side endpoints under the partners' current models."""
        out = np.empty_like(self.p2)
        for j in np.unique(self.partner):
            sel = self.partner == j
            out[sel] = tiles[int(j)].model.apply(self.p2[sel])
        return out

    # -----------------------------
    # Optimization step
    # -----------------------------

    def update(self, tiles: Sequence["Tile"]) -> None:
        """Recompute weighted residual statistics against the arena's current models."""
        if self.num_matches == 0:
            self.distance = 0.0
            self.error = 0.0
            return
        d = np.linalg.norm(self.model.apply(self.p1) - self._targets(tiles), axis=1)
        ws = float(self.weight.sum())
        self.distance = float((self.weight * d).sum() / ws)
        self.error = float((self.weight * d * d).sum() / ws)

    def fit_model(self, tiles: Sequence["Tile"]) -> None:
        """
        Local least-squares step: refit this tile's model to its matches with
        the partners held fixed. Raises NotEnoughDataPointsError /
        IllDefinedDataPointsError and keeps the old model on failure.
        """
        self.model.fit(self.p1, self._targets(tiles), self.weight)
