from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import PatchIOError


def as_affine(m: Any) -> np.ndarray:
    """
    Coerce a 2x3 / 3x3 matrix or a flat [a, b, c, d, e, f] row-major list into
    a 2x3 float64 array (copy).
    """
    a = np.asarray(m, dtype=np.float64)
    if a.shape == (6,):
        a = a.reshape(2, 3)
    elif a.shape == (3, 3):
        a = a[:2, :]
    if a.shape != (2, 3):
        raise ValueError(f"Expected a 2x3 affine, got shape {a.shape}")
    return a.copy()


@dataclass(frozen=True, slots=True)
class Point:
    """A 2D location in the local (tile-intrinsic) frame of one tile."""
    x: float
    y: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", float(self.x))
        object.__setattr__(self, "y", float(self.y))


@dataclass(frozen=True, slots=True)
class PointMatch:
    """
    Ordered correspondence: p1 in tile A's local frame, p2 in tile B's local
    frame, weight in (0, 1]. Synthetic matches carry reduced weight.
    """
    p1: Point
    p2: Point
    weight: float = 1.0

    def __post_init__(self) -> None:
        w = float(self.weight)
        if not (0.0 < w <= 1.0):
            raise ValueError(f"weight must be in (0, 1], got {w}")
        object.__setattr__(self, "weight", w)

    @staticmethod
    def to_arrays(matches: Sequence["PointMatch"]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """(p1 (n,2), p2 (n,2), w (n,)) float64 arrays."""
        n = len(matches)
        p1 = np.empty((n, 2), dtype=np.float64)
        p2 = np.empty((n, 2), dtype=np.float64)
        w = np.empty(n, dtype=np.float64)
        for i, m in enumerate(matches):
            p1[i] = (m.p1.x, m.p1.y)
            p2[i] = (m.p2.x, m.p2.y)
            w[i] = m.weight
        return p1, p2, w


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Axis-aligned world rectangle [x0, x1] x [y0, y1]."""
    x0: float
    y0: float
    x1: float
    y1: float

    @classmethod
    def from_points(cls, pts: np.ndarray) -> "BoundingBox":
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        lo = pts.min(axis=0)
        hi = pts.max(axis=0)
        return cls(float(lo[0]), float(lo[1]), float(hi[0]), float(hi[1]))

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    @property
    def center(self) -> Tuple[float, float]:
        return (0.5 * (self.x0 + self.x1), 0.5 * (self.y0 + self.y1))

    def intersects(self, other: "BoundingBox") -> bool:
        # touching edges do not count as overlap
        return self.x0 < other.x1 and other.x0 < self.x1 and self.y0 < other.y1 and other.y0 < self.y1

    def intersection(self, other: "BoundingBox") -> Optional["BoundingBox"]:
        if not self.intersects(other):
            return None
        return BoundingBox(
            max(self.x0, other.x0),
            max(self.y0, other.y0),
            min(self.x1, other.x1),
            min(self.y1, other.y1),
        )

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(
            min(self.x0, other.x0),
            min(self.y0, other.y0),
            max(self.x1, other.x1),
            max(self.y1, other.y1),
        )

    def corners(self) -> np.ndarray:
        """(4,2): top-left, top-right, bottom-right, bottom-left."""
        return np.array(
            [[self.x0, self.y0], [self.x1, self.y0], [self.x1, self.y1], [self.x0, self.y1]],
            dtype=np.float64,
        )


@dataclass
class Patch:
    """
    Persisted image + placement record of one tile image.

    Attributes:
        id: stable identifier (unique in the project).
        section: section (layer) index the patch belongs to.
        width, height: image dimensions in pixels.
        affine: 2x3 local -> world transform (float64).
        image_path: path of the image on disk, or None when `image` is given.
        image: optional in-memory grayscale/BGR image (tests, synthetic runs).
    """
    id: str
    section: int
    width: int
    height: int
    affine: np.ndarray = field(default_factory=lambda: np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]))
    image_path: Optional[str] = None
    image: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.affine = as_affine(self.affine)
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Patch {self.id}: width/height must be > 0")
        if self.image is not None and self.image.shape[:2] != (self.height, self.width):
            raise ValueError(f"Patch {self.id}: width/height do not match image shape")

    def set_affine(self, m: Any) -> None:
        self.affine = as_affine(m)

    def world_corners(self) -> np.ndarray:
        local = np.array(
            [[0.0, 0.0], [self.width, 0.0], [self.width, self.height], [0.0, self.height]],
            dtype=np.float64,
        )
        return local @ self.affine[:, :2].T + self.affine[:, 2]

    def bbox(self) -> BoundingBox:
        return BoundingBox.from_points(self.world_corners())

    def load_image(self) -> np.ndarray:
        """Return the patch image as uint8 (gray or BGR). Raises PatchIOError."""
        if self.image is not None:
            return self.image
        if not self.image_path:
            raise PatchIOError(self.id, "patch has neither image nor image_path")
        if not Path(self.image_path).exists():
            raise PatchIOError(self.id, f"image not found: {self.image_path}")
        img = cv2.imread(self.image_path, cv2.IMREAD_UNCHANGED)
        if img is None:
            raise PatchIOError(self.id, f"cannot decode image: {self.image_path}")
        if img.dtype != np.uint8:
            img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
        return img
