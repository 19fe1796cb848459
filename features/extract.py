from __future__ import annotations
"""
Descriptor extraction for tile images.

- FeatureExtractor(method='orb'|'akaze'|'sift') with .extract(image) -> DescriptorSet
- Image preprocessing: gray u8, optional CLAHE, downscale to max_size
- extract_descriptors(patch, extractor, cache, budget): cache-checked,
  memory-budget-aware extraction used by the driver's worker pool
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import Patch

if TYPE_CHECKING:
    from features.cache import DescriptorCache, MemoryBudget

log = get_logger("features.extract")


@dataclass
class DescriptorSet:
    """
    Keypoint locations (n,2) in full-resolution tile-local pixels and their
    descriptors (n,d); kind is 'binary' (uint8, Hamming) or 'float' (L2).
    """
    points: np.ndarray
    descriptors: np.ndarray
    kind: str = "binary"

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 2)
        if len(self.points) != len(self.descriptors):
            raise ValueError("points and descriptors must have the same length")
        if self.kind not in ("binary", "float"):
            raise ValueError(f"Unknown descriptor kind: {self.kind}")

    def __len__(self) -> int:
        return len(self.points)

    @property
    def nbytes(self) -> int:
        return int(self.points.nbytes + self.descriptors.nbytes)

    @classmethod
    def empty(cls, kind: str = "binary") -> "DescriptorSet":
        dt = np.uint8 if kind == "binary" else np.float32
        return cls(np.zeros((0, 2)), np.zeros((0, 32), dtype=dt), kind)


# -----------------------------
# Preprocessing
# -----------------------------

def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    elif img.shape[2] == 4:
        g = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    else:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def clahe(gray_u8: np.ndarray, clip_limit: float = 2.0, tile_grid: Tuple[int, int] = (8, 8)) -> np.ndarray:
    cl = cv2.createCLAHE(clipLimit=float(clip_limit), tileGridSize=tile_grid)
    return cl.apply(gray_u8)


def downscale(gray_u8: np.ndarray, max_size: int) -> Tuple[np.ndarray, float]:
    """Shrink so the longest side is <= max_size. Returns (image, scale)."""
    h, w = gray_u8.shape[:2]
    s = min(1.0, float(max_size) / float(max(h, w))) if max_size and max_size > 0 else 1.0
    if s >= 1.0:
        return gray_u8, 1.0
    size = (max(1, int(round(w * s))), max(1, int(round(h * s))))
    return cv2.resize(gray_u8, size, interpolation=cv2.INTER_AREA), s


def preprocess_tile(img: np.ndarray, *, max_size: int = 1024, clahe_clip: Optional[float] = 2.0) -> Tuple[np.ndarray, float]:
    """
    Prepare a tile image for detection:
      - to gray (u8)
      - optional CLAHE
      - downscale to max_size
    Returns (gray_u8, scale) with scale = working px / full-resolution px.
    """
    gray = to_gray_u8(img)
    if clahe_clip and clahe_clip > 0:
        gray = clahe(gray, clip_limit=float(clahe_clip))
    return downscale(gray, max_size)


# -----------------------------
# Extractors
# -----------------------------

@dataclass
class FeatureExtractor:
    method: str = "orb"
    nfeatures: int = 2000
    fast_threshold: int = 12
    nlevels: int = 8
    scale_factor: float = 1.2
    max_size: int = 1024
    clahe_clip: Optional[float] = 2.0

    def __post_init__(self):
        m = self.method.lower()
        if m == "orb":
            self._det = cv2.ORB_create(
                nfeatures=int(self.nfeatures),
                scaleFactor=float(self.scale_factor),
                nlevels=int(self.nlevels),
                edgeThreshold=19,
                firstLevel=0,
                WTA_K=2,
                scoreType=cv2.ORB_HARRIS_SCORE,
                patchSize=31,
                fastThreshold=int(self.fast_threshold),
            )
            self.descriptor_kind = "binary"
        elif m == "akaze":
            self._det = cv2.AKAZE_create(
                descriptor_type=cv2.AKAZE_DESCRIPTOR_MLDB,
                descriptor_size=0,
                descriptor_channels=3,
                threshold=0.001,
                nOctaves=4,
                nOctaveLayers=4,
                diffusivity=cv2.KAZE_DIFF_PM_G2,
            )
            self.descriptor_kind = "binary"
        elif m == "sift":
            self._det = cv2.SIFT_create(nfeatures=int(self.nfeatures))
            self.descriptor_kind = "float"
        else:
            raise ValueError(f"Unsupported method: {self.method}")
        self.method = m

    @classmethod
    def from_params(cls, fp) -> "FeatureExtractor":
        return cls(
            method=fp.method,
            nfeatures=fp.nfeatures,
            fast_threshold=fp.fast_threshold,
            nlevels=fp.nlevels,
            scale_factor=fp.scale_factor,
            max_size=fp.max_size,
            clahe_clip=fp.clahe_clip,
        )

    def signature(self) -> str:
        """Parameter string folded into descriptor cache keys."""
        return (
            f"{self.method}:{self.nfeatures}:{self.fast_threshold}:{self.nlevels}:"
            f"{self.scale_factor}:{self.max_size}:{self.clahe_clip}"
        )

    def extract(self, img: np.ndarray) -> DescriptorSet:
        gray, s = preprocess_tile(img, max_size=self.max_size, clahe_clip=self.clahe_clip)
        kps, des = self._det.detectAndCompute(gray, None)
        if des is None or not kps:
            return DescriptorSet.empty(self.descriptor_kind)
        # keypoints back to full-resolution tile-local pixels
        pts = np.array([kp.pt for kp in kps], dtype=np.float64) / s
        if self.descriptor_kind == "float":
            des = des.astype(np.float32)
        return DescriptorSet(pts, des, self.descriptor_kind)


def extract_descriptors(
    patch: Patch,
    extractor: FeatureExtractor,
    cache: Optional["DescriptorCache"] = None,
    budget: Optional["MemoryBudget"] = None,
) -> DescriptorSet:
    """
    Descriptors for one patch: in-memory budget store, then disk cache, then
    a fresh extraction (written back to the cache). Raises PatchIOError /
    FeatureCacheError with the patch id on I/O failure.
    """
    if budget is not None:
        ds = budget.get(patch.id)
        if ds is not None:
            return ds

    ds = cache.load(patch, extractor.signature()) if cache is not None else None
    if ds is None:
        img = patch.load_image()
        if budget is not None:
            # rough upper bound of what detection will hold on to
            budget.release_to_fit(int(img.nbytes // 4))
        ds = extractor.extract(img)
        if cache is not None:
            cache.store(patch, extractor.signature(), ds)
        log.debug("descriptors extracted", extra={"extra": {"patch": patch.id, "n": len(ds)}})

    if budget is not None:
        budget.put(patch.id, ds)
    return ds
