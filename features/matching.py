from __future__ import annotations

from typing import List

import cv2
import numpy as np

from common.types import Point, PointMatch
from features.extract import DescriptorSet


def knn_ratio_matches(
    des1: np.ndarray,
    des2: np.ndarray,
    *,
    kind: str = "binary",
    ratio: float = 0.92,
    enforce_uniqueness: bool = True,
) -> List[cv2.DMatch]:
    """
    KNN (k=2) + closest/next-closest ratio test. With enforce_uniqueness,
    train descriptors claimed by more than one query are dropped entirely.
    """
    if des1 is None or des2 is None or len(des1) == 0 or len(des2) < 2:
        return []
    if kind == "binary":
        bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
    else:
        bf = cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)
        des1 = des1.astype(np.float32, copy=False)
        des2 = des2.astype(np.float32, copy=False)
    knn = bf.knnMatch(des1, des2, k=2)
    good: List[cv2.DMatch] = []
    for pair in knn:
        if len(pair) < 2:
            continue
        m, n = pair
        if m.distance < ratio * n.distance:
            good.append(m)
    if not enforce_uniqueness:
        return good
    counts: dict = {}
    for m in good:
        counts[m.trainIdx] = counts.get(m.trainIdx, 0) + 1
    return [m for m in good if counts[m.trainIdx] == 1]


def find_candidate_matches(a: DescriptorSet, b: DescriptorSet, ratio: float = 0.92) -> List[PointMatch]:
    """
    CorrespondenceFinder: candidate PointMatches with p1 in a's tile frame
    and p2 in b's tile frame. Empty inputs give [].
    """
    if len(a) == 0 or len(b) == 0:
        return []
    if a.kind != b.kind:
        raise ValueError(f"Cannot match {a.kind} descriptors against {b.kind} descriptors")
    out: List[PointMatch] = []
    for m in knn_ratio_matches(a.descriptors, b.descriptors, kind=a.kind, ratio=ratio):
        x1, y1 = a.points[m.queryIdx]
        x2, y2 = b.points[m.trainIdx]
        out.append(PointMatch(Point(x1, y1), Point(x2, y2)))
    return out
