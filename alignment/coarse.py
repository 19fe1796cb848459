from __future__ import annotations
"""
Whole-section registration of one section onto the previous one.

Each section is rendered as a flat grayscale montage of its patches at their
current placement, scaled so the longest side is at most `max_size`.
Descriptors are matched between the two montages and a single coarse model
is fitted. The returned model maps current-section world coordinates to
previous-section world coordinates.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.config import CoarseParams, FeatureParams
from common.logging_setup import get_logger
from common.types import BoundingBox, Patch, PointMatch
from features.extract import FeatureExtractor, to_gray_u8
from features.matching import find_candidate_matches
from models.ransac import fit_model
from models.transforms import AbstractModel2D, TranslationModel2D

log = get_logger("alignment.coarse")


@dataclass
class CoarseResult:
    """
    model: current world -> previous world.
    inliers: p1 relative to bbox_cur's origin, p2 relative to bbox_prev's
    origin, both in full-resolution pixels.
    """
    model: AbstractModel2D
    bbox_prev: BoundingBox
    bbox_cur: BoundingBox
    inliers: List[PointMatch]


def section_bbox(patches: Sequence[Patch]) -> BoundingBox:
    box = patches[0].bbox()
    for p in patches[1:]:
        box = box.union(p.bbox())
    return box


def render_section(patches: Sequence[Patch], max_size: int) -> Tuple[np.ndarray, BoundingBox, float]:
    """
    Flat montage of a section. Returns (gray_u8, world bbox, scale) where a
    world point (x, y) lands at ((x - bbox.x0) * scale, (y - bbox.y0) * scale).
    """
    bbox = section_bbox(patches)
    longest = max(bbox.width, bbox.height, 1.0)
    s = min(1.0, float(max_size) / longest)
    W = max(1, int(math.ceil(bbox.width * s)))
    H = max(1, int(math.ceil(bbox.height * s)))
    canvas = np.zeros((H, W), dtype=np.uint8)
    to_canvas = np.array([[s, 0.0, -bbox.x0 * s], [0.0, s, -bbox.y0 * s], [0.0, 0.0, 1.0]])
    for p in patches:
        gray = to_gray_u8(p.load_image())
        from_small = np.eye(3)
        if s < 1.0:
            # shrink first so the warp does not alias
            small = (max(1, int(round(p.width * s))), max(1, int(round(p.height * s))))
            gray = cv2.resize(gray, small, interpolation=cv2.INTER_AREA)
            from_small = np.diag([p.width / small[0], p.height / small[1], 1.0])
        A = (to_canvas @ np.vstack([p.affine, [0.0, 0.0, 1.0]]) @ from_small)[:2, :]
        warped = cv2.warpAffine(gray, A, (W, H), flags=cv2.INTER_LINEAR)
        mask = cv2.warpAffine(np.full(gray.shape, 255, np.uint8), A, (W, H), flags=cv2.INTER_NEAREST)
        canvas[mask > 0] = warped[mask > 0]
    return canvas, bbox, s


def coarse_register_sections(
    prev: Sequence[Patch],
    cur: Sequence[Patch],
    params: CoarseParams,
    *,
    features: Optional[FeatureParams] = None,
) -> Optional[CoarseResult]:
    """Register section `cur` onto section `prev`; None when no model is found."""
    if not prev or not cur:
        return None
    fp = features or FeatureParams()
    # the montage is already at working size
    extractor = FeatureExtractor(
        method=fp.method,
        nfeatures=fp.nfeatures,
        fast_threshold=fp.fast_threshold,
        nlevels=fp.nlevels,
        scale_factor=fp.scale_factor,
        max_size=0,
        clahe_clip=fp.clahe_clip,
    )

    img_prev, bbox_prev, s_prev = render_section(prev, params.max_size)
    img_cur, bbox_cur, s_cur = render_section(cur, params.max_size)
    ds_prev = extractor.extract(img_prev)
    ds_cur = extractor.extract(img_cur)
    ds_prev.points /= s_prev
    ds_cur.points /= s_cur

    candidates = find_candidate_matches(ds_cur, ds_prev, fp.ratio)
    found = fit_model(
        candidates,
        params.min_epsilon,
        params.max_epsilon,
        params.min_inlier_ratio,
        model=params.model,
    )
    log.info(
        "coarse section registration",
        extra={"extra": {
            "max_size": params.max_size,
            "max_epsilon": params.max_epsilon,
            "candidates": len(candidates),
            "found": found is not None,
        }},
    )
    if found is None:
        return None

    local_model, inliers = found
    # world model = T(prev origin) o local o T(-cur origin)
    world = local_model.copy()
    world.concatenate(TranslationModel2D(np.array([[1.0, 0.0, -bbox_cur.x0], [0.0, 1.0, -bbox_cur.y0]])))
    world.pre_concatenate(TranslationModel2D(np.array([[1.0, 0.0, bbox_prev.x0], [0.0, 1.0, bbox_prev.y0]])))
    return CoarseResult(world, bbox_prev, bbox_cur, inliers)


def inlier_world_points(result: CoarseResult) -> Tuple[np.ndarray, np.ndarray]:
    """(current-section world points, previous-section world points) of the inliers."""
    p_cur, p_prev, _ = PointMatch.to_arrays(result.inliers)
    p_cur = p_cur + np.array([result.bbox_cur.x0, result.bbox_cur.y0])
    p_prev = p_prev + np.array([result.bbox_prev.x0, result.bbox_prev.y0])
    return p_cur, p_prev
