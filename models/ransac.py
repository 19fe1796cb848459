from __future__ import annotations
"""
Robust pairwise model estimation.

- filter_ransac: RANSAC hypothesis search + iterative median trust filter.
  Affine and similarity hypotheses come from OpenCV's estimateAffine2D /
  estimateAffinePartial2D; translation and rigid are sampled here.
- fit_model: epsilon ramp around filter_ransac; the ModelFitter used by the
  tile graph and by coarse section registration
"""

from typing import List, Optional, Sequence, Tuple, Type, Union

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import PointMatch
from models.transforms import (
    AbstractModel2D,
    AffineModel2D,
    IllDefinedDataPointsError,
    NotEnoughDataPointsError,
    SimilarityModel2D,
    model_class,
)

log = get_logger("models.ransac")

RANSAC_ITERATIONS = 1000
RANSAC_SEED = 69997
RANSAC_CONFIDENCE = 0.999
MAX_TRUST = 3.0
STALE_ATTEMPTS = 4

# residuals of an exact fit sit at round-off level; never trust-filter below this
_TRUST_FLOOR_PX = 1e-6


def _opencv_hypothesis(
    model: AbstractModel2D,
    p1: np.ndarray,
    p2: np.ndarray,
    epsilon: float,
    iterations: int,
) -> Optional[np.ndarray]:
    """Inlier indices of OpenCV's RANSAC consensus set, or None."""
    src = np.ascontiguousarray(p1, dtype=np.float32)
    dst = np.ascontiguousarray(p2, dtype=np.float32)
    estimate = cv2.estimateAffine2D if isinstance(model, AffineModel2D) else cv2.estimateAffinePartial2D
    M, mask = estimate(
        src,
        dst,
        method=cv2.RANSAC,
        ransacReprojThreshold=float(epsilon),
        maxIters=int(iterations),
        confidence=RANSAC_CONFIDENCE,
        refineIters=0,
    )
    if M is None or mask is None:
        return None
    return np.flatnonzero(mask.ravel())


def _sampled_hypothesis(
    model: AbstractModel2D,
    p1: np.ndarray,
    p2: np.ndarray,
    w: np.ndarray,
    epsilon: float,
    iterations: int,
    rng: np.random.Generator,
) -> Optional[np.ndarray]:
    """Best consensus set over `iterations` minimal samples, or None."""
    n = len(p1)
    k = model.min_num_matches
    hyp = type(model)()
    best: Optional[np.ndarray] = None
    for _ in range(int(iterations)):
        sample = rng.choice(n, size=k, replace=False)
        try:
            hyp.fit(p1[sample], p2[sample], w[sample])
        except (NotEnoughDataPointsError, IllDefinedDataPointsError):
            continue
        inl = np.flatnonzero(hyp.residuals(p1, p2) < epsilon)
        if best is None or inl.size > best.size:
            best = inl
            if inl.size == n:
                break
    return best


def filter_ransac(
    model: AbstractModel2D,
    p1: np.ndarray,
    p2: np.ndarray,
    w: np.ndarray,
    epsilon: float,
    min_inlier_ratio: float,
    *,
    min_num_inliers: Optional[int] = None,
    iterations: int = RANSAC_ITERATIONS,
    max_trust: float = MAX_TRUST,
    rng: Optional[np.random.Generator] = None,
) -> Optional[np.ndarray]:
    """
    Estimate `model` (in place) mapping p1 -> p2.

    Returns the indices of the accepted inliers, or None when no hypothesis
    reaches both `min_inlier_ratio` and `min_num_inliers` (default
    3 * model.min_num_matches). The model is only modified on success.
    """
    n = len(p1)
    k = model.min_num_matches
    if min_num_inliers is None:
        min_num_inliers = 3 * k
    min_num_inliers = max(int(min_num_inliers), k)
    if n < k or n < min_num_inliers:
        return None

    if isinstance(model, (AffineModel2D, SimilarityModel2D)):
        best = _opencv_hypothesis(model, p1, p2, epsilon, iterations)
    else:
        rng = rng if rng is not None else np.random.default_rng(RANSAC_SEED)
        best = _sampled_hypothesis(model, p1, p2, w, epsilon, iterations, rng)

    if best is None or best.size < min_num_inliers or best.size / n < min_inlier_ratio:
        return None

    # refit on inliers, dropping anything further than max_trust * median
    inl = best
    cand = type(model)()
    while True:
        try:
            cand.fit(p1[inl], p2[inl], w[inl])
        except (NotEnoughDataPointsError, IllDefinedDataPointsError):
            return None
        r = cand.residuals(p1[inl], p2[inl])
        keep = r <= max(max_trust * float(np.median(r)), _TRUST_FLOOR_PX)
        if keep.all():
            break
        inl = inl[keep]
        if inl.size < min_num_inliers:
            return None

    model.set(cand.matrix)
    model.cost = cand.cost
    return inl


def fit_model(
    candidates: Sequence[PointMatch],
    min_epsilon: float,
    max_epsilon: float,
    min_inlier_ratio: float,
    *,
    model: Union[str, Type[AbstractModel2D]] = "rigid",
    iterations: int = RANSAC_ITERATIONS,
    seed: int = RANSAC_SEED,
) -> Optional[Tuple[AbstractModel2D, List[PointMatch]]]:
    """
    ModelFitter: (model, inliers) or None when no acceptable model exists.

    Epsilon starts at min_epsilon and grows by min_epsilon per attempt. The
    ramp stops once a model was found and its inlier count has not grown for
    4 consecutive successful attempts, or when epsilon reaches max_epsilon.
    Failed attempts keep the ramp going. The last successful attempt is
    returned.
    Too few candidates is "no model", never an exception.
    """
    if min_epsilon <= 0 or max_epsilon <= 0:
        raise ValueError("epsilon bounds must be > 0")
    cls = model_class(model) if isinstance(model, str) else model
    if len(candidates) < cls.min_num_matches:
        return None

    p1, p2, w = PointMatch.to_arrays(candidates)
    rng = np.random.default_rng(seed)

    result: Optional[Tuple[AbstractModel2D, np.ndarray]] = None
    num_inliers = 0
    stale = 0
    epsilon = 0.0
    while (result is None or stale < STALE_ATTEMPTS) and epsilon < max_epsilon:
        epsilon = min(epsilon + min_epsilon, max_epsilon)
        m = cls()
        inl = filter_ransac(m, p1, p2, w, epsilon, min_inlier_ratio, iterations=iterations, rng=rng)
        if inl is None:
            continue
        stale = 0 if inl.size > num_inliers else stale + 1
        num_inliers = inl.size
        result = (m, inl)

    if result is None:
        log.debug(
            "no model found",
            extra={"extra": {"candidates": len(candidates), "model": cls.name, "max_epsilon": max_epsilon}},
        )
        return None

    m, inl = result
    log.debug(
        "model found",
        extra={"extra": {"candidates": len(candidates), "inliers": int(inl.size), "model": cls.name, "cost": m.cost}},
    )
    return m, [candidates[i] for i in inl]
