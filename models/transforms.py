from __future__ import annotations
"""
2D transformation models for tiles and pairwise fits.

Every model is an affine 3x3 matrix in disguise; subclasses differ only in
how many correspondences they need and in how `fit` constrains the estimate:

- TranslationModel2D: t                       (1 correspondence)
- RigidModel2D:       R(theta), t             (2)
- SimilarityModel2D:  s * R(theta), t         (2)
- AffineModel2D:      full 2x2 linear part, t (3)

`fit(p, q, w)` minimizes sum_i w_i * |M p_i - q_i|^2 in closed form.
"""

import math
from typing import Dict, Optional, Type

import numpy as np


class NotEnoughDataPointsError(ValueError):
    """Fewer correspondences than the model's minimal set."""


class IllDefinedDataPointsError(ValueError):
    """Correspondences do not determine the model (coincident/collinear points)."""


class NoninvertibleModelError(ValueError):
    """The linear part of the model is singular."""


_EPS = 1e-12


def _prepare(p: np.ndarray, q: np.ndarray, w: Optional[np.ndarray]):
    p = np.asarray(p, dtype=np.float64).reshape(-1, 2)
    q = np.asarray(q, dtype=np.float64).reshape(-1, 2)
    if p.shape != q.shape:
        raise ValueError("p and q must have the same shape")
    if w is None:
        w = np.ones(len(p), dtype=np.float64)
    else:
        w = np.asarray(w, dtype=np.float64).ravel()
        if w.shape[0] != p.shape[0]:
            raise ValueError("weights must have one entry per correspondence")
    return p, q, w


def _weighted_centroids(p: np.ndarray, q: np.ndarray, w: np.ndarray):
    ws = float(w.sum())
    if ws <= 0.0:
        raise IllDefinedDataPointsError("sum of weights is zero")
    pc = (w[:, None] * p).sum(axis=0) / ws
    qc = (w[:, None] * q).sum(axis=0) / ws
    return pc, qc


class AbstractModel2D:
    """Shared matrix plumbing; subclasses implement `_estimate`."""

    name = "abstract"
    min_num_matches = 1

    def __init__(self, matrix: Optional[np.ndarray] = None):
        self._m = np.eye(3, dtype=np.float64)
        self.cost = float("inf")
        if matrix is not None:
            self.set(matrix)

    # -----------------------------
    # Matrix access
    # -----------------------------

    @property
    def matrix(self) -> np.ndarray:
        """2x3 copy of the current transform."""
        return self._m[:2, :].copy()

    def set(self, matrix: np.ndarray) -> None:
        """Set from a 2x3 or 3x3 matrix. No constraint projection is done."""
        a = np.asarray(matrix, dtype=np.float64)
        if a.shape == (3, 3):
            a = a[:2, :]
        if a.shape != (2, 3):
            raise ValueError(f"Expected 2x3 or 3x3 matrix, got {a.shape}")
        self._m = np.vstack([a, [0.0, 0.0, 1.0]])

    def copy(self):
        other = type(self)()
        other._m = self._m.copy()
        other.cost = self.cost
        return other

    # -----------------------------
    # Application
    # -----------------------------

    def apply(self, pts: np.ndarray) -> np.ndarray:
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        return pts @ self._m[:2, :2].T + self._m[:2, 2]

    def apply_inverse(self, pts: np.ndarray) -> np.ndarray:
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        L = self._m[:2, :2]
        det = float(np.linalg.det(L))
        if abs(det) < _EPS:
            raise NoninvertibleModelError(f"{self.name} model is singular (det={det:g})")
        return (pts - self._m[:2, 2]) @ np.linalg.inv(L).T

    def pre_concatenate(self, other: "AbstractModel2D") -> None:
        """self <- other o self (apply self first, then other)."""
        self._m = other._m @ self._m

    def concatenate(self, other: "AbstractModel2D") -> None:
        """self <- self o other (apply other first, then self)."""
        self._m = self._m @ other._m

    def residuals(self, p: np.ndarray, q: np.ndarray) -> np.ndarray:
        """Per-correspondence distance |M p - q|."""
        return np.linalg.norm(self.apply(p) - np.asarray(q, dtype=np.float64).reshape(-1, 2), axis=1)

    # -----------------------------
    # Estimation
    # -----------------------------

    def fit(self, p: np.ndarray, q: np.ndarray, w: Optional[np.ndarray] = None) -> None:
        """
        Weighted least-squares fit mapping p -> q. On failure the model is
        left unchanged and NotEnoughDataPointsError / IllDefinedDataPointsError
        is raised.
        """
        p, q, w = _prepare(p, q, w)
        if len(p) < self.min_num_matches:
            raise NotEnoughDataPointsError(
                f"{self.name} needs {self.min_num_matches} correspondences, got {len(p)}"
            )
        m = self._estimate(p, q, w)
        if not np.all(np.isfinite(m)):
            raise IllDefinedDataPointsError(f"{self.name} fit produced non-finite values")
        self._m = m
        r = self.residuals(p, q)
        self.cost = float((w * r).sum() / w.sum())

    def _estimate(self, p: np.ndarray, q: np.ndarray, w: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        a = self._m
        return (
            f"{type(self).__name__}([[{a[0, 0]:.6g}, {a[0, 1]:.6g}, {a[0, 2]:.6g}], "
            f"[{a[1, 0]:.6g}, {a[1, 1]:.6g}, {a[1, 2]:.6g}]])"
        )


class TranslationModel2D(AbstractModel2D):
    name = "translation"
    min_num_matches = 1

    def _estimate(self, p, q, w):
        pc, qc = _weighted_centroids(p, q, w)
        m = np.eye(3)
        m[:2, 2] = qc - pc
        return m


class RigidModel2D(AbstractModel2D):
    name = "rigid"
    min_num_matches = 2

    def _rotation(self, p, q, w):
        pc, qc = _weighted_centroids(p, q, w)
        P = p - pc
        Q = q - qc
        if float((w * (P * P).sum(axis=1)).sum()) < _EPS:
            raise IllDefinedDataPointsError("all source points coincide")
        a = float((w * (P[:, 0] * Q[:, 0] + P[:, 1] * Q[:, 1])).sum())
        b = float((w * (P[:, 0] * Q[:, 1] - P[:, 1] * Q[:, 0])).sum())
        return pc, qc, P, a, b

    def _estimate(self, p, q, w):
        pc, qc, _, a, b = self._rotation(p, q, w)
        theta = math.atan2(b, a)
        c, s = math.cos(theta), math.sin(theta)
        R = np.array([[c, -s], [s, c]])
        m = np.eye(3)
        m[:2, :2] = R
        m[:2, 2] = qc - R @ pc
        return m


class SimilarityModel2D(RigidModel2D):
    name = "similarity"
    min_num_matches = 2

    def _estimate(self, p, q, w):
        pc, qc, P, a, b = self._rotation(p, q, w)
        sp = float((w * (P * P).sum(axis=1)).sum())
        S = np.array([[a, -b], [b, a]]) / sp
        m = np.eye(3)
        m[:2, :2] = S
        m[:2, 2] = qc - S @ pc
        return m


class AffineModel2D(AbstractModel2D):
    name = "affine"
    min_num_matches = 3

    def _estimate(self, p, q, w):
        pc, qc = _weighted_centroids(p, q, w)
        P = p - pc
        Q = q - qc
        wP = w[:, None] * P
        C = P.T @ wP            # sum w P P^T
        D = Q.T @ wP            # sum w Q P^T
        det = float(np.linalg.det(C))
        if abs(det) < _EPS * max(1.0, float(np.trace(C)) ** 2):
            raise IllDefinedDataPointsError("source points are collinear")
        L = D @ np.linalg.inv(C)
        m = np.eye(3)
        m[:2, :2] = L
        m[:2, 2] = qc - L @ pc
        return m


_MODELS: Dict[str, Type[AbstractModel2D]] = {
    "translation": TranslationModel2D,
    "rigid": RigidModel2D,
    "similarity": SimilarityModel2D,
    "affine": AffineModel2D,
}


def model_class(name: str) -> Type[AbstractModel2D]:
    """Map a config name ('translation' | 'rigid' | 'similarity' | 'affine') to a model class."""
    try:
        return _MODELS[str(name).lower()]
    except KeyError:
        raise ValueError(f"Unsupported model: {name} (expected one of {sorted(_MODELS)})") from None
