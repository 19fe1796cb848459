"""
Models — 2D transforms and robust pairwise fitting

This package provides:
- Translation / rigid / similarity / affine 2D models with weighted
  least-squares `fit`, `apply`, `apply_inverse` and concatenation
- `fit_model`: epsilon-ramped RANSAC with an iterative median trust filter,
  returning (model, inliers) or None
"""
from .transforms import (
    AbstractModel2D,
    AffineModel2D,
    IllDefinedDataPointsError,
    NoninvertibleModelError,
    NotEnoughDataPointsError,
    RigidModel2D,
    SimilarityModel2D,
    TranslationModel2D,
    model_class,
)
from .ransac import filter_ransac, fit_model

__all__ = [
    "AbstractModel2D",
    "AffineModel2D",
    "IllDefinedDataPointsError",
    "NoninvertibleModelError",
    "NotEnoughDataPointsError",
    "RigidModel2D",
    "SimilarityModel2D",
    "TranslationModel2D",
    "model_class",
    "filter_ransac",
    "fit_model",
]
