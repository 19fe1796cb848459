"""
Features — descriptor extraction, caching and candidate matching

This package provides:
- OpenCV ORB / AKAZE / SIFT extraction into DescriptorSets in tile-local pixels
- A disk cache of descriptor sets and a lock-guarded in-memory byte budget
- KNN ratio-test matching into candidate PointMatches
"""
from .extract import DescriptorSet, FeatureExtractor, extract_descriptors
from .cache import DescriptorCache, MemoryBudget
from .matching import find_candidate_matches

__all__ = [
    "DescriptorSet",
    "FeatureExtractor",
    "extract_descriptors",
    "DescriptorCache",
    "MemoryBudget",
    "find_candidate_matches",
]
