"""
Unit tests for descriptor extraction, matching and caching
"""

import os
import sys
import threading

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import FeatureCacheError, PatchIOError
from common.types import Patch
from features.cache import DescriptorCache, MemoryBudget
from features.extract import DescriptorSet, FeatureExtractor, downscale, extract_descriptors
from features.matching import find_candidate_matches


def textured(w=320, h=320, seed=0):
    rng = np.random.default_rng(seed)
    img = rng.normal(128, 20, size=(h, w)).clip(0, 255).astype(np.uint8)
    for _ in range(80):
        x, y = int(rng.integers(0, w - 30)), int(rng.integers(0, h - 30))
        cv2.rectangle(img, (x, y), (x + int(rng.integers(8, 30)), y + int(rng.integers(8, 30))),
                      int(rng.integers(0, 255)), -1)
    return img


def dset(n, kind="binary", seed=0):
    rng = np.random.default_rng(seed)
    if kind == "binary":
        des = rng.integers(0, 255, size=(n, 32), dtype=np.uint8)
    else:
        des = rng.normal(size=(n, 128)).astype(np.float32)
    return DescriptorSet(rng.uniform(0, 100, size=(n, 2)), des, kind)


class TestFeatureExtractor:
    """OpenCV detectors into tile-local DescriptorSets"""

    def test_orb_points_inside_tile(self):
        img = textured()
        ds = FeatureExtractor(method="orb", nfeatures=500).extract(img)
        assert len(ds) > 20
        assert ds.kind == "binary"
        assert ds.descriptors.dtype == np.uint8
        assert ds.points.min() >= 0.0
        assert ds.points[:, 0].max() < img.shape[1] and ds.points[:, 1].max() < img.shape[0]

    def test_downscaled_points_are_full_resolution(self):
        img = textured(400, 400)
        ds = FeatureExtractor(method="orb", nfeatures=500, max_size=200).extract(img)
        assert len(ds) > 0
        assert ds.points.max() > 200.0

    def test_sift_is_float(self):
        ds = FeatureExtractor(method="sift", nfeatures=200).extract(textured())
        assert ds.kind == "float"
        assert ds.descriptors.dtype == np.float32

    def test_blank_image_gives_empty_set(self):
        ds = FeatureExtractor().extract(np.zeros((64, 64), np.uint8))
        assert len(ds) == 0

    def test_unsupported_method(self):
        with pytest.raises(ValueError):
            FeatureExtractor(method="surf")

    def test_downscale(self):
        img = np.zeros((100, 400), np.uint8)
        small, s = downscale(img, 200)
        assert s == pytest.approx(0.5)
        assert small.shape == (50, 200)
        same, s1 = downscale(img, 1000)
        assert s1 == 1.0 and same is img


class TestMatching:
    """Ratio test and one-to-one candidates"""

    def test_shifted_crop(self):
        big = textured(360, 360, seed=4)
        a = big[0:300, 0:300]
        b = big[10:310, 20:320]
        ex = FeatureExtractor(nfeatures=800)
        matches = find_candidate_matches(ex.extract(a), ex.extract(b), ratio=0.8)
        assert len(matches) > 20
        d = np.array([[m.p1.x - m.p2.x, m.p1.y - m.p2.y] for m in matches])
        np.testing.assert_allclose(np.median(d, axis=0), [20.0, 10.0], atol=1.0)

    def test_empty_inputs(self):
        assert find_candidate_matches(DescriptorSet.empty(), dset(10)) == []
        assert find_candidate_matches(dset(10), DescriptorSet.empty()) == []

    def test_kind_mismatch(self):
        with pytest.raises(ValueError):
            find_candidate_matches(dset(5), dset(5, kind="float"))

    def test_identical_sets_match_one_to_one(self):
        a = dset(30, kind="float", seed=2)
        matches = find_candidate_matches(a, a, ratio=0.9)
        assert len(matches) == 30
        assert len({(m.p2.x, m.p2.y) for m in matches}) == 30


class TestDescriptorCache:
    """On-disk .npz entries"""

    def test_store_and_load(self, tmp_path):
        cache = DescriptorCache(str(tmp_path / "cache"))
        patch = Patch("p0", 0, 32, 32, image=np.zeros((32, 32), np.uint8))
        ds = dset(12)
        assert cache.load(patch, "orb:1") is None
        cache.store(patch, "orb:1", ds)
        back = cache.load(patch, "orb:1")
        np.testing.assert_array_equal(back.points, ds.points)
        np.testing.assert_array_equal(back.descriptors, ds.descriptors)
        assert back.kind == "binary"
        assert cache.stats() == {"hits": 1, "misses": 1}

    def test_key_depends_on_extractor_and_image(self, tmp_path):
        cache = DescriptorCache(str(tmp_path))
        p = Patch("p0", 0, 8, 8, image=np.zeros((8, 8), np.uint8))
        q = Patch("p0", 0, 8, 8, image=np.ones((8, 8), np.uint8))
        assert cache.key(p, "a") != cache.key(p, "b")
        assert cache.key(p, "a") != cache.key(q, "a")
        assert cache.key(p, "a") == cache.key(p, "a")

    def test_corrupt_entry_names_patch(self, tmp_path):
        cache = DescriptorCache(str(tmp_path))
        patch = Patch("broken", 0, 8, 8, image=np.zeros((8, 8), np.uint8))
        cache.path_for(patch, "sig").write_bytes(b"not a zip file")
        with pytest.raises(FeatureCacheError) as ei:
            cache.load(patch, "sig")
        assert ei.value.patch_id == "broken"


class TestMemoryBudget:
    """Byte-bounded LRU"""

    def test_evicts_least_recently_used(self):
        one = dset(10).nbytes
        budget = MemoryBudget(int(2.5 * one))
        budget.put("a", dset(10))
        budget.put("b", dset(10))
        budget.get("a")
        budget.put("c", dset(10))
        assert "a" in budget and "c" in budget
        assert "b" not in budget
        assert budget.evictions == 1

    def test_release_to_fit(self):
        one = dset(10).nbytes
        budget = MemoryBudget(3 * one)
        for k in "abc":
            budget.put(k, dset(10))
        freed = budget.release_to_fit(2 * one)
        assert freed == 2 * one
        assert budget.used_bytes == one
        assert "c" in budget

    def test_concurrent_puts_keep_books(self):
        one = dset(10).nbytes
        budget = MemoryBudget(20 * one)

        def work(t):
            for k in range(50):
                budget.put(f"{t}-{k}", dset(10))
                budget.release_to_fit(one)

        threads = [threading.Thread(target=work, args=(t,)) for t in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert budget.used_bytes <= budget.limit_bytes
        assert budget.used_bytes == sum(budget.get(k).nbytes for k in list(budget._entries))

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            MemoryBudget(0)


class TestExtractDescriptors:
    """Budget -> cache -> extractor"""

    def test_second_run_hits_cache(self, tmp_path):
        patch = Patch("p1", 0, 320, 320, image=textured())
        cache = DescriptorCache(str(tmp_path))
        ex = FeatureExtractor(nfeatures=300)
        first = extract_descriptors(patch, ex, cache, MemoryBudget.from_megabytes(8))
        second = extract_descriptors(patch, ex, cache, MemoryBudget.from_megabytes(8))
        assert cache.hits == 1
        np.testing.assert_array_equal(first.points, second.points)

    def test_budget_short_circuits(self):
        patch = Patch("p2", 0, 320, 320, image=textured())
        budget = MemoryBudget.from_megabytes(8)
        ds = dset(3)
        budget.put("p2", ds)
        assert extract_descriptors(patch, FeatureExtractor(), None, budget) is ds

    def test_missing_image_raises_with_patch_id(self, tmp_path):
        patch = Patch("gone", 0, 10, 10, image_path=str(tmp_path / "nope.png"))
        with pytest.raises(PatchIOError) as ei:
            extract_descriptors(patch, FeatureExtractor())
        assert ei.value.patch_id == "gone"
