#!/usr/bin/env python3
"""
Integration test: register a synthetic two-section stack end to end
"""

import json
import os
import sys

import numpy as np
import pytest
import yaml

# Add the project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from alignment import pipeline
from alignment.driver import LayerRegistrationDriver
from alignment.project import load_project, save_project
from common.config import FeatureParams, OptimizerParams, RunParams
from scripts.make_synthetic_stack import cut_section, synthesize_specimen

TILE = 320
OVERLAP = 0.4
GRID = (2, 2)
DRIFT = (6.0, -4.0)


@pytest.fixture
def stack(tmp_path):
    tiles_dir = tmp_path / "tiles"
    tiles_dir.mkdir()
    rng = np.random.default_rng(7)
    step = TILE * (1.0 - OVERLAP)
    size = int(np.ceil(2 * 12 + step + TILE))
    specimen = synthesize_specimen((size, size), seed=7)

    s0, truth0 = cut_section(specimen, 0, GRID, TILE, OVERLAP, (0.0, 0.0, 0.0), 4.0, 2.0, rng, tiles_dir)
    s1, truth1 = cut_section(specimen, 1, GRID, TILE, OVERLAP, (DRIFT[0], DRIFT[1], 0.0), 4.0, 2.0, rng, tiles_dir)
    manifest = save_project([s0, s1], str(tmp_path / "project.yaml"))
    return tmp_path, manifest, truth0, truth1


class TestSyntheticStack:
    """Full driver run with real features, RANSAC and the optimizer"""

    def test_register_two_sections(self, stack):
        root, manifest, truth0, truth1 = stack
        sections = load_project(str(manifest))
        P = RunParams(
            model="rigid",
            features=FeatureParams(nfeatures=1500, workers=2, cache_dir=str(root / "cache")),
            optimizer=OptimizerParams(max_iterations=5000, window=20),
        )
        driver = LayerRegistrationDriver(P)
        report = driver.run(sections)

        s0, s1 = report.sections
        assert s0.edges >= 3
        assert s0.components == 1
        assert s1.edges >= 3
        assert s1.linked is True
        assert report.unlinked == []
        assert report.global_components == 1

        # a consistent mosaic places every tile at its true offset plus one common shift
        t0 = np.array([p.affine[:, 2] for p in sections[0]])
        t1 = np.array([p.affine[:, 2] for p in sections[1]])
        c0 = t0 - np.array(truth0, dtype=np.float64)
        c1 = t1 - np.array(truth1, dtype=np.float64) + np.array(DRIFT)
        common = c0.mean(axis=0)
        np.testing.assert_allclose(c0, np.tile(common, (len(c0), 1)), atol=3.0)
        np.testing.assert_allclose(c1, np.tile(common, (len(c1), 1)), atol=3.0)

        out = save_project(sections, str(root / "aligned.yaml"))
        back = load_project(str(out))
        np.testing.assert_allclose(back[1][0].affine, sections[1][0].affine)

    def test_second_run_reads_descriptor_cache(self, stack):
        root, manifest, _, _ = stack
        P = RunParams(
            features=FeatureParams(nfeatures=800, workers=2, cache_dir=str(root / "cache")),
            optimizer=OptimizerParams(max_iterations=2000, window=20),
        )
        LayerRegistrationDriver(P).run(load_project(str(manifest)))

        again = LayerRegistrationDriver(P)
        again.run(load_project(str(manifest)))
        assert again.cache.hits == 8
        assert again.cache.misses == 0

    def test_cli_writes_manifest_and_results(self, stack, monkeypatch):
        root, manifest, _, _ = stack
        cfg = root / "params.yaml"
        cfg.write_text(yaml.safe_dump({
            "features": {"nfeatures": 800, "cache_dir": str(root / "cache")},
            "optimizer": {"max_iterations": 2000, "window": 20},
            "logging": {"level": "WARNING"},
        }))
        out = root / "aligned.yaml"
        results = root / "logs" / "transforms.jsonl"
        monkeypatch.setattr(sys, "argv", [
            "alignment.pipeline",
            "--project", str(manifest),
            "--config", str(cfg),
            "--out", str(out),
            "--results", str(results),
            "--model", "translation",
            "--workers", "2",
        ])
        pipeline.main()

        registered = load_project(str(out))
        assert [len(s) for s in registered] == [4, 4]
        rows = [json.loads(line) for line in results.read_text().splitlines()]
        assert len(rows) == 8
        assert {r["patch"] for r in rows} == {p.id for s in registered for p in s}
        assert all(len(r["affine"]) == 2 for r in rows)
