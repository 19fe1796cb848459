from __future__ import annotations

"""
Run parameters loaded from config/params.yaml.

Expected layout (all keys optional, defaults below):

    logging:   {level, results_file}
    features:  {method, nfeatures, fast_threshold, nlevels, scale_factor,
                max_size, clahe_clip, ratio, cache_dir, memory_budget_mb, workers}
    alignment: {model, prealigned, link_sections,
                intra: {min_epsilon, max_epsilon, min_inlier_ratio},
                cross: {min_epsilon, max_epsilon, min_inlier_ratio}}
    optimizer: {max_iterations, window}
    coarse:    {model, min_epsilon, max_size, max_size_ceiling, max_epsilon, min_inlier_ratio}
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


def _pick(cls, d: Optional[Dict[str, Any]]):
    """Build dataclass `cls` from the keys of `d` it knows about."""
    d = d or {}
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class FeatureParams:
    method: str = "orb"
    nfeatures: int = 2000
    fast_threshold: int = 12
    nlevels: int = 8
    scale_factor: float = 1.2
    max_size: int = 1024          # longest image side fed to the detector (px)
    clahe_clip: Optional[float] = 2.0
    ratio: float = 0.92           # closest / next closest descriptor distance
    cache_dir: Optional[str] = None
    memory_budget_mb: float = 512.0
    workers: int = 0              # 0 -> os.cpu_count()

    def worker_count(self) -> int:
        return int(self.workers) if self.workers and self.workers > 0 else (os.cpu_count() or 1)


@dataclass
class MatchTolerance:
    """Pairwise model acceptance: epsilon ramp bounds (px) and inlier ratio."""
    min_epsilon: float = 1.0
    max_epsilon: float = 10.0
    min_inlier_ratio: float = 0.05

    def __post_init__(self) -> None:
        if self.max_epsilon <= 0:
            raise ValueError("max_epsilon must be > 0")
        if self.min_epsilon > self.max_epsilon:
            raise ValueError("min_epsilon must not exceed max_epsilon")
        if not (0.0 <= self.min_inlier_ratio <= 1.0):
            raise ValueError("min_inlier_ratio must be in [0, 1]")


@dataclass
class OptimizerParams:
    max_iterations: int = 100000
    window: int = 100


@dataclass
class CoarseParams:
    model: str = "affine"
    min_epsilon: float = 2.5
    max_size: int = 512
    max_size_ceiling: int = 2048
    max_epsilon: float = 25.0
    min_inlier_ratio: float = 0.05


@dataclass
class RunParams:
    model: str = "rigid"
    prealigned: bool = True
    link_sections: bool = True
    features: FeatureParams = field(default_factory=FeatureParams)
    intra: MatchTolerance = field(default_factory=MatchTolerance)
    cross: MatchTolerance = field(default_factory=lambda: MatchTolerance(2.0, 50.0, 0.05))
    optimizer: OptimizerParams = field(default_factory=OptimizerParams)
    coarse: CoarseParams = field(default_factory=CoarseParams)
    log_level: str = "INFO"
    results_file: Optional[str] = None

    @classmethod
    def from_dict(cls, P: Optional[Dict[str, Any]]) -> "RunParams":
        P = P or {}
        al = P.get("alignment", {}) or {}
        lg = P.get("logging", {}) or {}
        base = cls()
        return cls(
            model=str(al.get("model", base.model)).lower(),
            prealigned=bool(al.get("prealigned", base.prealigned)),
            link_sections=bool(al.get("link_sections", base.link_sections)),
            features=_pick(FeatureParams, P.get("features")),
            intra=_pick(MatchTolerance, al.get("intra")) if al.get("intra") else base.intra,
            cross=_pick(MatchTolerance, al.get("cross")) if al.get("cross") else base.cross,
            optimizer=_pick(OptimizerParams, P.get("optimizer")),
            coarse=_pick(CoarseParams, P.get("coarse")),
            log_level=str(lg.get("level", base.log_level)),
            results_file=lg.get("results_file", base.results_file),
        )

    def with_overrides(self, **kw: Any) -> "RunParams":
        """Copy with top-level fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in kw.items() if v is not None})


def load_params(path: Optional[str] = "config/params.yaml") -> RunParams:
    """Load run parameters; a missing file yields the defaults."""
    if not path or not Path(path).exists():
        return RunParams()
    with open(path, "r") as f:
        return RunParams.from_dict(yaml.safe_load(f))
