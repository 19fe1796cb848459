from __future__ import annotations
"""
Section-by-section registration of a tile stack.

Per section:
  ExtractFeatures -> BuildIntraSectionGraph -> RepairIfPrealigned ->
  SelectAnchors -> OptimizeSection -> LinkToPreviousSection
After the last section:
  SelectGlobalAnchors -> OptimizeGlobal -> Done

Only an unrecoverable I/O error (image fetch, descriptor cache) aborts a run;
missing pairwise models, disconnected graphs, non-convergence and unlinkable
section pairs are logged and reported.
"""

import functools
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from common.config import CoarseParams, RunParams
from common.errors import FeatureCacheError, PatchIOError
from common.logging_setup import get_logger
from common.types import Patch
from features.cache import DescriptorCache, MemoryBudget
from features.extract import DescriptorSet, FeatureExtractor, extract_descriptors
from features.matching import find_candidate_matches
from models.ransac import fit_model
from models.transforms import model_class
from alignment.coarse import CoarseResult, coarse_register_sections, inlier_world_points
from alignment.graph import Finder, Fitter, TileGraph
from alignment.optimizer import GlobalOptimizer, OptimizationResult
from alignment.tile import Tile

log = get_logger("alignment.driver")

CoarseFn = Callable[[Sequence[Patch], Sequence[Patch], CoarseParams], Optional[CoarseResult]]
RefreshFn = Callable[[Sequence[Patch]], None]
StatusFn = Callable[[str], None]


@dataclass
class SectionReport:
    section: int
    tiles: int
    edges: int = 0
    components: int = 0
    components_after_repair: int = 0
    optimizer: Optional[OptimizationResult] = None
    linked: Optional[bool] = None
    bridging_matches: int = 0
    cross_edges: int = 0
    link_components: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "section": self.section,
            "tiles": self.tiles,
            "edges": self.edges,
            "components": self.components,
            "components_after_repair": self.components_after_repair,
            "optimizer": self.optimizer.to_dict() if self.optimizer else None,
            "linked": self.linked,
            "bridging_matches": self.bridging_matches,
            "cross_edges": self.cross_edges,
            "link_components": self.link_components,
        }


@dataclass
class RegistrationReport:
    sections: List[SectionReport] = field(default_factory=list)
    unlinked: List[Tuple[int, int]] = field(default_factory=list)
    global_result: Optional[OptimizationResult] = None
    global_components: int = 0

    def to_dict(self) -> dict:
        return {
            "sections": [s.to_dict() for s in self.sections],
            "unlinked": [list(p) for p in self.unlinked],
            "global": self.global_result.to_dict() if self.global_result else None,
            "global_components": self.global_components,
        }


class LayerRegistrationDriver:
    """
    Runs the per-section state machine over `sections` (each a list of
    patches of one section, in stacking order) and writes the final models
    back into the patches.

    Collaborators (all replaceable):
        extractor  FeatureExtractor used by extract_descriptors
        finder     (DescriptorSet, DescriptorSet, ratio) -> [PointMatch]
        fitter     (candidates, min_eps, max_eps, min_ratio) -> (model, inliers) | None
        coarse     (prev patches, cur patches, CoarseParams) -> CoarseResult | None
        cache      DescriptorCache or None
        budget     MemoryBudget or None
        refresh    called with the patches whose transforms were written
        status     progress messages
    """

    def __init__(
        self,
        params: Optional[RunParams] = None,
        *,
        extractor: Optional[FeatureExtractor] = None,
        finder: Optional[Finder] = None,
        fitter: Optional[Fitter] = None,
        coarse: Optional[CoarseFn] = None,
        cache: Optional[DescriptorCache] = None,
        budget: Optional[MemoryBudget] = None,
        refresh: Optional[RefreshFn] = None,
        status: Optional[StatusFn] = None,
    ):
        self.params = params or RunParams()
        P = self.params
        self.model_cls = model_class(P.model)
        self.extractor = extractor or FeatureExtractor.from_params(P.features)
        self.finder = finder or find_candidate_matches
        self.fitter = fitter or functools.partial(fit_model, model=P.model)
        self.coarse = coarse or functools.partial(coarse_register_sections, features=P.features)
        self.cache = cache
        if self.cache is None and P.features.cache_dir:
            self.cache = DescriptorCache(P.features.cache_dir)
        self.budget = budget or MemoryBudget.from_megabytes(P.features.memory_budget_mb)
        self.refresh = refresh
        self.status = status
        self.tiles: List[Tile] = []
        self.graph: Optional[TileGraph] = None

    # -----------------------------
    # Helpers
    # -----------------------------

    def _status(self, msg: str) -> None:
        log.info(msg)
        if self.status is not None:
            self.status(msg)

    def _write_back(self, indices: Sequence[int]) -> None:
        patches = []
        for i in indices:
            t = self.tiles[i]
            if t.patch is not None:
                t.patch.set_affine(t.model.matrix)
                patches.append(t.patch)
        if self.refresh is not None and patches:
            self.refresh(patches)

    def _optimizer(self, max_error: float) -> GlobalOptimizer:
        op = self.params.optimizer
        return GlobalOptimizer(
            max_error,
            max_iterations=op.max_iterations,
            window=op.window,
            progress=lambda it, d: self._status(f"optimizing: iteration {it}, displacement {d:.3f}px"),
        )

    # -----------------------------
    # ExtractFeatures
    # -----------------------------

    def _extract_section(self, indices: Sequence[int]) -> Dict[int, DescriptorSet]:
        """
        Worker threads pull tile positions from a shared counter; all of them
        are joined before returning. The first worker failure is re-raised.
        """
        n = len(indices)
        out: Dict[int, DescriptorSet] = {}
        if n == 0:
            return out
        lock = threading.Lock()
        cursor = [0]
        failures: List[Tuple[int, BaseException]] = []

        def worker() -> None:
            while True:
                with lock:
                    if failures or cursor[0] >= n:
                        return
                    i = indices[cursor[0]]
                    cursor[0] += 1
                patch = self.tiles[i].patch
                try:
                    ds = extract_descriptors(patch, self.extractor, self.cache, self.budget)
                except Exception as e:  # handed to the joining thread
                    with lock:
                        failures.append((i, e))
                    return
                with lock:
                    out[i] = ds

        workers = min(self.params.features.worker_count(), n)
        threads = [threading.Thread(target=worker, name=f"extract-{k}", daemon=True) for k in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        if failures:
            i, e = failures[0]
            if isinstance(e, (PatchIOError, FeatureCacheError)):
                raise e
            pid = self.tiles[i].patch.id if self.tiles[i].patch is not None else str(i)
            raise RuntimeError(f"Descriptor extraction failed for patch {pid}: {e}") from e
        return out

    # -----------------------------
    # LinkToPreviousSection
    # -----------------------------

    def _coarse_with_retry(self, prev: Sequence[Patch], cur: Sequence[Patch]) -> Optional[CoarseResult]:
        """Relax max_epsilon and max_size (both doubled) until success or the size ceiling."""
        cp = self.params.coarse
        attempt = replace(cp)
        while True:
            res = self.coarse(prev, cur, attempt)
            if res is not None:
                return res
            attempt = replace(attempt, max_epsilon=attempt.max_epsilon * 2.0, max_size=attempt.max_size * 2)
            if attempt.max_size > cp.max_size_ceiling:
                return None
            self._status(
                f"coarse registration failed, retrying with max_epsilon={attempt.max_epsilon:g} "
                f"max_size={attempt.max_size}"
            )

    def _nearest_tiles(self, indices: Sequence[int], pts: np.ndarray) -> np.ndarray:
        centers = np.array([self.tiles[i].world_center() for i in indices])
        d2 = ((pts[:, None, :] - centers[None, :, :]) ** 2).sum(axis=2)
        return np.asarray(indices, dtype=np.int64)[np.argmin(d2, axis=1)]

    def _bridge(self, res: CoarseResult, prev_idx: Sequence[int], cur_idx: Sequence[int]) -> int:
        """Pre-concatenate the coarse model onto the current section and add nearest-tile matches."""
        for i in cur_idx:
            self.tiles[i].model.pre_concatenate(res.model)
        for i in cur_idx:
            self.tiles[i].update(self.tiles)
        if not res.inliers:
            return 0

        w_cur, w_prev = inlier_world_points(res)
        w_cur = res.model.apply(w_cur)
        near_prev = self._nearest_tiles(prev_idx, w_prev)
        near_cur = self._nearest_tiles(cur_idx, w_cur)

        added = 0
        for a, b in sorted(set(zip(near_prev.tolist(), near_cur.tolist()))):
            sel = (near_prev == a) & (near_cur == b)
            la = self.tiles[a].model.apply_inverse(w_prev[sel])
            lb = self.tiles[b].model.apply_inverse(w_cur[sel])
            self.graph.connect_arrays(a, b, la, lb, np.ones(int(sel.sum())))
            added += int(sel.sum())
        return added

    def _link(
        self,
        report: SectionReport,
        prev_z: int,
        prev_idx: Sequence[int],
        cur_idx: Sequence[int],
        descriptors: Dict[int, DescriptorSet],
    ) -> bool:
        P = self.params
        prev = [self.tiles[i].patch for i in prev_idx]
        cur = [self.tiles[i].patch for i in cur_idx]
        self._status(f"section {report.section}: linking to section {prev_z}")
        res = self._coarse_with_retry(prev, cur)
        if res is None:
            log.warning(
                "sections left unlinked",
                extra={"extra": {"prev": prev_z, "cur": report.section, "ceiling": P.coarse.max_size_ceiling}},
            )
            report.linked = False
            return False

        report.linked = True
        report.bridging_matches = self._bridge(res, prev_idx, cur_idx)
        self._write_back(cur_idx)
        report.cross_edges = self.graph.build_edges_between(
            prev_idx,
            cur_idx,
            descriptors,
            P.cross,
            overlapping_only=True,
            finder=self.finder,
            fitter=self.fitter,
            ratio=P.features.ratio,
        )
        report.link_components = len(self.graph.connected_components(list(prev_idx) + list(cur_idx)))
        log.info(
            "sections linked",
            extra={"extra": {
                "prev": prev_z,
                "cur": report.section,
                "bridging_matches": report.bridging_matches,
                "cross_edges": report.cross_edges,
                "components": report.link_components,
            }},
        )
        return True

    # -----------------------------
    # Run
    # -----------------------------

    def run(self, sections: Sequence[Sequence[Patch]]) -> RegistrationReport:
        P = self.params
        report = RegistrationReport()
        sections = [list(s) for s in sections if s]

        self.tiles = []
        section_idx: List[List[int]] = []
        for patches in sections:
            idx = []
            for p in patches:
                idx.append(len(self.tiles))
                self.tiles.append(Tile.from_patch(len(self.tiles), p, self.model_cls))
            section_idx.append(idx)
        self.graph = TileGraph(self.tiles)

        prev_desc: Dict[int, DescriptorSet] = {}
        for s, (patches, idx) in enumerate(zip(sections, section_idx)):
            z = patches[0].section
            sr = SectionReport(section=z, tiles=len(idx))
            report.sections.append(sr)

            self._status(f"section {z}: extracting features from {len(idx)} tiles")
            desc = self._extract_section(idx)

            self._status(f"section {z}: matching tile pairs")
            sr.edges = self.graph.build_edges(
                idx,
                desc,
                P.intra,
                overlapping_only=P.prealigned,
                finder=self.finder,
                fitter=self.fitter,
                ratio=P.features.ratio,
            )
            comps = self.graph.connected_components(idx)
            sr.components = len(comps)
            comps = self.graph.repair_disconnected(comps, P.prealigned)
            sr.components_after_repair = len(comps)

            anchors = self.graph.select_anchors(comps)
            self._status(f"section {z}: optimizing {len(idx)} tiles, {len(anchors)} anchors")
            sr.optimizer = self._optimizer(P.intra.max_epsilon).optimize(self.tiles, anchors, idx)
            self._write_back(idx)

            if s > 0 and P.link_sections:
                prev_z = sections[s - 1][0].section
                both = dict(prev_desc)
                both.update(desc)
                if not self._link(sr, prev_z, section_idx[s - 1], idx, both):
                    report.unlinked.append((prev_z, z))
            prev_desc = desc

        all_idx = list(range(len(self.tiles)))
        comps = self.graph.connected_components(all_idx)
        report.global_components = len(comps)
        anchors = self.graph.select_anchors(comps)
        if all_idx:
            self._status(f"global: optimizing {len(all_idx)} tiles, {len(anchors)} anchors")
            report.global_result = self._optimizer(P.cross.max_epsilon).optimize(self.tiles, anchors, all_idx)
            self._write_back(all_idx)

        log.info("registration done", extra={"extra": {
            "sections": len(sections),
            "tiles": len(self.tiles),
            "unlinked": len(report.unlinked),
            "components": report.global_components,
        }})
        return report
