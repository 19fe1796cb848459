from __future__ import annotations
"""
Tile connectivity: pairwise edges, connected components, repair of
disconnected pre-aligned components and anchor selection.

Edges are recorded as ordered index pairs (a < b) over the tile arena; every
edge carries matches attached to both tiles in their own local frames.
"""

from collections import deque
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from common.config import MatchTolerance
from common.logging_setup import get_logger
from common.types import PointMatch
from features.extract import DescriptorSet
from features.matching import find_candidate_matches
from models.ransac import fit_model
from models.transforms import AbstractModel2D, NoninvertibleModelError
from alignment.tile import Tile

log = get_logger("alignment.graph")

Finder = Callable[[DescriptorSet, DescriptorSet, float], List[PointMatch]]
Fitter = Callable[[Sequence[PointMatch], float, float, float], Optional[Tuple[AbstractModel2D, List[PointMatch]]]]

SYNTHETIC_WEIGHT = 0.1


class TileGraph:
    def __init__(self, tiles: Sequence[Tile]):
        self.tiles: List[Tile] = list(tiles)
        for k, t in enumerate(self.tiles):
            if t.index != k:
                raise ValueError(f"Tile at position {k} has index {t.index}")
        self._edges: Set[Tuple[int, int]] = set()

    def __len__(self) -> int:
        return len(self.tiles)

    @property
    def edges(self) -> List[Tuple[int, int]]:
        return sorted(self._edges)

    def has_edge(self, a: int, b: int) -> bool:
        return (min(a, b), max(a, b)) in self._edges

    # -----------------------------
    # Edges
    # -----------------------------

    def connect(self, a: int, b: int, matches: Sequence[PointMatch]) -> None:
        """Attach matches (p1 in a, p2 in b) to a, their flips to b, and record the edge."""
        if a == b:
            raise ValueError("cannot connect a tile to itself")
        if not matches:
            return
        p1, p2, w = PointMatch.to_arrays(matches)
        self.connect_arrays(a, b, p1, p2, w)

    def connect_arrays(self, a: int, b: int, p1: np.ndarray, p2: np.ndarray, w: np.ndarray) -> None:
        self.tiles[a].add_match_arrays(b, p1, p2, w)
        self.tiles[b].add_match_arrays(a, p2, p1, w)
        self._edges.add((min(a, b), max(a, b)))

    def _match_pair(
        self,
        a: int,
        b: int,
        descriptors: Mapping[int, DescriptorSet],
        tolerance: MatchTolerance,
        finder: Finder,
        fitter: Fitter,
        ratio: float,
    ) -> bool:
        da = descriptors.get(a)
        db = descriptors.get(b)
        if da is None or db is None:
            return False
        candidates = finder(da, db, ratio)
        found = fitter(candidates, tolerance.min_epsilon, tolerance.max_epsilon, tolerance.min_inlier_ratio)
        if found is None:
            log.info(
                "no model found for pair",
                extra={"extra": {"a": a, "b": b, "candidates": len(candidates)}},
            )
            return False
        _, inliers = found
        self.connect(a, b, inliers)
        log.debug("pair connected", extra={"extra": {"a": a, "b": b, "inliers": len(inliers)}})
        return True

    def _pairs_overlap(self, a: int, b: int) -> bool:
        return self.tiles[a].world_bbox().intersects(self.tiles[b].world_bbox())

    def build_edges(
        self,
        indices: Sequence[int],
        descriptors: Mapping[int, DescriptorSet],
        tolerance: MatchTolerance,
        *,
        overlapping_only: bool = True,
        finder: Finder = find_candidate_matches,
        fitter: Fitter = fit_model,
        ratio: float = 0.92,
    ) -> int:
        """
        Match every unordered pair of `indices` (only world-overlapping pairs
        when `overlapping_only`); connect pairs with a model. Returns the
        number of edges added.
        """
        idx = sorted(indices)
        added = 0
        for k, a in enumerate(idx):
            for b in idx[k + 1:]:
                if overlapping_only and not self._pairs_overlap(a, b):
                    continue
                if self._match_pair(a, b, descriptors, tolerance, finder, fitter, ratio):
                    added += 1
        return added

    def build_edges_between(
        self,
        indices_a: Sequence[int],
        indices_b: Sequence[int],
        descriptors: Mapping[int, DescriptorSet],
        tolerance: MatchTolerance,
        *,
        overlapping_only: bool = True,
        finder: Finder = find_candidate_matches,
        fitter: Fitter = fit_model,
        ratio: float = 0.92,
    ) -> int:
        """Same as build_edges for pairs with one tile in each index set."""
        added = 0
        for a in sorted(indices_a):
            for b in sorted(indices_b):
                if a == b:
                    continue
                if overlapping_only and not self._pairs_overlap(a, b):
                    continue
                if self._match_pair(a, b, descriptors, tolerance, finder, fitter, ratio):
                    added += 1
        return added

    # -----------------------------
    # Components
    # -----------------------------

    def connected_components(self, indices: Optional[Iterable[int]] = None) -> List[List[int]]:
        """
        Partition `indices` (default: all tiles) into maximal connected sets
        by BFS over recorded edges. Components and their members come out in
        ascending index order.
        """
        nodes = sorted(set(range(len(self.tiles)) if indices is None else indices))
        allowed = set(nodes)
        seen: Set[int] = set()
        components: List[List[int]] = []
        for start in nodes:
            if start in seen:
                continue
            seen.add(start)
            comp = []
            q = deque([start])
            while q:
                i = q.popleft()
                comp.append(i)
                for j in sorted(self.tiles[i].connected):
                    if j in allowed and j not in seen:
                        seen.add(j)
                        q.append(j)
            components.append(sorted(comp))
        return components

    def repair_disconnected(self, components: List[List[int]], prealigned: bool) -> List[List[int]]:
        """
        Tie separate components together with synthetic matches where their
        tiles overlap in world space. Two opposite corners of each overlap
        rectangle become two matches in each direction; matches toward a
        tile that was a singleton component get weight 0.1, all others 1.0.

        Returns the recomputed components. Without pre-alignment, overlap
        says nothing about true correspondence and nothing is changed.
        """
        if len(components) <= 1:
            return components
        if not prealigned:
            log.warning(
                "disconnected tiles left as separate components",
                extra={"extra": {"components": len(components), "sizes": [len(c) for c in components]}},
            )
            return components

        comp_of = {i: c for c, comp in enumerate(components) for i in comp}
        singleton = [len(comp) == 1 for comp in components]
        boxes = {i: self.tiles[i].world_bbox() for comp in components for i in comp}
        members = sorted(comp_of)

        pairs = 0
        for k, a in enumerate(members):
            for b in members[k + 1:]:
                if comp_of[a] == comp_of[b]:
                    continue
                rect = boxes[a].intersection(boxes[b])
                if rect is None:
                    continue
                world = rect.corners()[[0, 2]]
                try:
                    la = self.tiles[a].model.apply_inverse(world)
                    lb = self.tiles[b].model.apply_inverse(world)
                except NoninvertibleModelError as e:
                    log.warning("skipping repair pair", extra={"extra": {"a": a, "b": b, "reason": str(e)}})
                    continue
                wa = np.full(2, SYNTHETIC_WEIGHT if singleton[comp_of[b]] else 1.0)
                wb = np.full(2, SYNTHETIC_WEIGHT if singleton[comp_of[a]] else 1.0)
                self.tiles[a].add_match_arrays(b, la, lb, wa)
                self.tiles[b].add_match_arrays(a, lb, la, wb)
                self._edges.add((a, b))
                pairs += 1

        repaired = self.connected_components(members)
        log.info(
            "repaired disconnected components",
            extra={"extra": {"before": len(components), "after": len(repaired), "pairs": pairs}},
        )
        if len(repaired) > 1:
            log.warning(
                "components remain disconnected after repair",
                extra={"extra": {"components": len(repaired), "sizes": [len(c) for c in repaired]}},
            )
        return repaired

    # -----------------------------
    # Anchors
    # -----------------------------

    def select_anchors(self, components: Sequence[Sequence[int]]) -> List[int]:
        """
        One fixed tile per component: the tile with the most matches to
        members of its own component, first in index order on ties. This is
        a greedy heuristic for the best constrained tile, nothing more.
        """
        anchors: List[int] = []
        for comp in components:
            members = set(comp)
            best = comp[0]
            best_n = -1
            for i in comp:
                n = self.tiles[i].count_matches_within(members)
                if n > best_n:
                    best, best_n = i, n
            anchors.append(best)
        return anchors
