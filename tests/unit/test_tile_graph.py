"""
Unit tests for the tile graph (edges, components, repair, anchors)
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from alignment.graph import SYNTHETIC_WEIGHT, TileGraph
from alignment.tile import Tile
from common.config import MatchTolerance
from common.types import Point, PointMatch
from features.extract import DescriptorSet
from models.transforms import TranslationModel2D


def make_tile(i, x=0.0, y=0.0, size=100.0):
    return Tile(i, TranslationModel2D([[1, 0, x], [0, 1, y]]), size, size)


def pm(a, b, w=1.0):
    return PointMatch(Point(*a), Point(*b), w)


def some_matches(n=3):
    return [pm((10.0 * k, 5.0), (10.0 * k, 5.0)) for k in range(1, n + 1)]


class TestConnect:
    """Match attachment in both local frames"""

    def test_connect_attaches_flipped_matches(self):
        g = TileGraph([make_tile(0), make_tile(1, 50.0)])
        g.connect(0, 1, [pm((60.0, 10.0), (10.0, 10.0)), pm((70.0, 40.0), (20.0, 40.0), 0.5)])
        a, b = g.tiles
        assert a.num_matches == 2 and b.num_matches == 2
        assert g.has_edge(1, 0)
        back = b.matches_with(0)
        assert back[0].p1 == Point(10.0, 10.0)
        assert back[0].p2 == Point(60.0, 10.0)
        assert back[1].weight == 0.5
        assert a.connected == {1} and b.connected == {0}

    def test_connect_without_matches_adds_no_edge(self):
        g = TileGraph([make_tile(0), make_tile(1)])
        g.connect(0, 1, [])
        assert g.edges == []

    def test_self_connection_rejected(self):
        g = TileGraph([make_tile(0)])
        with pytest.raises(ValueError):
            g.connect(0, 0, some_matches())

    def test_arena_indices_must_match_positions(self):
        with pytest.raises(ValueError):
            TileGraph([make_tile(1)])


class TestConnectedComponents:
    """Partition of tiles by recorded edges"""

    def _graph(self):
        g = TileGraph([make_tile(i, 100.0 * i) for i in range(6)])
        for a, b in [(0, 1), (1, 2), (3, 4)]:
            g.connect(a, b, some_matches())
        return g

    def test_partition_invariant(self):
        g = self._graph()
        comps = g.connected_components()
        assert comps == [[0, 1, 2], [3, 4], [5]]
        flat = [i for c in comps for i in c]
        assert sorted(flat) == list(range(6))
        assert len(flat) == len(set(flat))
        comp_of = {i: k for k, c in enumerate(comps) for i in c}
        for a, b in g.edges:
            assert comp_of[a] == comp_of[b]

    def test_restricted_to_indices(self):
        g = self._graph()
        # tile 1 is outside the subset, so 0 and 2 are not connected through it
        assert g.connected_components([0, 2, 3, 4]) == [[0], [2], [3, 4]]

    def test_deterministic(self):
        assert self._graph().connected_components() == self._graph().connected_components()


class TestRepairDisconnected:
    """Synthetic matches between overlapping components"""

    def test_non_overlapping_components_stay_apart(self):
        # two components far apart: nothing to fabricate
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 80.0), make_tile(2, 500.0), make_tile(3, 580.0)])
        g.connect(0, 1, some_matches())
        g.connect(2, 3, some_matches())
        counts = [t.num_matches for t in g.tiles]
        comps = g.connected_components()
        repaired = g.repair_disconnected(comps, prealigned=True)
        assert repaired == [[0, 1], [2, 3]]
        assert [t.num_matches for t in g.tiles] == counts
        anchors = g.select_anchors(repaired)
        assert len(anchors) == 2
        assert anchors[0] in repaired[0] and anchors[1] in repaired[1]

    def test_singleton_partner_weights(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 90.0), make_tile(2, 150.0)])
        g.connect(0, 1, some_matches())
        comps = g.connected_components()
        assert comps == [[0, 1], [2]]

        repaired = g.repair_disconnected(comps, prealigned=True)
        assert repaired == [[0, 1, 2]]
        t1, t2 = g.tiles[1], g.tiles[2]
        toward_singleton = [m.weight for m in t1.matches_with(2)]
        from_singleton = [m.weight for m in t2.matches_with(1)]
        assert toward_singleton == [SYNTHETIC_WEIGHT, SYNTHETIC_WEIGHT]
        assert from_singleton == [1.0, 1.0]
        # tile 0 does not overlap tile 2
        assert g.tiles[0].matches_with(2) == []

    def test_synthetic_matches_preserve_current_placement(self):
        g = TileGraph([make_tile(0, 0.0, 0.0), make_tile(1, 60.0, 30.0)])
        repaired = g.repair_disconnected(g.connected_components(), prealigned=True)
        assert len(repaired) == 1
        for t in g.tiles:
            t.update(g.tiles)
            assert t.distance == pytest.approx(0.0, abs=1e-9)
        # two opposite corners of the overlap [60,100] x [30,100]
        world = g.tiles[0].model.apply(g.tiles[0].p1)
        np.testing.assert_allclose(world, [[60.0, 30.0], [100.0, 100.0]])

    def test_two_multi_tile_components_get_full_weight(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 80.0), make_tile(2, 150.0), make_tile(3, 230.0)])
        g.connect(0, 1, some_matches())
        g.connect(2, 3, some_matches())
        g.repair_disconnected(g.connected_components(), prealigned=True)
        assert [m.weight for m in g.tiles[1].matches_with(2)] == [1.0, 1.0]
        assert [m.weight for m in g.tiles[2].matches_with(1)] == [1.0, 1.0]

    def test_touching_edges_do_not_overlap(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 100.0)])
        assert g.repair_disconnected(g.connected_components(), prealigned=True) == [[0], [1]]

    def test_not_prealigned_leaves_components(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 50.0)])
        comps = g.connected_components()
        assert g.repair_disconnected(comps, prealigned=False) == [[0], [1]]
        assert g.tiles[0].num_matches == 0


class TestSelectAnchors:
    """Most constrained tile per component"""

    def test_most_matches_wins(self):
        g = TileGraph([make_tile(i) for i in range(3)])
        g.connect(0, 1, some_matches(2))
        g.connect(1, 2, some_matches(3))
        assert g.select_anchors(g.connected_components()) == [1]

    def test_tie_keeps_first(self):
        g = TileGraph([make_tile(i) for i in range(2)])
        g.connect(0, 1, some_matches(3))
        assert g.select_anchors(g.connected_components()) == [0]

    def test_only_matches_inside_component_count(self):
        g = TileGraph([make_tile(i) for i in range(4)])
        g.connect(0, 1, some_matches(2))
        g.connect(1, 2, some_matches(10))
        g.connect(0, 3, some_matches(3))
        # scope {0, 1}: tile 1's matches to tile 2 are outside
        assert g.select_anchors([[0, 1]]) == [0]

    def test_singletons_anchor_themselves(self):
        g = TileGraph([make_tile(i) for i in range(3)])
        assert g.select_anchors(g.connected_components()) == [0, 1, 2]


class TestBuildEdges:
    """Pairwise finder/fitter orchestration"""

    def _descriptors(self, n):
        return {i: DescriptorSet.empty() for i in range(n)}

    def test_only_overlapping_pairs_when_prealigned(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 80.0), make_tile(2, 400.0)])
        calls = []

        def finder(a, b, ratio):
            calls.append((a, b, ratio))
            return some_matches()

        def fitter(cands, lo, hi, ratio):
            return TranslationModel2D(), list(cands)

        added = g.build_edges([0, 1, 2], self._descriptors(3), MatchTolerance(), finder=finder, fitter=fitter)
        assert added == 1
        assert len(calls) == 1
        assert g.edges == [(0, 1)]

    def test_all_pairs_when_not_prealigned(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 80.0), make_tile(2, 400.0)])
        seen = []

        def fitter(cands, lo, hi, ratio):
            seen.append((lo, hi, ratio))
            return TranslationModel2D(), list(cands)

        added = g.build_edges(
            [2, 0, 1],
            self._descriptors(3),
            MatchTolerance(1.0, 7.0, 0.2),
            overlapping_only=False,
            finder=lambda a, b, r: some_matches(),
            fitter=fitter,
        )
        assert added == 3
        assert seen == [(1.0, 7.0, 0.2)] * 3

    def test_no_model_skips_edge(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 80.0)])
        added = g.build_edges(
            [0, 1],
            self._descriptors(2),
            MatchTolerance(),
            finder=lambda a, b, r: some_matches(),
            fitter=lambda *args: None,
        )
        assert added == 0
        assert g.connected_components() == [[0], [1]]

    def test_between_sets(self):
        g = TileGraph([make_tile(0, 0.0), make_tile(1, 80.0), make_tile(2, 10.0), make_tile(3, 90.0)])
        added = g.build_edges_between(
            [0, 1],
            [2, 3],
            self._descriptors(4),
            MatchTolerance(2.0, 50.0, 0.05),
            finder=lambda a, b, r: some_matches(),
            fitter=lambda c, lo, hi, r: (TranslationModel2D(), list(c)),
        )
        assert added == 4
        assert not g.has_edge(0, 1)
        assert not g.has_edge(2, 3)
