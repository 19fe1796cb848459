"""
Alignment — tile graph, relaxation and section-by-section registration

This package provides:
- Tile: arena node with a mutable model and weighted matches to partners
- TileGraph: pairwise edges, connected components, overlap repair, anchors
- GlobalOptimizer: Gauss-Seidel relaxation with a trend-based stop rule
- Coarse whole-section registration and the LayerRegistrationDriver
- A CLI that registers a project manifest

Entry point:
    python -m alignment.pipeline --project project.yaml --out aligned.yaml
"""
from .tile import Tile
from .graph import TileGraph
from .optimizer import GlobalOptimizer, OptimizationResult, OptimizerState
from .driver import LayerRegistrationDriver, RegistrationReport

__all__ = [
    "Tile",
    "TileGraph",
    "GlobalOptimizer",
    "OptimizationResult",
    "OptimizerState",
    "LayerRegistrationDriver",
    "RegistrationReport",
]
