from __future__ import annotations
"""
Iterative relaxation of tile models.

Each iteration sweeps the free (non-anchor) tiles in ascending index order
and refits each one against its neighbours' current models (Gauss-Seidel:
later tiles in the sweep see the updates of earlier ones). The run stops when

    displacement <= max_error  AND  slope(trailing deltas) >= 0

where displacement is the mean per-tile residual and the deltas are
|displacement(i-1) - displacement(i)| over the last `window` iterations.
A hard iteration cap ends the run otherwise; that is reported, not raised,
and the free tiles are rolled back to the lowest-displacement iterate seen.
"""

import enum
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Sequence, Set, Tuple

import numpy as np

from common.logging_setup import get_logger
from common.utils import RunningStats, fit_line
from models.transforms import IllDefinedDataPointsError, NotEnoughDataPointsError
from alignment.tile import Tile

log = get_logger("alignment.optimizer")

ProgressFn = Callable[[int, float], None]


class OptimizerState(enum.Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass
class OptimizationResult:
    state: OptimizerState
    iterations: int
    displacement: float
    min_distance: float
    max_distance: float
    slope: Optional[float] = None

    @property
    def converged(self) -> bool:
        return self.state is OptimizerState.CONVERGED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "iterations": self.iterations,
            "displacement": self.displacement,
            "min_distance": self.min_distance,
            "max_distance": self.max_distance,
            "slope": self.slope,
        }


def convergence_reached(displacement: float, max_error: float, slope: float) -> bool:
    """Both conditions: small enough, and the delta trend is no longer falling."""
    return displacement <= max_error and slope >= 0.0


class GlobalOptimizer:
    def __init__(
        self,
        max_error: float,
        max_iterations: int = 100000,
        window: int = 100,
        progress: Optional[ProgressFn] = None,
        progress_every: int = 1000,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if window < 1:
            raise ValueError("window must be >= 1")
        self.max_error = float(max_error)
        self.max_iterations = int(max_iterations)
        self.window = int(window)
        self.progress = progress
        self.progress_every = max(1, int(progress_every))

    def optimize(
        self,
        tiles: Sequence[Tile],
        anchors: Iterable[int],
        indices: Optional[Iterable[int]] = None,
    ) -> OptimizationResult:
        """
        Relax the models of `indices` (default: every tile in the arena).
        Anchor models are never written. When the iteration cap is hit the
        reported displacement is the lowest one seen, and the free models
        are those of that iteration.
        """
        order = sorted(set(range(len(tiles)) if indices is None else indices))
        fixed: Set[int] = set(anchors)
        free = [i for i in order if i not in fixed]
        if not order:
            return OptimizationResult(OptimizerState.CONVERGED, 0, 0.0, 0.0, 0.0)

        for i in order:
            tiles[i].update(tiles)

        deltas: deque = deque(maxlen=self.window)
        failed: Set[int] = set()
        state = OptimizerState.RUNNING
        previous: Optional[float] = None
        slope: Optional[float] = None
        it = 0
        displacement = lo = hi = 0.0
        best: Optional[Tuple[float, float, float, Dict[int, np.ndarray]]] = None

        while state is OptimizerState.RUNNING:
            it += 1
            for i in free:
                t = tiles[i]
                t.update(tiles)
                try:
                    t.fit_model(tiles)
                except (NotEnoughDataPointsError, IllDefinedDataPointsError) as e:
                    if i not in failed:
                        failed.add(i)
                        log.debug("local fit failed, keeping model", extra={"extra": {"tile": i, "reason": str(e)}})
                t.update(tiles)

            stats = RunningStats()
            for i in order:
                tiles[i].update(tiles)
                stats.add(tiles[i].distance)
            displacement, lo, hi = stats.mean, stats.lo, stats.hi
            if best is None or displacement < best[0]:
                best = (displacement, lo, hi, {i: tiles[i].model.matrix for i in free})

            if previous is not None:
                deltas.append(abs(previous - displacement))
            previous = displacement

            if len(deltas) == self.window:
                slope = fit_line(deltas).slope
                if convergence_reached(displacement, self.max_error, slope):
                    state = OptimizerState.CONVERGED
            if state is OptimizerState.RUNNING and it >= self.max_iterations:
                state = OptimizerState.MAX_ITERATIONS_REACHED

            if self.progress is not None and (it % self.progress_every == 0 or state is not OptimizerState.RUNNING):
                self.progress(it, displacement)

        if state is OptimizerState.MAX_ITERATIONS_REACHED and best is not None and best[0] < displacement:
            displacement, lo, hi, matrices = best
            for i, m in matrices.items():
                tiles[i].model.set(m)
            for i in order:
                tiles[i].update(tiles)

        result = OptimizationResult(state, it, displacement, lo, hi, slope)
        payload = {"extra": dict(result.to_dict(), tiles=len(order), anchors=len(fixed & set(order)))}
        if state is OptimizerState.MAX_ITERATIONS_REACHED:
            log.warning("optimizer hit iteration cap, keeping best models", extra=payload)
        else:
            log.info("optimizer converged", extra=payload)
        return result
