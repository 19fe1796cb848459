from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(slots=True)
class LineFit:
    """
    Least-squares line y = slope * x + intercept over x = 0..n-1.

    std is the sample standard deviation of the values themselves; r is the
    correlation coefficient between the fitted line and the values (nan when
    either is constant).
    """
    slope: float
    intercept: float
    std: float
    r: float


def fit_line(values: Sequence[float]) -> LineFit:
    """Fit a line to equally spaced samples (index as abscissa)."""
    y = np.asarray(values, dtype=np.float64).ravel()
    n = y.size
    if n == 0:
        raise ValueError("fit_line needs at least one value")
    if n == 1:
        return LineFit(0.0, float(y[0]), 0.0, float("nan"))
    x = np.arange(n, dtype=np.float64)
    slope, intercept = np.polyfit(x, y, 1)
    line = slope * x + intercept
    std = float(np.std(y, ddof=1))
    sl = float(np.std(line))
    sy = float(np.std(y))
    if sl == 0.0 or sy == 0.0:
        r = float("nan")
    else:
        r = float(np.mean((line - line.mean()) * (y - y.mean())) / (sl * sy))
    return LineFit(float(slope), float(intercept), std, r)


@dataclass(slots=True)
class RunningStats:
    """
    Online mean/std using Welford's algorithm, plus min/max.
    """
    n: int = 0
    mean: float = 0.0
    m2: float = 0.0
    lo: float = float("inf")
    hi: float = float("-inf")

    def add(self, x: float) -> None:
        self.n += 1
        d = x - self.mean
        self.mean += d / self.n
        d2 = x - self.mean
        self.m2 += d * d2
        self.lo = min(self.lo, x)
        self.hi = max(self.hi, x)

    @property
    def variance(self) -> float:
        return self.m2 / (self.n - 1) if self.n > 1 else 0.0

    @property
    def std(self) -> float:
        return self.variance ** 0.5

