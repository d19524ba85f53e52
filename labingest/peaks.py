"""Local-maximum peak picking shared by the chromatography and spectroscopy decoders.

This is an approximation for triage, not chromatographic integration: a point
is a peak when it is strictly higher than both neighbours and above a fixed
threshold. Baseline correction, shoulder resolution and noise filtering are
left to the downstream analysis.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Sequence

import numpy as np

PEAK_THRESHOLD = 0.1
MAX_PEAKS = 10


@dataclass(frozen=True)
class Peak:
    index: int
    x: float
    height: float
    area: float

    def to_dict(self) -> dict:
        return asdict(self)


def _as_series(x: Sequence[float], y: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    x_arr = np.asarray(x, dtype=float)
    y_arr = np.asarray(y, dtype=float)
    if x_arr.shape != y_arr.shape or x_arr.ndim != 1:
        raise ValueError("x and y must be one-dimensional series of equal length.")
    return x_arr, y_arr


def local_maxima(y: np.ndarray, threshold: float = PEAK_THRESHOLD) -> np.ndarray:
    if y.size < 3:
        return np.array([], dtype=int)
    center = y[1:-1]
    mask = (center > y[:-2]) & (center > y[2:]) & (center > threshold)
    return np.flatnonzero(mask) + 1


def _trapezoid(x: np.ndarray, y: np.ndarray) -> float:
    if x.size < 2:
        return 0.0
    return float(np.sum((y[1:] + y[:-1]) * np.diff(x)) / 2.0)


def peak_bounds(y: np.ndarray, index: int) -> tuple[int, int]:
    """Walk downhill from a peak to the nearest local minimum on each side."""

    left = index
    while left > 0 and y[left - 1] <= y[left]:
        left -= 1
    right = index
    last = y.size - 1
    while right < last and y[right + 1] <= y[right]:
        right += 1
    return left, right


def detect_peaks(
    x: Sequence[float],
    y: Sequence[float],
    threshold: float = PEAK_THRESHOLD,
    limit: int = MAX_PEAKS,
) -> list[Peak]:
    x_arr, y_arr = _as_series(x, y)
    candidates = local_maxima(y_arr, threshold)

    peaks: list[Peak] = []
    for index in candidates:
        left, right = peak_bounds(y_arr, int(index))
        area = _trapezoid(x_arr[left : right + 1], y_arr[left : right + 1])
        peaks.append(
            Peak(
                index=int(index),
                x=float(x_arr[index]),
                height=float(y_arr[index]),
                area=round(abs(area), 6),
            )
        )

    peaks.sort(key=lambda peak: peak.height, reverse=True)
    return peaks[:limit]
