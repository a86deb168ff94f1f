import logging
import threading
from dataclasses import dataclass
from typing import Iterator

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from qfic.grid import NUM_ORIENTATIONS, Block, Grid, Orientation, apply_orientation
from qfic.utils import pair_means

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN_STEP = 1
DEFAULT_BUCKET_WIDTH = 4.


@dataclass(frozen=True)
class DomainCandidate:
    index: int
    block: Block
    orientation: Orientation
    buffer: np.ndarray  # downsampled and oriented, side == block.side // 2
    mean: float
    variance: float


def orientation_permutations(side: int) -> np.ndarray:
    """perms[o][p] is the index into a flattened buffer that lands at position p after orientation o."""
    idx = np.arange(side * side).reshape((side, side))
    return np.stack([apply_orientation(idx, o).reshape(-1) for o in Orientation]).astype(np.int64)


class DomainCandidates:
    """Candidates for a single range side.

    Candidate k is the domain at positions[k // NUM_ORIENTATIONS] with orientation k % NUM_ORIENTATIONS,
    positions are enumerated row by row. Downsampled buffers are stored once per position, orientations
    are applied through precomputed index permutations.
    """

    def __init__(self, range_side: int, positions: np.ndarray, buffers: np.ndarray, bucket_width: float) -> None:
        self.range_side = range_side
        self.domain_side = 2 * range_side
        self.positions = positions
        self.buffers = buffers
        self.permutations = orientation_permutations(range_side)
        self.means = buffers.mean(axis=1) if len(buffers) else np.empty(0)
        self.variances = buffers.var(axis=1) if len(buffers) else np.empty(0)
        self.bucket_width = bucket_width
        self.buckets = self._build_buckets()

    def _build_buckets(self) -> dict[int, np.ndarray]:
        """Candidate indices grouped by std-dev class, each group in enumeration order."""
        keys = np.floor(np.sqrt(self.variances) / self.bucket_width).astype(np.int64)
        buckets = {}
        for key in np.unique(keys):
            pos = np.flatnonzero(keys == key)
            buckets[int(key)] = (pos[:, None] * NUM_ORIENTATIONS + np.arange(NUM_ORIENTATIONS)).reshape(-1)
        return buckets

    def bucket_upper_std(self, key: int) -> float:
        return (key + 1) * self.bucket_width

    def __len__(self) -> int:
        return len(self.positions) * NUM_ORIENTATIONS

    def __getitem__(self, k: int) -> DomainCandidate:
        if not 0 <= k < len(self):
            raise IndexError(k)
        pos, orientation = divmod(k, NUM_ORIENTATIONS)
        x, y = self.positions[pos]
        buffer = self.buffers[pos][self.permutations[orientation]].reshape((self.range_side, self.range_side))
        return DomainCandidate(k, Block(int(x), int(y), self.domain_side), Orientation(orientation),
                               buffer, float(self.means[pos]), float(self.variances[pos]))

    def __iter__(self) -> Iterator[DomainCandidate]:
        for k in range(len(self)):
            yield self[k]

    def all_indices(self) -> np.ndarray:
        return np.arange(len(self), dtype=np.int64)


class DomainPool:
    """Read-only pool of domain candidates over a snapshot of the source grid."""

    def __init__(self, grid: Grid, domain_step: int = DEFAULT_DOMAIN_STEP,
                 bucket_width: float = DEFAULT_BUCKET_WIDTH) -> None:
        if domain_step <= 0:
            raise ValueError(f"domain step must be positive, got {domain_step}")
        if bucket_width <= 0:
            raise ValueError(f"bucket width must be positive, got {bucket_width}")
        self.width = grid.width
        self.height = grid.height
        self.domain_step = domain_step
        self.bucket_width = bucket_width
        self._pair_means = pair_means(grid.pixels) if grid.width > 1 and grid.height > 1 else None
        self._candidates: dict[int, DomainCandidates] = {}
        self._lock = threading.Lock()

    def prepare(self, range_sides: set[int]):
        for side in sorted(range_sides):
            self.candidates_for(side)

    def candidates_for(self, range_side: int) -> DomainCandidates:
        with self._lock:
            if range_side not in self._candidates:
                self._candidates[range_side] = self._build(range_side)
            return self._candidates[range_side]

    def _build(self, range_side: int) -> DomainCandidates:
        side = 2 * range_side
        if self._pair_means is None or side > self.width or side > self.height:
            logger.debug("No domains of side %d fit into %dx%d image", side, self.width, self.height)
            return DomainCandidates(range_side, np.empty((0, 2), dtype=np.int64),
                                    np.empty((0, range_side * range_side)), self.bucket_width)

        # downsampled domain at (x, y) is pair_means[y:y+side:2, x:x+side:2]
        windows = sliding_window_view(self._pair_means, (side - 1, side - 1))
        windows = windows[::self.domain_step, ::self.domain_step, ::2, ::2]
        n_vertical, n_horizontal = windows.shape[:2]
        buffers = np.ascontiguousarray(windows).reshape((n_vertical * n_horizontal, range_side * range_side))

        ys, xs = np.meshgrid(np.arange(n_vertical) * self.domain_step,
                             np.arange(n_horizontal) * self.domain_step, indexing="ij")
        positions = np.stack((xs.reshape(-1), ys.reshape(-1)), axis=1).astype(np.int64)

        logger.debug("Built %d domain positions of side %d (%d candidates)",
                     len(positions), side, len(positions) * NUM_ORIENTATIONS)
        return DomainCandidates(range_side, positions, buffers, self.bucket_width)
