import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from qfic.grid import MID_GRAY, Grid, apply_orientation
from qfic.quadtree.common import Codebook, TransformCode
from qfic.utils import MAX_GRAY

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = 1.
DEFAULT_MAX_ITERATIONS = 64

Seed = float | np.ndarray | Grid


class DecoderState(Enum):
    INITIALIZING = 0
    ITERATING = 1
    CONVERGED = 2
    MAX_ITERATIONS_REACHED = 3


@dataclass
class ChannelResult:
    grid: Grid
    state: DecoderState
    iterations: int
    last_change: float
    snapshots: list[Grid] = field(default_factory=list)


@dataclass
class DecodeResult:
    channels: list[ChannelResult]

    @property
    def state(self) -> DecoderState:
        if all(c.state == DecoderState.CONVERGED for c in self.channels):
            return DecoderState.CONVERGED
        return DecoderState.MAX_ITERATIONS_REACHED

    @property
    def iterations(self) -> int:
        return max((c.iterations for c in self.channels), default=0)

    @property
    def grid(self) -> Grid:
        return self.channels[0].grid

    def to_pixels(self) -> np.ndarray:
        """HxW uint8 array for single channel, HxWxC otherwise."""
        if len(self.channels) == 1:
            return self.channels[0].grid.to_pixels()
        return np.stack([c.grid.to_pixels() for c in self.channels], axis=-1)


class QuadtreeDecoder:
    def __init__(self, epsilon: float = DEFAULT_EPSILON, max_iterations: int = DEFAULT_MAX_ITERATIONS,
                 seed: Seed = MID_GRAY, workers: int | None = 1, keep_iterations: bool = False) -> None:
        """
        Args:
            epsilon (float): decoding converges once the max absolute pixel change of a pass is <= epsilon,
                or once the contraction bound max|s| / (1 - max|s|) * change on the distance to the fixed
                point is <= epsilon
            max_iterations (int): cap on the number of passes
            seed (Seed): initial image, a flat value, HxW(xC) array or grid
            workers (int | None): threads applying codes within a pass, 1 applies them inline
            keep_iterations (bool): store a copy of the grid after every pass
        """
        if epsilon < 0:
            raise ValueError(f"epsilon must be non-negative, got {epsilon}")
        if max_iterations < 1:
            raise ValueError(f"at least one iteration is required, got {max_iterations}")
        self.epsilon = epsilon
        self.max_iterations = max_iterations
        self.seed = seed
        self.workers = workers
        self.keep_iterations = keep_iterations

    def decode(self, codebook: Codebook, seed: Seed | None = None) -> DecodeResult:
        seed = self.seed if seed is None else seed
        results = []
        executor = ThreadPoolExecutor(max_workers=self.workers) if self.workers != 1 else None
        try:
            for channel in range(codebook.channels):
                channel_seed = self._channel_seed(seed, channel)
                results.append(self.decode_channel(codebook.channel_codes(channel), codebook.width,
                                                   codebook.height, channel_seed, executor))
        finally:
            if executor is not None:
                executor.shutdown()
        return DecodeResult(results)

    @staticmethod
    def _channel_seed(seed: Seed, channel: int) -> Seed:
        if isinstance(seed, np.ndarray) and seed.ndim == 3:
            return seed[..., channel]
        return seed

    def _initial_grid(self, seed: Seed, width: int, height: int) -> Grid:
        if isinstance(seed, Grid):
            grid = seed.copy()
        elif isinstance(seed, np.ndarray):
            grid = Grid.from_pixels(seed)
        else:
            return Grid.filled(width, height, float(seed))
        if grid.width != width or grid.height != height:
            raise ValueError(f"seed of size {grid.width}x{grid.height} doesn't match image {width}x{height}")
        return grid

    def decode_channel(self, codes: list[TransformCode], width: int, height: int, seed: Seed | None = None,
                       executor: Executor | None = None) -> ChannelResult:
        state = DecoderState.INITIALIZING
        current = self._initial_grid(self.seed if seed is None else seed, width, height)
        next_img = current.copy()
        max_scale = max((abs(c.scale) for c in codes), default=0.)
        chunks = self._chunks(codes)
        snapshots = []

        state = DecoderState.ITERATING
        iteration = 0
        change = np.inf
        while state == DecoderState.ITERATING:
            iteration += 1
            if executor is None:
                _apply_codes(codes, current, next_img)
            else:
                # range blocks are disjoint, so every chunk writes its own region of next_img
                list(executor.map(lambda chunk: _apply_codes(chunk, current, next_img), chunks))

            change = next_img.max_abs_difference(current)
            current, next_img = next_img, current
            if self.keep_iterations:
                snapshots.append(current.copy())
            logger.debug("Pass %d: max change %.4f", iteration, change)

            if self._converged(change, max_scale):
                state = DecoderState.CONVERGED
            elif iteration >= self.max_iterations:
                state = DecoderState.MAX_ITERATIONS_REACHED

        logger.info("Decoding finished in state %s after %d iterations (last change %.4f)",
                    state.name, iteration, change)
        return ChannelResult(current, state, iteration, change, snapshots)

    def _converged(self, change: float, max_scale: float) -> bool:
        if change <= self.epsilon:
            return True
        return max_scale < 1. and change * max_scale / (1. - max_scale) <= self.epsilon

    def _chunks(self, codes: list[TransformCode]) -> list[list[TransformCode]]:
        n = self.workers if self.workers is not None else 8
        size = max(1, -(-len(codes) // max(1, n)))
        return [codes[i:i + size] for i in range(0, len(codes), size)]


def _apply_codes(codes: list[TransformCode], current: Grid, next_img: Grid):
    """Reads only from current and writes only range blocks of next_img."""
    for code in codes:
        domain = apply_orientation(current.downsample(code.domain_block), code.orientation)
        next_img.write_block(code.range_block, np.clip(domain * code.scale + code.offset, 0., MAX_GRAY))
