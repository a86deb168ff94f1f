from dataclasses import dataclass
from enum import IntEnum

import numpy as np

from qfic.errors import InvalidBlockSide, OutOfBounds, UnsupportedDimensions
from qfic.utils import MAX_GRAY, average_subsample_jit

MID_GRAY = 128.


class Orientation(IntEnum):
    """The 8 symmetries of a square. Rotations are counterclockwise, as np.rot90."""
    IDENTITY = 0
    ROT90 = 1
    ROT180 = 2
    ROT270 = 3
    FLIP_H = 4          # mirror left <-> right
    FLIP_V = 5          # mirror top <-> bottom
    TRANSPOSE = 6       # mirror along main diagonal
    ANTI_TRANSPOSE = 7  # mirror along anti-diagonal


NUM_ORIENTATIONS = len(Orientation)


def apply_orientation(buffer: np.ndarray, orientation: int) -> np.ndarray:
    """Reorders the last two (square) axes of buffer, returns a contiguous copy."""
    if orientation == Orientation.IDENTITY:
        res = buffer.copy()
    elif orientation == Orientation.ROT90:
        res = np.rot90(buffer, 1, axes=(-2, -1))
    elif orientation == Orientation.ROT180:
        res = np.rot90(buffer, 2, axes=(-2, -1))
    elif orientation == Orientation.ROT270:
        res = np.rot90(buffer, 3, axes=(-2, -1))
    elif orientation == Orientation.FLIP_H:
        res = buffer[..., ::-1]
    elif orientation == Orientation.FLIP_V:
        res = buffer[..., ::-1, :]
    elif orientation == Orientation.TRANSPOSE:
        res = np.swapaxes(buffer, -1, -2)
    elif orientation == Orientation.ANTI_TRANSPOSE:
        res = np.swapaxes(np.rot90(buffer, 2, axes=(-2, -1)), -1, -2)
    else:
        raise ValueError(f"unknown orientation: {orientation}")
    return np.ascontiguousarray(res)


@dataclass(frozen=True)
class Block:
    """Square region with top-left corner (x, y) = (column, row)."""
    x: int
    y: int
    side: int

    def __post_init__(self):
        if self.side <= 0:
            raise InvalidBlockSide(f"block side must be positive, got {self.side}")

    @property
    def area(self) -> int:
        return self.side * self.side

    def quadrants(self) -> tuple["Block", "Block", "Block", "Block"]:
        """Top-left, top-right, bottom-left, bottom-right."""
        if self.side % 2 != 0:
            raise InvalidBlockSide(f"can't split block with odd side {self.side}")
        half = self.side // 2
        return (
            Block(self.x, self.y, half),
            Block(self.x + half, self.y, half),
            Block(self.x, self.y + half, half),
            Block(self.x + half, self.y + half, half),
        )


class Grid:
    """Dense row-major buffer of intensities in [0, MAX_GRAY], stored as float64 and indexed [y, x]."""

    def __init__(self, pixels: np.ndarray) -> None:
        pixels = np.asarray(pixels)
        if pixels.ndim != 2 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise UnsupportedDimensions(f"grid needs non-empty 2d pixel buffer, got shape {pixels.shape}")
        self.pixels = np.array(pixels, dtype=np.float64)

    @staticmethod
    def from_pixels(pixels: np.ndarray) -> "Grid":
        return Grid(pixels)

    @staticmethod
    def filled(width: int, height: int, value: float = MID_GRAY) -> "Grid":
        if width <= 0 or height <= 0:
            raise UnsupportedDimensions(f"grid dimensions must be positive, got {width}x{height}")
        return Grid(np.full((height, width), value, dtype=np.float64))

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def sample(self, x: int, y: int) -> float:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise OutOfBounds(x, y, self.width, self.height)
        return float(self.pixels[y, x])

    def contains(self, block: Block) -> bool:
        return (block.x >= 0 and block.y >= 0
                and block.x + block.side <= self.width and block.y + block.side <= self.height)

    def _check(self, block: Block):
        if block.x < 0 or block.y < 0:
            raise OutOfBounds(block.x, block.y, self.width, self.height)
        if not self.contains(block):
            raise OutOfBounds(block.x + block.side - 1, block.y + block.side - 1, self.width, self.height)

    def view(self, block: Block) -> np.ndarray:
        """Read-only view, callers must not keep it across write_block calls."""
        self._check(block)
        res = self.pixels[block.y:block.y + block.side, block.x:block.x + block.side]
        res.flags.writeable = False
        return res

    def extract(self, block: Block) -> np.ndarray:
        self._check(block)
        return self.pixels[block.y:block.y + block.side, block.x:block.x + block.side].copy()

    def downsample(self, block: Block) -> np.ndarray:
        """Averages non-overlapping 2x2 cells of block, result has side block.side // 2."""
        if block.side % 2 != 0:
            raise InvalidBlockSide(f"can't downsample block with odd side {block.side}")
        self._check(block)
        return average_subsample_jit(self.pixels[block.y:block.y + block.side, block.x:block.x + block.side])

    def write_block(self, block: Block, buffer: np.ndarray):
        self._check(block)
        if buffer.shape != (block.side, block.side):
            raise InvalidBlockSide(f"buffer of shape {buffer.shape} doesn't fit block of side {block.side}")
        self.pixels[block.y:block.y + block.side, block.x:block.x + block.side] = buffer

    def copy(self) -> "Grid":
        return Grid(self.pixels)

    def max_abs_difference(self, other: "Grid") -> float:
        return float(np.max(np.abs(self.pixels - other.pixels)))

    def to_pixels(self) -> np.ndarray:
        return np.rint(self.pixels).clip(0., MAX_GRAY).astype(np.uint8)
