import logging
from dataclasses import dataclass

import numpy as np

from qfic.errors import InvalidBlockSide, UnsupportedDimensions
from qfic.grid import Block, Grid
from qfic.quadtree.common import Quadtree

logger = logging.getLogger(__name__)

DEFAULT_MIN_RANGE_SIDE = 4
DEFAULT_MAX_RANGE_SIDE = 16
DEFAULT_VARIANCE_TOLERANCE = 25.


def _is_power_of_two(v: int) -> bool:
    return v > 0 and (v & (v - 1)) == 0


@dataclass(frozen=True)
class PartitionPolicy:
    """
    Args:
        min_range_side (int): blocks of this side are never divided
        max_range_side (int): side of the quadtree roots, must divide image width and height
        variance_tolerance (float): blocks with pixel variance not larger than this become leaves
    """
    min_range_side: int = DEFAULT_MIN_RANGE_SIDE
    max_range_side: int = DEFAULT_MAX_RANGE_SIDE
    variance_tolerance: float = DEFAULT_VARIANCE_TOLERANCE

    def __post_init__(self):
        if not _is_power_of_two(self.min_range_side) or not _is_power_of_two(self.max_range_side):
            raise InvalidBlockSide(
                f"range sides must be powers of 2, got {self.min_range_side} and {self.max_range_side}")
        if self.min_range_side > self.max_range_side:
            raise InvalidBlockSide(
                f"min range side {self.min_range_side} is bigger than max range side {self.max_range_side}")
        if self.variance_tolerance < 0:
            raise ValueError(f"variance tolerance must be non-negative, got {self.variance_tolerance}")

    def check_dimensions(self, width: int, height: int):
        if width % self.max_range_side != 0 or height % self.max_range_side != 0:
            raise UnsupportedDimensions(
                f"image {width}x{height} is not divisible into blocks of side {self.max_range_side}")


def partition(grid: Grid, policy: PartitionPolicy) -> Quadtree:
    policy.check_dimensions(grid.width, grid.height)
    side = policy.max_range_side

    tree = Quadtree()
    for y in range(0, grid.height, side):
        for x in range(0, grid.width, side):
            tree.roots.append(tree.add(Block(x, y, side)))

    work = list(tree.roots)
    while work:
        idx = work.pop()
        node = tree.nodes[idx]
        node.variance = float(np.var(grid.view(node.block)))
        if node.variance <= policy.variance_tolerance or node.block.side <= policy.min_range_side:
            continue
        node.children = tuple(tree.add(q, idx) for q in node.block.quadrants())
        work.extend(node.children)

    logger.debug("Partitioned %dx%d grid into %d nodes", grid.width, grid.height, len(tree.nodes))
    return tree


def range_blocks(grid: Grid, policy: PartitionPolicy) -> list[Block]:
    return partition(grid, policy).leaves()
