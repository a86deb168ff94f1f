import logging

import numpy as np

from qfic.grid import Grid
from qfic.quadtree.common import Codebook, TransformCode
from qfic.quadtree.domains import DEFAULT_BUCKET_WIDTH, DEFAULT_DOMAIN_STEP, DomainPool
from qfic.quadtree.matcher import DEFAULT_MAX_SCALE, Match, Matcher, ProgressFn
from qfic.quadtree.partition import PartitionPolicy, partition
from qfic.utils import split_channels

logger = logging.getLogger(__name__)

"""
1. partition the image into a quadtree of range blocks:
    - roots are max_range_side squares laid out row by row, image sides must be divisible by max_range_side
    - a block is a leaf when its variance is <= variance_tolerance or it reached min_range_side
2. build domain pool for every range side that occurs among the leaves:
    - domains have twice the range side, are taken every domain_step pixels and are averaged 2x2 down to
      the range side, each one in all 8 orientations
3. for every leaf find the candidate with minimal mse of the contractive fit range ~ s * domain + o,
    leaves are independent and are matched in parallel
"""


class QuadtreeEncoder:
    def __init__(self, partition_policy: PartitionPolicy | None = None, domain_step: int = DEFAULT_DOMAIN_STEP,
                 max_scale: float = DEFAULT_MAX_SCALE, use_prefilter: bool = True,
                 prefilter_tolerance: float = 0., bucket_width: float = DEFAULT_BUCKET_WIDTH,
                 workers: int | None = None, progress: ProgressFn | None = None) -> None:
        """
        Args:
            partition_policy (PartitionPolicy): min/max range side and variance tolerance of the quadtree
            domain_step (int): distance in pixels between neighbouring domain positions
            max_scale (float): contrast clamp bound, must lie in [0, 1)
            use_prefilter (bool): prune domain buckets that can't beat the best match found so far
            prefilter_tolerance (float): mse the pruned search may lose compared to exhaustive search
            bucket_width (float): std-dev width of the prefilter buckets
            workers (int | None): number of matching threads, None lets the executor decide, 1 matches inline
            progress (ProgressFn | None): called with (area_covered, total_area) after every matched block
        """
        if not 0. <= max_scale < 1.:
            raise ValueError(f"max scale must lie in [0, 1), got {max_scale}")
        self.partition_policy = partition_policy if partition_policy is not None else PartitionPolicy()
        self.domain_step = domain_step
        self.max_scale = max_scale
        self.use_prefilter = use_prefilter
        self.prefilter_tolerance = prefilter_tolerance
        self.bucket_width = bucket_width
        self.workers = workers
        self.progress = progress

    def encode(self, img: np.ndarray | Grid) -> Codebook:
        """Encodes HxW or HxWxC image, channels are encoded independently."""
        if isinstance(img, Grid):
            grids = [img]
        else:
            grids = [Grid.from_pixels(channel) for channel in split_channels(np.asarray(img))]

        height, width = grids[0].height, grids[0].width
        # fail before any work is done
        self.partition_policy.check_dimensions(width, height)
        logger.info("Encoding %dx%d image with %d channel(s)", width, height, len(grids))

        codes: list[TransformCode] = []
        for channel, grid in enumerate(grids):
            matches = self.encode_channel(grid, channel, area_offset=channel * width * height,
                                          total_area=len(grids) * width * height)
            codes.extend(m.code for m in matches)

        return Codebook.from_codes(width, height, codes, channels=len(grids))

    def encode_channel(self, grid: Grid, channel: int = 0, area_offset: int = 0,
                       total_area: int | None = None) -> list[Match]:
        blocks = partition(grid, self.partition_policy).leaves()
        logger.info("Channel %d: %d range blocks", channel, len(blocks))

        pool = DomainPool(grid, self.domain_step, self.bucket_width)
        matcher = Matcher(pool, self.max_scale, self.use_prefilter, self.prefilter_tolerance)

        progress = None
        if self.progress is not None:
            total = total_area if total_area is not None else grid.width * grid.height

            def progress(covered: int, _: int):
                self.progress(area_offset + covered, total)

        matches = matcher.match_all(grid, blocks, channel, self.workers, progress)
        if matches:
            logger.info("Channel %d: mean block mse %.3f, %d candidates scored",
                        channel, float(np.mean([m.error for m in matches])), sum(m.evaluated for m in matches))
        return matches
