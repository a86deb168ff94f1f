import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable

import numpy as np
from numba import njit

from qfic.errors import NoCandidateFound
from qfic.grid import NUM_ORIENTATIONS, Block, Grid
from qfic.quadtree.common import TransformCode
from qfic.quadtree.domains import DomainCandidates, DomainPool

logger = logging.getLogger(__name__)

DEFAULT_MAX_SCALE = 0.9
ZERO_TOLERANCE = 1e-6
# slack for rounding when comparing an analytic lower bound with a computed error
PRUNE_MARGIN = 1e-7

ProgressFn = Callable[[int, int], None]

"""
For range R and downsampled, oriented domain D (both with n pixels) the least squares fit of R ~ s * D + o is
    s = cov(R, D) / var(D),  o = mean(R) - s * mean(D)
and its mean squared error is var(R) - 2 * s * cov(R, D) + s^2 * var(D). After clamping |s| to max_scale the same
expressions still give the optimal offset and its error.

Pruning: by Cauchy-Schwarz cov(R, D) <= std(R) * std(D), so for any |s| <= max_scale
    err >= (std(R) - |s| * std(D))^2 >= max(0, std(R) - max_scale * std(D))^2
Domains are bucketed by std(D), a whole bucket is skipped once this bound for its largest std exceeds the best error.
"""


@njit(nogil=True)
def _fit(cov: float, domain_mean: float, domain_variance: float, range_mean: float, range_variance: float,
         max_scale: float) -> tuple[float, float, float]:
    if domain_variance < ZERO_TOLERANCE:
        s = 0.
    else:
        s = cov / domain_variance
        if s > max_scale:
            s = max_scale
        elif s < -max_scale:
            s = -max_scale
    o = range_mean - s * domain_mean
    err = range_variance - 2. * s * cov + s * s * domain_variance
    if err < 0.:
        err = 0.
    return s, o, err


@njit(nogil=True)
def _find_min_err_candidate(buffers: np.ndarray, permutations: np.ndarray, means: np.ndarray,
                            variances: np.ndarray, indices: np.ndarray, range_flat: np.ndarray,
                            range_mean: float, range_variance: float,
                            max_scale: float) -> tuple[int, float, float, float]:
    n = range_flat.shape[0]
    best_k = -1
    best_err = np.inf
    best_s = 0.
    best_o = range_mean

    for t in range(indices.shape[0]):
        k = indices[t]
        pos = k // NUM_ORIENTATIONS
        perm = permutations[k % NUM_ORIENTATIONS]
        domain_mean = means[pos]
        cov = 0.
        for p in range(n):
            cov += (buffers[pos, perm[p]] - domain_mean) * (range_flat[p] - range_mean)
        cov /= n

        s, o, err = _fit(cov, domain_mean, variances[pos], range_mean, range_variance, max_scale)
        # strict comparison keeps the first candidate among equal ones
        if err < best_err:
            best_k = k
            best_err = err
            best_s = s
            best_o = o

    return best_k, best_err, best_s, best_o


@dataclass(frozen=True)
class Match:
    code: TransformCode
    error: float  # mean squared error of the fitted transform
    evaluated: int  # number of candidates scored exactly


class Matcher:
    def __init__(self, pool: DomainPool, max_scale: float = DEFAULT_MAX_SCALE,
                 use_prefilter: bool = True, prefilter_tolerance: float = 0.) -> None:
        """
        Args:
            pool (DomainPool): shared, read-only domain candidates
            max_scale (float): contrast clamp bound, |scale| of every emitted transform is <= max_scale < 1
            use_prefilter (bool): skip std-dev buckets that can't contain a better candidate
            prefilter_tolerance (float): additional mse slack for skipping buckets, with 0 the pruned search
                selects exactly the same candidate as the exhaustive one, otherwise the selected error is at most
                this much above the true minimum
        """
        if not 0. <= max_scale < 1.:
            raise ValueError(f"max scale must lie in [0, 1), got {max_scale}")
        if prefilter_tolerance < 0:
            raise ValueError(f"prefilter tolerance must be non-negative, got {prefilter_tolerance}")
        self.pool = pool
        self.max_scale = max_scale
        self.use_prefilter = use_prefilter
        self.prefilter_tolerance = prefilter_tolerance

    def match(self, grid: Grid, range_block: Block, channel: int = 0) -> Match:
        candidates = self.pool.candidates_for(range_block.side)
        if len(candidates) == 0:
            raise NoCandidateFound(range_block.side)

        range_flat = grid.extract(range_block).reshape(-1)
        range_mean = float(range_flat.mean())
        range_variance = float(range_flat.var())

        if self.use_prefilter:
            k, err, s, o, evaluated = self._search_pruned(candidates, range_flat, range_mean, range_variance)
        else:
            k, err, s, o = _find_min_err_candidate(
                candidates.buffers, candidates.permutations, candidates.means, candidates.variances,
                candidates.all_indices(), range_flat, range_mean, range_variance, self.max_scale)
            evaluated = len(candidates)

        best = candidates[int(k)]
        code = TransformCode(range_block, best.block, best.orientation, float(s), float(o), channel)
        logger.debug("Range %s -> domain %s %s, s=%.4f o=%.2f mse=%.3f (%d/%d scored)",
                     range_block, best.block, best.orientation.name, s, o, err, evaluated, len(candidates))
        return Match(code, float(err), evaluated)

    def _search_pruned(self, candidates: DomainCandidates, range_flat: np.ndarray, range_mean: float,
                       range_variance: float) -> tuple[int, float, float, float, int]:
        range_std = np.sqrt(range_variance)
        best_k, best_err, best_s, best_o = -1, np.inf, 0., range_mean
        evaluated = 0

        # the lower bound only grows towards flatter buckets, so the first skipped bucket ends the search
        for key in sorted(candidates.buckets, reverse=True):
            bound = max(0., range_std - self.max_scale * candidates.bucket_upper_std(key)) ** 2
            if bound > best_err + PRUNE_MARGIN * (1. + best_err) - self.prefilter_tolerance:
                break
            indices = candidates.buckets[key]
            k, err, s, o = _find_min_err_candidate(
                candidates.buffers, candidates.permutations, candidates.means, candidates.variances,
                indices, range_flat, range_mean, range_variance, self.max_scale)
            evaluated += len(indices)
            if err < best_err or (err == best_err and k < best_k):
                best_k, best_err, best_s, best_o = k, err, s, o

        return best_k, best_err, best_s, best_o, evaluated

    def match_all(self, grid: Grid, blocks: list[Block], channel: int = 0, workers: int | None = None,
                  progress: ProgressFn | None = None) -> list[Match]:
        """Matches every block, result keeps the order of blocks regardless of the number of workers."""
        self.pool.prepare({b.side for b in blocks})
        total_area = sum(b.area for b in blocks)
        covered = 0

        if workers == 1:
            res = []
            for block in blocks:
                res.append(self.match(grid, block, channel))
                covered += block.area
                if progress is not None:
                    progress(covered, total_area)
            return res

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self.match, grid, block, channel): block for block in blocks}
            for future in as_completed(futures):
                future.result()
                covered += futures[future].area
                if progress is not None:
                    progress(covered, total_area)
            return [future.result() for future in futures]
