import numpy as np
import pytest

from qfic.errors import InvalidBlockSide, OutOfBounds, UnsupportedDimensions
from qfic.grid import Block, Grid, Orientation, apply_orientation


def arange_grid(width: int = 8, height: int = 6) -> Grid:
    return Grid(np.arange(width * height).reshape((height, width)))


class TestGrid:
    def test_dimensions(self):
        grid = arange_grid(8, 6)
        assert (grid.width, grid.height) == (8, 6)

    def test_empty_pixels_are_rejected(self):
        with pytest.raises(UnsupportedDimensions):
            Grid(np.zeros((0, 4)))
        with pytest.raises(UnsupportedDimensions):
            Grid(np.zeros(4))

    def test_sample_is_row_major(self):
        grid = arange_grid(8, 6)
        assert grid.sample(3, 2) == 2 * 8 + 3

    @pytest.mark.parametrize("x, y", [(8, 0), (0, 6), (-1, 0), (0, -1)])
    def test_sample_out_of_bounds(self, x, y):
        with pytest.raises(OutOfBounds):
            arange_grid(8, 6).sample(x, y)

    def test_extract_copies(self):
        grid = arange_grid()
        block = grid.extract(Block(2, 1, 2))
        np.testing.assert_array_equal(block, [[10, 11], [18, 19]])
        block[0, 0] = -1
        assert grid.sample(2, 1) == 10

    def test_extract_out_of_bounds(self):
        with pytest.raises(OutOfBounds):
            arange_grid(8, 6).extract(Block(4, 4, 4))

    def test_downsample_averages_2x2_cells(self):
        grid = Grid(np.array([
            [0, 2, 4, 4],
            [2, 4, 8, 0],
            [1, 1, 0, 0],
            [1, 1, 0, 4],
        ]))
        np.testing.assert_array_equal(grid.downsample(Block(0, 0, 4)), [[2, 4], [1, 1]])

    def test_downsample_odd_side(self):
        with pytest.raises(InvalidBlockSide):
            arange_grid().downsample(Block(0, 0, 3))

    def test_write_block(self):
        grid = Grid.filled(4, 4, 0.)
        grid.write_block(Block(2, 0, 2), np.ones((2, 2)))
        assert grid.pixels.sum() == 4
        assert grid.sample(3, 1) == 1

    def test_write_block_shape_mismatch(self):
        with pytest.raises(InvalidBlockSide):
            Grid.filled(4, 4).write_block(Block(0, 0, 2), np.ones((3, 3)))

    def test_to_pixels_rounds_and_clips(self):
        grid = Grid(np.array([[-3., 0.4, 0.6, 300.]]))
        np.testing.assert_array_equal(grid.to_pixels(), [[0, 0, 1, 255]])

    def test_block_quadrants(self):
        assert Block(4, 8, 4).quadrants() == (Block(4, 8, 2), Block(6, 8, 2), Block(4, 10, 2), Block(6, 10, 2))

    def test_block_side_must_be_positive(self):
        with pytest.raises(InvalidBlockSide):
            Block(0, 0, 0)


class TestOrientation:
    buffer = np.array([
        [1, 2],
        [3, 4],
    ])

    @pytest.mark.parametrize("orientation, expected", [
        (Orientation.IDENTITY, [[1, 2], [3, 4]]),
        (Orientation.ROT90, [[2, 4], [1, 3]]),
        (Orientation.ROT180, [[4, 3], [2, 1]]),
        (Orientation.ROT270, [[3, 1], [4, 2]]),
        (Orientation.FLIP_H, [[2, 1], [4, 3]]),
        (Orientation.FLIP_V, [[3, 4], [1, 2]]),
        (Orientation.TRANSPOSE, [[1, 3], [2, 4]]),
        (Orientation.ANTI_TRANSPOSE, [[4, 2], [3, 1]]),
    ])
    def test_orientations(self, orientation, expected):
        np.testing.assert_array_equal(apply_orientation(self.buffer, orientation), expected)

    def test_all_orientations_are_distinct(self):
        buffer = np.arange(9).reshape((3, 3))
        results = {apply_orientation(buffer, o).tobytes() for o in Orientation}
        assert len(results) == 8

    def test_does_not_modify_input(self):
        buffer = self.buffer.copy()
        res = apply_orientation(buffer, Orientation.ROT90)
        res[0, 0] = 100
        np.testing.assert_array_equal(buffer, self.buffer)

    def test_applies_to_last_two_axes(self):
        stack = np.arange(2 * 9).reshape((2, 3, 3))
        res = apply_orientation(stack, Orientation.ROT270)
        for i in range(2):
            np.testing.assert_array_equal(res[i], apply_orientation(stack[i], Orientation.ROT270))

    def test_unknown_orientation(self):
        with pytest.raises(ValueError):
            apply_orientation(self.buffer, 8)
