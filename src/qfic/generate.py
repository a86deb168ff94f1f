import numpy as np

from qfic.utils import MAX_GRAY


def _render(size: int, inside, supersample: int) -> np.ndarray:
    """Renders inside(dx, dy) -> bool mask with supersample^2 samples per pixel, dx/dy relative to the centre."""
    center = size // 2
    coords = (np.arange(size * supersample) + 0.5) / supersample - 0.5 - center
    dy, dx = np.meshgrid(coords, coords, indexing="ij")
    coverage = inside(dx, dy).astype(np.float64)
    coverage = coverage.reshape((size, supersample, size, supersample)).mean(axis=(1, 3))
    return np.rint(coverage * MAX_GRAY).astype(np.uint8)


def circle(size: int, radius: float, supersample: int = 1) -> np.ndarray:
    """White disk centred in a black square image, supersample > 1 antialiases the edge."""
    return _render(size, lambda dx, dy: np.sqrt(dx * dx + dy * dy) <= radius, supersample)


def square(size: int, square_size: int, supersample: int = 1) -> np.ndarray:
    """White square centred in a black square image."""
    half = square_size // 2
    return _render(size, lambda dx, dy: (np.abs(dx) <= half) & (np.abs(dy) <= half), supersample)


def flat(size: int, value: int) -> np.ndarray:
    return np.full((size, size), value, dtype=np.uint8)
