import numpy as np
from skimage.metrics import mean_squared_error
from skimage.metrics import peak_signal_noise_ratio

from qfic.errors import ImageSizeMismatch
from qfic.grid import Grid
from qfic.utils import MAX_GRAY


def _pixels(first: Grid | np.ndarray, second: Grid | np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    a = first.pixels if isinstance(first, Grid) else np.asarray(first, dtype=np.float64)
    b = second.pixels if isinstance(second, Grid) else np.asarray(second, dtype=np.float64)
    if a.shape != b.shape:
        raise ImageSizeMismatch(f"can't compare images with different sizes ({a.shape} != {b.shape})")
    return a, b


def mse(first: Grid | np.ndarray, second: Grid | np.ndarray) -> float:
    return float(mean_squared_error(*_pixels(first, second)))


def psnr(first: Grid | np.ndarray, second: Grid | np.ndarray, peak: float = MAX_GRAY) -> float:
    """Peak signal-to-noise ratio in dB, infinite for equal images."""
    a, b = _pixels(first, second)
    if np.array_equal(a, b):
        return np.inf
    return float(peak_signal_noise_ratio(a, b, data_range=peak))
