import numpy as np
from numba import njit
from PIL import Image

MAX_GRAY = 255


def load_grayscale(src_path: str) -> np.ndarray:
    with Image.open(src_path) as im:
        return np.array(im.convert("L"))


def load_pixels(src_path: str, color: bool = False) -> np.ndarray:
    """Loads image as HxW (grayscale) or HxWx3 (RGB) uint8 array."""
    if not color:
        return load_grayscale(src_path)
    with Image.open(src_path) as im:
        return np.array(im.convert("RGB"))


def save_pixels(pixels: np.ndarray, dst_path: str) -> None:
    if pixels.ndim == 3 and pixels.shape[2] == 1:
        pixels = pixels[..., 0]
    Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8)).save(dst_path)


@njit(nogil=True)
def average_subsample_jit(arr: np.ndarray) -> np.ndarray:
    """ Divides arr into 2x2 squares and averages them, arr must have even sides """
    res = np.empty((arr.shape[0] // 2, arr.shape[1] // 2), dtype=np.float64)
    for i in range(0, arr.shape[0], 2):
        for j in range(0, arr.shape[1], 2):
            s = np.float64(arr[i, j]) + np.float64(arr[i, j + 1]) + np.float64(arr[i + 1, j]) + np.float64(arr[i + 1, j + 1])
            res[i // 2, j // 2] = s / 4.
    return res


def pair_means(img: np.ndarray) -> np.ndarray:
    """Mean of every (not necessarily aligned) 2x2 cell: res[i, j] = mean(img[i:i+2, j:j+2])."""
    x = img.astype(np.float64)
    x = x[:-1, :] + x[1:, :]
    x = x[:, :-1] + x[:, 1:]
    return x / 4


def split_channels(pixels: np.ndarray) -> list[np.ndarray]:
    if pixels.ndim == 2:
        return [pixels]
    if pixels.ndim == 3:
        return [pixels[..., c] for c in range(pixels.shape[2])]
    raise ValueError(f"expected 2d or 3d pixel array, got shape {pixels.shape}")
