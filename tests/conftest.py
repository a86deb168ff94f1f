import numpy as np
import pytest

from qfic import generate
from qfic.quadtree.encoder import QuadtreeEncoder
from qfic.quadtree.partition import PartitionPolicy

IMG_SIZE = 64


@pytest.fixture
def circle_img() -> np.ndarray:
    return generate.circle(IMG_SIZE, 16)


@pytest.fixture
def smooth_circle_img() -> np.ndarray:
    return generate.circle(IMG_SIZE, 16, supersample=8)


@pytest.fixture
def square_img() -> np.ndarray:
    return generate.square(IMG_SIZE, 32)


@pytest.fixture
def natural_img() -> np.ndarray:
    """Gradient with smooth texture and a soft disk, stands in for a photo."""
    y, x = np.mgrid[0:IMG_SIZE, 0:IMG_SIZE].astype(np.float64)
    img = 40. + 1.2 * x + 0.8 * y + 30. * np.sin(x / 5.) * np.cos(y / 7.)
    img += 0.3 * generate.circle(IMG_SIZE, 12, supersample=4)
    return img.clip(0, 255).astype(np.uint8)


@pytest.fixture
def policy() -> PartitionPolicy:
    return PartitionPolicy(min_range_side=4, max_range_side=16, variance_tolerance=1.)


@pytest.fixture
def encoder(policy) -> QuadtreeEncoder:
    return QuadtreeEncoder(policy, domain_step=1)
