"""
Shared test fixtures for the marked point process optimizer tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mpp.configuration import Configuration
from mpp.energy import EnergyContext
from mpp.geometry import BoundingBox
from mpp.kernels import MarkPrior
from mpp.marks import Ellipse
from mpp.random_source import RandomSource


def make_ellipse(identifier, x, y, a=3.0, b=None, angle=0.0, shell=0.2):
    return Ellipse(identifier, (x, y, 0.0), (a, a if b is None else b), angle=angle, shell=shell)


@pytest.fixture
def planar_domain():
    """64x64 plane at z=0."""
    return BoundingBox((0.0, 0.0, 0.0), (63.0, 63.0, 0.0))


@pytest.fixture
def planar_prior(planar_domain):
    return MarkPrior(domain=planar_domain, mark_type="ellipse", min_radius=2.0, max_radius=6.0)


@pytest.fixture
def random_source():
    return RandomSource(1234)


@pytest.fixture
def empty_configuration():
    return Configuration()


@pytest.fixture
def scattered_ellipses():
    """Twelve ellipses on a loose grid; neighbours along x overlap."""
    marks = []
    identifier = 0
    for row in range(3):
        for col in range(4):
            marks.append(make_ellipse(identifier, 8.0 + col * 7.0, 8.0 + row * 20.0, a=4.0, b=3.0))
            identifier += 1
    return marks


@pytest.fixture
def disc_image():
    """48x48 image with two bright discs (radius 5) on a dark background."""
    shape = (48, 48)
    grid = np.indices(shape).astype(float)
    image = np.zeros(shape)
    for cx, cy in [(14.0, 14.0), (32.0, 30.0)]:
        image[(grid[0] - cx) ** 2 + (grid[1] - cy) ** 2 <= 25.0] = 1.0
    return image


@pytest.fixture
def disc_context(disc_image):
    return EnergyContext(image=disc_image)
