"""
Shared fixtures: a scripted detector engine and small image helpers
"""

import os
import sys

import numpy as np
import pytest
from PIL import Image

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(project_root)

from src.util.errors import EngineError
from src.ScaleSpace.sift_filter import Keypoint, OctaveStatus


class FakeSiftFilter:
    """
    Scripted stand-in for SiftFilter

    octaves: one list per octave of (x, y, sigma, angles) tuples
    fail_at: octave number (0-based) whose transition raises EngineError
    levels: callable (octave, level) -> value used to fill current_octave_level
    """

    def __init__(self, octaves, num_levels=2, first_octave=0, width=5, height=4,
                 fail_at=None, levels=None, status_override=None):
        self.octaves = octaves
        self._num_levels = num_levels
        self.first_octave = first_octave
        self.width = width
        self.height = height
        self.fail_at = fail_at
        self.levels = levels or (lambda octave, level: 10 * octave + level)
        self.status_override = status_override
        self.calls = []
        self._cursor = None

    def _transition(self, target):
        if self.fail_at == target:
            raise EngineError(f"octave {target} failed")
        if self.status_override is not None:
            return self.status_override
        if target >= len(self.octaves):
            return OctaveStatus.EXHAUSTED
        self._cursor = target
        return OctaveStatus.OK

    def init_first_octave(self, image):
        self.calls.append(('init',))
        return self._transition(0)

    def advance_octave(self):
        self.calls.append(('advance',))
        return self._transition(self._cursor + 1)

    @property
    def octave_index(self):
        return self.first_octave + self._cursor

    @property
    def num_levels(self):
        return self._num_levels

    @property
    def octave_width(self):
        return self.width

    @property
    def octave_height(self):
        return self.height

    def current_octave_level(self, s):
        return np.full((self.height, self.width), self.levels(self._cursor, s), dtype=np.float32)

    def detect_keypoints(self):
        self.calls.append(('detect', self._cursor))
        return [Keypoint(x, y, sigma, octave=self.octave_index) for x, y, sigma, _ in self.octaves[self._cursor]]

    def orientations_for(self, keypoint):
        self.calls.append(('orientations', self._cursor))
        if keypoint.octave != self.octave_index:
            raise EngineError("stale keypoint")
        for x, y, sigma, angles in self.octaves[self._cursor]:
            if (x, y, sigma) == (keypoint.x, keypoint.y, keypoint.sigma):
                return list(angles)
        return []

    def descriptor_for(self, keypoint, angle):
        return np.full(128, angle, dtype=np.float32)


@pytest.fixture
def fake_filter_factory():
    return FakeSiftFilter


def blob_image(width=32, height=32, center=(15.3, 16.7), sigma=3.0, background=20.0, amplitude=180.0):
    """Bright Gaussian blob on a flat background, uint8"""
    yy, xx = np.mgrid[0:height, 0:width]
    blob = np.exp(-((xx - center[0]) ** 2 + (yy - center[1]) ** 2) / (2 * sigma ** 2))
    return np.clip(background + amplitude * blob, 0, 255).astype(np.uint8)


@pytest.fixture
def make_blob():
    return blob_image


@pytest.fixture
def write_pgm():
    """Write a uint8 array as a binary PGM file and return its path as a string"""
    def _write(path, pixels=None):
        if pixels is None:
            pixels = blob_image()
        Image.fromarray(pixels).save(str(path), format='PPM')
        return str(path)
    return _write


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run the test inside an empty directory, output files land there"""
    monkeypatch.chdir(tmp_path)
    return tmp_path
