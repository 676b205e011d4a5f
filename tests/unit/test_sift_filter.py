"""
Unit tests for the incremental scale space and the detector engine
"""

import math
import os
import sys

import numpy as np
import pytest

project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from src.util.errors import EngineError
from src.ScaleSpace.image_pyramid import (compute_number_of_octaves, generate_gaussian_kernel_sigmas,
                                          create_base_image, upsample_by_two, build_octave,
                                          build_dog_octave)
from src.ScaleSpace.find_extrema_pixel import (compute_gradient_at_center_pixel, compute_hessian_at_center_pixel,
                                               compute_gradient_images, compute_keypoint_orientations)
from src.ScaleSpace.generate_descriptors import normalize_descriptor
from src.ScaleSpace.sift_filter import Keypoint, OctaveStatus, SiftFilter


class TestImagePyramid:
    """Test cases for the pyramid geometry"""

    def test_number_of_octaves(self):
        assert compute_number_of_octaves(512, 512, -1) == 7
        assert compute_number_of_octaves(512, 640, 0) == 6
        assert compute_number_of_octaves(64, 64, -1) == 4

    def test_number_of_octaves_small_images(self):
        """Tiny images still get one octave, empty ones none"""
        assert compute_number_of_octaves(4, 4, 0) == 1
        assert compute_number_of_octaves(0, 10, -1) == 0

    def test_kernel_sigmas_reach_target_blur(self):
        """Accumulating the incremental blurs from s_min gives sigma0 * k^s_max"""
        num_levels = 3
        sigma0 = 1.6 * 2 ** (1.0 / num_levels)
        sigmas = generate_gaussian_kernel_sigmas(sigma0, num_levels, -1, num_levels + 1)
        assert len(sigmas) == num_levels + 2
        total = math.sqrt((sigma0 * 2 ** (-1.0 / num_levels)) ** 2 + np.sum(sigmas ** 2))
        assert total == pytest.approx(sigma0 * 2 ** ((num_levels + 1.0) / num_levels))

    def test_base_image_resolution(self):
        image = np.zeros((10, 12), dtype=np.float32)
        assert create_base_image(image, -1, 2.0, 3, -1).shape == (20, 24)
        assert create_base_image(image, 0, 2.0, 3, -1).shape == (10, 12)
        assert create_base_image(image, 1, 2.0, 3, -1).shape == (5, 6)
        assert create_base_image(image, 4, 2.0, 3, -1) is None

    def test_upsample_keeps_input_pixels(self):
        image = np.array([[0.0, 2.0], [4.0, 6.0]], dtype=np.float32)
        np.testing.assert_array_equal(upsample_by_two(image), [
            [0.0, 1.0, 2.0, 2.0],
            [2.0, 3.0, 4.0, 4.0],
            [4.0, 5.0, 6.0, 6.0],
            [4.0, 5.0, 6.0, 6.0],
        ])

    def test_octave_levels(self):
        octave = build_octave(np.ones((8, 8), dtype=np.float32), [1.0, 1.0, 1.0])
        assert len(octave) == 4
        dog = build_dog_octave(octave)
        assert len(dog) == 3
        np.testing.assert_allclose(dog[0], 0, atol=1e-5)


class TestExtremumMath:
    """Test cases for the finite differences of a 3x3x3 cube"""

    def test_gradient_and_hessian_of_quadratic(self):
        s, y, x = np.meshgrid([-1, 0, 1], [-1, 0, 1], [-1, 0, 1], indexing='ij')
        cube = 2.0 * x ** 2 + 3.0 * y ** 2 + s ** 2 + x * y + 0.5 * x
        np.testing.assert_allclose(compute_gradient_at_center_pixel(cube), [0.5, 0.0, 0.0])
        np.testing.assert_allclose(compute_hessian_at_center_pixel(cube),
                                   [[4.0, 1.0, 0.0], [1.0, 6.0, 0.0], [0.0, 0.0, 2.0]])

    def test_gradient_images(self):
        ramp = np.tile(np.arange(8, dtype=np.float32), (8, 1))
        magnitude, orientation = compute_gradient_images(ramp)
        np.testing.assert_allclose(magnitude, 1.0)
        np.testing.assert_allclose(orientation, 0.0)

    def test_single_dominant_orientation(self):
        """A vertical ramp has one orientation, pointing down the rows"""
        ramp = np.tile(np.arange(32, dtype=np.float32)[:, None], (1, 32))
        magnitude, orientation = compute_gradient_images(ramp)
        angles = compute_keypoint_orientations(16.0, 16.0, 2.0, magnitude, orientation)
        assert len(angles) == 1
        assert angles[0] == pytest.approx(math.pi / 2, abs=2 * math.pi / 36)

    def test_flat_region_has_no_orientation(self):
        magnitude, orientation = compute_gradient_images(np.ones((16, 16), dtype=np.float32))
        assert compute_keypoint_orientations(8.0, 8.0, 1.5, magnitude, orientation) == []

    def test_normalize_descriptor_clips(self):
        vector = np.zeros(128)
        vector[0] = 10.0
        vector[1] = 1.0
        normalized = normalize_descriptor(vector)
        assert np.linalg.norm(normalized) == pytest.approx(1.0)
        # the dominant component is clipped, so the ratio drops from 10 to about 2
        assert normalized[0] / normalized[1] == pytest.approx(0.2 * math.sqrt(101), rel=1e-6)


class TestSiftFilter:
    """Test cases for the octave cursor of SiftFilter"""

    def test_octave_sizes(self):
        """A 64x64 image upsampled once gives 4 octaves of decreasing size"""
        image = np.zeros((64, 64), dtype=np.float32)
        sift_filter = SiftFilter(64, 64)
        assert sift_filter.num_octaves == 4

        widths = []
        status = sift_filter.init_first_octave(image)
        while status is OctaveStatus.OK:
            widths.append((sift_filter.octave_index, sift_filter.octave_width, sift_filter.octave_height))
            status = sift_filter.advance_octave()
        assert widths == [(-1, 128, 128), (0, 64, 64), (1, 32, 32), (2, 16, 16)]
        assert sift_filter.advance_octave() is OctaveStatus.EXHAUSTED

    def test_explicit_octave_count(self):
        sift_filter = SiftFilter(64, 64, num_octaves=2, first_octave=0)
        assert sift_filter.init_first_octave(np.zeros((64, 64))) is OctaveStatus.OK
        assert sift_filter.advance_octave() is OctaveStatus.OK
        assert sift_filter.advance_octave() is OctaveStatus.EXHAUSTED

    def test_zero_octaves(self):
        """No octave is not an error, the first transition just reports exhaustion"""
        sift_filter = SiftFilter(16, 16, num_octaves=0)
        assert sift_filter.init_first_octave(np.zeros((16, 16))) is OctaveStatus.EXHAUSTED

    def test_first_octave_past_image_size(self):
        sift_filter = SiftFilter(8, 8, num_octaves=1, first_octave=4)
        assert sift_filter.init_first_octave(np.zeros((8, 8))) is OctaveStatus.EXHAUSTED

    def test_shape_mismatch(self):
        sift_filter = SiftFilter(16, 8)
        with pytest.raises(EngineError) as info:
            sift_filter.init_first_octave(np.zeros((16, 8)))
        assert info.value.code == 201

    def test_advance_before_init(self):
        with pytest.raises(EngineError):
            SiftFilter(16, 16).advance_octave()

    def test_invalid_parameters(self):
        with pytest.raises(EngineError):
            SiftFilter(16, 16, num_levels=0)
        with pytest.raises(EngineError):
            SiftFilter(16, 16, peak_threshold=-1.0)

    def test_level_range(self):
        sift_filter = SiftFilter(16, 16, num_levels=3)
        sift_filter.init_first_octave(np.zeros((16, 16)))
        assert sift_filter.num_levels == 3
        assert sift_filter.current_octave_level(-1).shape == (32, 32)
        assert sift_filter.current_octave_level(4).shape == (32, 32)
        with pytest.raises(EngineError):
            sift_filter.current_octave_level(5)
        with pytest.raises(EngineError):
            sift_filter.current_octave_level(-2)

    def test_flat_image_has_no_keypoints(self):
        sift_filter = SiftFilter(32, 32, first_octave=0, peak_threshold=0.1)
        status = sift_filter.init_first_octave(np.full((32, 32), 128.0))
        while status is OctaveStatus.OK:
            assert sift_filter.detect_keypoints() == []
            status = sift_filter.advance_octave()


class TestFeatures:
    """Test cases for detection, orientations and descriptors on a synthetic blob"""

    def collect(self, image, **options):
        height, width = image.shape
        sift_filter = SiftFilter(width, height, **options)
        features = []
        status = sift_filter.init_first_octave(image)
        while status is OctaveStatus.OK:
            for keypoint in sift_filter.detect_keypoints():
                angles = sift_filter.orientations_for(keypoint)
                descriptors = [sift_filter.descriptor_for(keypoint, angle) for angle in angles]
                features.append((keypoint, angles, descriptors))
            status = sift_filter.advance_octave()
        return features

    def test_blob_is_detected(self, make_blob):
        image = make_blob(width=48, height=48, center=(23.3, 24.7)).astype(np.float32)
        features = self.collect(image, peak_threshold=0.5)
        assert features
        distances = [math.hypot(kp.x - 23.3, kp.y - 24.7) for kp, _, _ in features]
        assert min(distances) < 2.5
        for keypoint, _, _ in features:
            assert keypoint.sigma > 0

    def test_orientations_and_descriptors(self, make_blob):
        image = make_blob(width=48, height=48, center=(20.0, 26.0)).astype(np.float32)
        for keypoint, angles, descriptors in self.collect(image, peak_threshold=0.5):
            assert len(angles) <= 4
            assert all(0 <= angle < 2 * math.pi for angle in angles)
            for descriptor in descriptors:
                assert descriptor.shape == (128,)
                assert descriptor.dtype == np.float32
                assert np.all(np.isfinite(descriptor))
                assert np.all(descriptor >= 0)

    def test_high_peak_threshold_rejects_everything(self, make_blob):
        image = make_blob(width=48, height=48).astype(np.float32)
        assert self.collect(image, peak_threshold=1000.0) == []

    def test_stale_keypoint(self, make_blob):
        """Keypoints must be used before the engine moves to the next octave"""
        sift_filter = SiftFilter(32, 32)
        sift_filter.init_first_octave(make_blob().astype(np.float32))
        stale = Keypoint(10.0, 10.0, 2.0, octave=sift_filter.octave_index)
        sift_filter.advance_octave()
        with pytest.raises(EngineError):
            sift_filter.orientations_for(stale)
        with pytest.raises(EngineError):
            sift_filter.descriptor_for(stale, 0.0)
