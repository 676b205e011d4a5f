import enum
import logging
from dataclasses import dataclass

import numpy as np

from src.util.errors import EngineError
from src.ScaleSpace.image_pyramid import (SIFT_SIGMA, SIFT_INIT_SIGMA, compute_number_of_octaves,
                                          generate_gaussian_kernel_sigmas, create_base_image,
                                          downsample_for_next_octave, build_octave, build_dog_octave)
from src.ScaleSpace.find_extrema_pixel import (find_scale_space_extrema, compute_gradient_images,
                                               compute_keypoint_orientations)
from src.ScaleSpace.generate_descriptors import generate_descriptor

logger = logging.getLogger(__name__)


class OctaveStatus(enum.Enum):
    """
    组切换的结果

    EXHAUSTED 表示金字塔正常结束，不是失败；真正的失败以 EngineError 抛出。
    """
    OK = "ok"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Keypoint:
    """
    检测到的关键点

    属性:
    x, y (float): 以输入图像像素计的位置
    sigma (float): 以输入图像像素计的尺度
    octave (int): 检测到该关键点的组
    ix, iy (int): 以本组像素计的整数位置
    is_ (int): 整数层序号
    s (float): 带小数的层序号
    """
    x: float
    y: float
    sigma: float
    octave: int = 0
    ix: int = 0
    iy: int = 0
    is_: int = 0
    s: float = 0.0

    @property
    def scale(self):
        return self.sigma


class SiftFilter:
    """
    增量式SIFT尺度空间，每次处理一组

    内存中只保留当前组。detect_keypoints() 返回的关键点属于当前组，
    必须在调用 advance_octave() 之前用完（方向、描述符）。

    用法:
        sift_filter = SiftFilter(width, height)
        status = sift_filter.init_first_octave(image)
        while status is OctaveStatus.OK:
            for keypoint in sift_filter.detect_keypoints():
                for angle in sift_filter.orientations_for(keypoint):
                    descriptor = sift_filter.descriptor_for(keypoint, angle)
            status = sift_filter.advance_octave()
    """

    def __init__(self, width, height, num_octaves=-1, num_levels=3, first_octave=-1,
                 edge_threshold=10.0, peak_threshold=0.0):
        if num_levels < 1:
            raise EngineError("number of levels per octave must be positive")
        if edge_threshold < 0 or peak_threshold < 0:
            raise EngineError("thresholds must be non-negative")

        self.width = width
        self.height = height
        self.first_octave = first_octave
        self.edge_threshold = edge_threshold
        self.peak_threshold = peak_threshold

        self.S = num_levels
        self.s_min = -1
        self.s_max = num_levels + 1
        self.sigma0 = SIFT_SIGMA * 2.0 ** (1.0 / num_levels)
        self.sigman = SIFT_INIT_SIGMA

        if num_octaves < 0:
            num_octaves = compute_number_of_octaves(width, height, first_octave)
        self.num_octaves = num_octaves
        self.last_octave = first_octave + num_octaves - 1

        self._kernel_sigmas = generate_gaussian_kernel_sigmas(self.sigma0, self.S, self.s_min, self.s_max)
        self._octave_index = first_octave
        self._gaussian_octave = None
        self._dog_octave = None
        self._gradients = {}

    # ------------------------------------------------------------------
    # 组游标

    @property
    def octave_index(self):
        return self._octave_index

    @property
    def num_levels(self):
        """每组导出的层数 (s = 0 .. S-1)"""
        return self.S

    @property
    def octave_width(self):
        self._require_octave()
        return self._gaussian_octave[0].shape[1]

    @property
    def octave_height(self):
        self._require_octave()
        return self._gaussian_octave[0].shape[0]

    def init_first_octave(self, image):
        """
        由完整图像构建第一组

        参数:
        image (np.ndarray): (height, width) 灰度，范围 [0, 255]

        返回:
        OctaveStatus: 金字塔一组都没有时为 EXHAUSTED
        """
        image = np.asarray(image, dtype=np.float32)
        if image.shape != (self.height, self.width):
            raise EngineError(f"image shape {image.shape} does not match {self.width}x{self.height}")
        self._release_octave()
        if self.num_octaves < 1:
            return OctaveStatus.EXHAUSTED

        base_image = create_base_image(image, self.first_octave, self.sigma0, self.S, self.s_min, self.sigman)
        if base_image is None or min(base_image.shape) < 1:
            return OctaveStatus.EXHAUSTED

        self._octave_index = self.first_octave
        self._set_octave(base_image)
        return OctaveStatus.OK

    def advance_octave(self):
        """
        切换到下一组

        返回:
        OctaveStatus: 最后一组之后或下一组为空时为 EXHAUSTED
        """
        self._require_octave()
        if self._octave_index >= self.last_octave:
            return OctaveStatus.EXHAUSTED

        # 第 s = S-1 层的模糊是第 s_min 层的两倍
        level = self._gaussian_octave[self.S - 1 - self.s_min]
        if min(level.shape) < 2:
            return OctaveStatus.EXHAUSTED

        base_image = downsample_for_next_octave(level)
        self._octave_index += 1
        self._set_octave(base_image)
        return OctaveStatus.OK

    def current_octave_level(self, s):
        """当前组的第 s 层高斯图像 (s_min <= s <= s_max)"""
        self._require_octave()
        if not self.s_min <= s <= self.s_max:
            raise EngineError(f"level {s} outside [{self.s_min}, {self.s_max}]")
        return self._gaussian_octave[s - self.s_min]

    # ------------------------------------------------------------------
    # 特征

    def detect_keypoints(self):
        """
        检测当前组的关键点

        返回:
        list: Keypoint 记录，位置和尺度以输入图像像素计
        """
        self._require_octave()
        extrema = find_scale_space_extrema(self._dog_octave, self.peak_threshold, self.edge_threshold)

        xper = 2.0 ** self._octave_index
        keypoints = []
        for extremum in extrema:
            is_ = extremum['layer'] + self.s_min
            s = is_ + extremum['ds']
            keypoints.append(Keypoint(
                x=float(extremum['x'] * xper),
                y=float(extremum['y'] * xper),
                sigma=float(self.sigma0 * 2.0 ** (s / self.S) * xper),
                octave=self._octave_index,
                ix=extremum['col'],
                iy=extremum['row'],
                is_=is_,
                s=float(s)
            ))
        logger.debug(f"octave {self._octave_index}: {len(keypoints)} keypoints")
        return keypoints

    def orientations_for(self, keypoint):
        """
        当前组中一个关键点的主方向

        返回:
        list: 0 到 4 个弧度角，最强的在前
        """
        self._check_keypoint(keypoint)
        if not self.s_min + 1 <= keypoint.is_ <= self.s_max - 2:
            return []
        x, y, sigma = self._to_octave_coordinates(keypoint)
        magnitude, orientation = self._gradient(keypoint.is_)
        return compute_keypoint_orientations(x, y, sigma, magnitude, orientation)

    def descriptor_for(self, keypoint, angle):
        """当前组中一个关键点在给定方向下的 128 维描述符"""
        self._check_keypoint(keypoint)
        x, y, sigma = self._to_octave_coordinates(keypoint)
        is_ = min(max(keypoint.is_, self.s_min + 1), self.s_max - 2)
        magnitude, orientation = self._gradient(is_)
        return generate_descriptor(x, y, sigma, angle, magnitude, orientation)

    # ------------------------------------------------------------------

    def _set_octave(self, base_image):
        self._gaussian_octave = build_octave(base_image, self._kernel_sigmas)
        self._dog_octave = build_dog_octave(self._gaussian_octave)
        self._gradients = {}

    def _release_octave(self):
        self._gaussian_octave = None
        self._dog_octave = None
        self._gradients = {}

    def _require_octave(self):
        if self._gaussian_octave is None:
            raise EngineError("no octave has been processed yet")

    def _check_keypoint(self, keypoint):
        self._require_octave()
        if keypoint.octave != self._octave_index:
            raise EngineError(f"keypoint of octave {keypoint.octave} used in octave {self._octave_index}")

    def _to_octave_coordinates(self, keypoint):
        xper = 2.0 ** self._octave_index
        return keypoint.x / xper, keypoint.y / xper, keypoint.sigma / xper

    def _gradient(self, s):
        if s not in self._gradients:
            self._gradients[s] = compute_gradient_images(self.current_octave_level(s))
        return self._gradients[s]
