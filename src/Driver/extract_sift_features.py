import enum
import logging
from dataclasses import dataclass

from src.util.errors import EngineError
from src.util.file_meta import SinkRole
from src.ScaleSpace.sift_filter import OctaveStatus
from src.Driver.save_gss import save_gss

logger = logging.getLogger(__name__)


def expand_keypoint(sift_filter, keypoint, frames_sink, descriptors_sink):
    """
    写出一个关键点的每个带方向实例

    参数:
    sift_filter (SiftFilter): 位于关键点所在组的引擎
    keypoint (Keypoint): 当前组的关键点
    frames_sink (Sink): 接收 "x y scale orientation" 记录
    descriptors_sink (Sink): 接收 128 维描述符记录

    返回:
    int: (关键点, 方向) 对的数量，没有方向时为 0

    frame 和描述符成对写出，第 n 行 frame 与第 n 行描述符总是对应同一实例。
    """
    angles = sift_filter.orientations_for(keypoint)
    for angle in angles:
        descriptor = sift_filter.descriptor_for(keypoint, angle)
        if frames_sink.active:
            frames_sink.write_frame(keypoint, angle)
        if descriptors_sink.active:
            descriptors_sink.write_descriptor(descriptor)
    return len(angles)


class OctaveState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    FIRST_OCTAVE = "first_octave"
    SUBSEQUENT_OCTAVE = "subsequent_octave"
    EXHAUSTED = "exhausted"


@dataclass
class ExtractionSummary:
    num_octaves: int = 0
    num_keypoints: int = 0
    num_frames: int = 0
    num_gss_files: int = 0


class OctaveStateMachine:
    """
    驱动一张图像依次经过尺度空间的各组

    状态:
    UNINITIALIZED -> FIRST_OCTAVE -> SUBSEQUENT_OCTAVE (重复) -> EXHAUSTED

    进入 FIRST_OCTAVE 或 SUBSEQUENT_OCTAVE 时: 导出本组（尺度空间输出激活时），
    检测关键点并逐个展开。引擎返回 EXHAUSTED 时循环正常结束；
    引擎和 I/O 失败会抛出，只中止当前图像。
    """

    def __init__(self, sift_filter, sinks, basename):
        self.sift_filter = sift_filter
        self.sinks = sinks
        self.basename = basename
        self.state = OctaveState.UNINITIALIZED
        self.summary = ExtractionSummary()

    def advance(self, image=None):
        """
        执行一次状态切换

        参数:
        image (np.ndarray): 完整图像，只在第一次切换时使用

        返回:
        OctaveState: 新状态
        """
        if self.state is OctaveState.EXHAUSTED:
            return self.state

        if self.state is OctaveState.UNINITIALIZED:
            if image is None:
                raise EngineError("the first octave needs the image")
            status = self.sift_filter.init_first_octave(image)
            next_state = OctaveState.FIRST_OCTAVE
        else:
            status = self.sift_filter.advance_octave()
            next_state = OctaveState.SUBSEQUENT_OCTAVE

        if status is OctaveStatus.EXHAUSTED:
            logger.debug("sift: no more octaves")
            self.state = OctaveState.EXHAUSTED
            return self.state
        if status is not OctaveStatus.OK:
            raise EngineError(f"unexpected octave status {status!r}")

        self.state = next_state
        self._process_current_octave()
        return self.state

    def run(self, image):
        """一直切换到引擎的组用尽，返回 ExtractionSummary"""
        while self.state is not OctaveState.EXHAUSTED:
            self.advance(image)
        return self.summary

    def _process_current_octave(self):
        sift_filter = self.sift_filter
        logger.debug(f"sift: next octave ({sift_filter.octave_index})")
        self.summary.num_octaves += 1

        # 1. 可选: 保存高斯尺度空间
        gss_sink = self.sinks[SinkRole.GSS]
        if gss_sink.active:
            self.summary.num_gss_files += save_gss(sift_filter, gss_sink, self.basename)

        # 2. 运行检测器
        keypoints = sift_filter.detect_keypoints()
        logger.debug(f"sift: {len(keypoints)} keypoints")
        self.summary.num_keypoints += len(keypoints)

        # 3. 方向和描述符，在切换到下一组之前全部用完
        frames_sink = self.sinks[SinkRole.FRAMES]
        descriptors_sink = self.sinks[SinkRole.DESCRIPTORS]
        for keypoint in keypoints:
            self.summary.num_frames += expand_keypoint(sift_filter, keypoint, frames_sink, descriptors_sink)


def extract_sift_features(sift_filter, image, sinks, basename):
    """
    提取一张图像的特征并写入其输出

    参数:
    sift_filter (SiftFilter): 按图像尺寸创建的引擎
    image (np.ndarray): 浮点图像，灰度范围 [0, 255]
    sinks (SinkTable): 该图像已打开的输出
    basename (str): 尺度空间文件名使用的基本名

    返回:
    ExtractionSummary: 组数、关键点数和带方向 frame 数
    """
    return OctaveStateMachine(sift_filter, sinks, basename).run(image)
