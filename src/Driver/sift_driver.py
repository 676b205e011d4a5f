import logging

import numpy as np

from src.util.errors import SiftError, SiftIOError, OutOfMemoryError
from src.util.file_meta import DEFAULT_SINKS, SinkRole, SinkTable, get_basename
from src.util.image_loader import read_header, read_pixels
from src.ScaleSpace.sift_filter import SiftFilter
from src.Driver.extract_sift_features import extract_sift_features

logger = logging.getLogger(__name__)


def write_meta(meta_sink, input_name, descriptors_sink, frames_sink):
    """
    写出一张图像的运行元数据记录

    只列出实际写出的描述符和 frame 文件:

        <sift
          input       = 'image.pgm'
          descriptors = 'image.descr'
          frames      = 'image.frame'
        >
    """
    lines = ["<sift\n", f"  input       = '{input_name}'\n"]
    if descriptors_sink.active:
        lines.append(f"  descriptors = '{descriptors_sink.name}'\n")
    if frames_sink.active:
        lines.append(f"  frames      = '{frames_sink.name}'\n")
    lines.append(">\n")
    meta_sink.write("".join(lines))


class SiftDriver:
    """
    对一批图像运行特征提取

    参数:
    sinks (dict): SinkRole -> FileMeta，所有图像只读共享
    filter_options (dict): SiftFilter 的关键字参数 (num_octaves,
        num_levels, first_octave, edge_threshold, peak_threshold)

    失败只中止当前图像；run() 报告后继续处理下一张。
    """

    def __init__(self, sinks=None, filter_options=None):
        self.sinks = dict(DEFAULT_SINKS)
        if sinks:
            self.sinks.update(sinks)
        self.filter_options = dict(filter_options or {})

    def process_image(self, name):
        """
        提取一张图像的特征

        参数:
        name (str): 输入图像路径

        返回:
        ExtractionSummary: 该图像的统计

        异常:
        SiftError: 图像无法处理；其输出已全部关闭
        """
        # 1. 计算基本名
        basename = get_basename(name)
        logger.info(f"sift: processing '{name}'")
        logger.debug(f"sift: basename is '{basename}'")

        with SinkTable(self.sinks) as sinks:
            # 2. 打开输入
            try:
                stream = open(name, "rb")
            except OSError as e:
                raise SiftIOError(f"Could not open '{name}' for reading.") from e

            with stream:
                # 3. 打开输出
                sinks.open_outputs(basename)

                try:
                    summary = self._extract(stream, sinks, basename)
                finally:
                    # 无论提取成败都写出元数据记录
                    meta_sink = sinks[SinkRole.META]
                    if meta_sink.is_open:
                        write_meta(meta_sink, name, sinks[SinkRole.DESCRIPTORS], sinks[SinkRole.FRAMES])

        logger.info(f"sift: {summary.num_octaves} octaves, {summary.num_keypoints} keypoints, "
                    f"{summary.num_frames} frames")
        return summary

    def _extract(self, stream, sinks, basename):
        # 4. 读取图像
        header = read_header(stream)
        logger.info(f"sift: image is {header.width} by {header.height} pixels")
        try:
            pixels = read_pixels(stream, header)
            image = pixels.astype(np.float32)
        except MemoryError as e:
            raise OutOfMemoryError("Could not allocate enough memory.") from e

        # 5. 逐组处理
        try:
            sift_filter = SiftFilter(header.width, header.height, **self.filter_options)
            return extract_sift_features(sift_filter, image, sinks, basename)
        except MemoryError as e:
            raise OutOfMemoryError("Could not allocate enough memory.") from e

    def run(self, names):
        """
        处理这一批中的每张图像

        返回:
        int: 全部成功为 0，至少一张失败为 1
        """
        exit_code = 0
        for name in names:
            try:
                self.process_image(name)
            except SiftError as err:
                logger.error(f"sift: err: {err} ({err.code})")
                exit_code = 1
        return exit_code
