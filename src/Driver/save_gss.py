import logging

import numpy as np

from src.util.errors import NameTooLongError, OutOfMemoryError, SiftIOError
from src.util.file_meta import MAX_NAME_LENGTH
from src.util.image_loader import ImageHeader, write_image

logger = logging.getLogger(__name__)


def truncate_to_uint8(level, out=None):
    """
    把浮点图像截断转换为 8 位

    数值向零截断并对 256 取模，不做钳位:
    255.9 -> 255, 256.0 -> 0, -1.0 -> 255
    """
    truncated = np.trunc(level).astype(np.int64) & 0xFF
    if out is None:
        return truncated.astype(np.uint8)
    np.copyto(out, truncated, casting='unsafe')
    return out


def gss_level_name(basename, octave_idx, level_idx):
    """导出层的文件名（应用输出模板之前）"""
    return "%s_%02d_%03d" % (basename, octave_idx, level_idx)


def save_gss(sift_filter, sink, basename):
    """
    把当前组的各层保存为 PGM 图像

    参数:
    sift_filter (SiftFilter): 位于待导出组的引擎
    sink (Sink): 尺度空间输出，未激活时什么也不做
    basename (str): 输入图像的基本名

    返回:
    int: 写出的文件数

    每层 s = 0 .. num_levels-1 写一个文件，命名为 <basename>_<octave:02d>_<level:03d>，
    再套用输出模板。失败之前已写出的文件会保留。
    """
    if not sink.active:
        return 0

    width = sift_filter.octave_width
    height = sift_filter.octave_height
    octave_idx = sift_filter.octave_index
    header = ImageHeader(width=width, height=height, max_value=255)

    try:
        buffer = np.empty((height, width), dtype=np.uint8)
    except MemoryError as e:
        raise OutOfMemoryError("Could not allocate enough memory.") from e

    if len(basename) >= MAX_NAME_LENGTH:
        raise NameTooLongError("Output file name too long.")

    saved = 0
    try:
        for level_idx in range(sift_filter.num_levels):
            truncate_to_uint8(sift_filter.current_octave_level(level_idx), out=buffer)

            sink.open(gss_level_name(basename, octave_idx, level_idx), binary=True)
            try:
                write_image(sink.file, header, buffer)
            except OSError as e:
                raise SiftIOError(f"Could not write GSS level to '{sink.name}'.") from e
            logger.info(f"sift: saved gss level to '{sink.name}'")
            sink.close()
            saved += 1
    finally:
        sink.close()
    return saved
