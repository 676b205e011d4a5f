import os
import logging
from dataclasses import dataclass, field

import numpy as np
from PIL import Image, UnidentifiedImageError

from src.util.errors import ImageFormatError, OutOfMemoryError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ['.pgm', '.jpg', '.jpeg', '.png', '.tiff', '.bmp', '.gif']


@dataclass
class ImageHeader:
    """
    从输入流读出的图像头部

    属性:
    width, height (int): 图像尺寸（像素）
    max_value (int): 可表示的最大灰度 (255 或 65535)
    image (PIL.Image): 延迟加载的图像，数据尚未读取
    """
    width: int
    height: int
    max_value: int = 255
    image: object = field(default=None, repr=False, compare=False)


def read_header(stream):
    """
    从已打开的二进制流读取图像头部

    参数:
    stream (file): 以二进制模式打开的输入

    返回:
    ImageHeader: 图像尺寸和最大灰度值

    这里 Pillow 只解析头部，像素数据由 read_pixels 读取。
    超过 Pillow 像素上限的图像按内存不足处理。
    """
    try:
        image = Image.open(stream)
    except Image.DecompressionBombError as e:
        raise OutOfMemoryError(f"image too large: {e}") from e
    except (UnidentifiedImageError, SyntaxError, ValueError) as e:
        raise ImageFormatError("image header corrupted.") from e

    if image.mode == "I" or image.mode.startswith("I;16"):
        max_value = 65535
    else:
        max_value = 255
    return ImageHeader(width=image.width, height=image.height, max_value=max_value, image=image)


def read_pixels(stream, header):
    """
    读取 header 描述的图像数据

    返回:
    np.ndarray: (height, width) 数组，8 位图像为 uint8，16 位图像为 uint16。
    彩色图像转换为灰度。
    """
    image = header.image
    if image is None:
        image = read_header(stream).image
    try:
        image.load()
    except (OSError, SyntaxError, ValueError) as e:
        raise ImageFormatError("image body corrupted.") from e

    if header.max_value > 255:
        pixels = np.asarray(image).astype(np.uint16)
    else:
        pixels = np.asarray(image.convert('L'))

    if pixels.shape != (header.height, header.width):
        raise ImageFormatError("image body does not match its header.")
    return pixels


def write_image(stream, header, pixels):
    """
    把 8 位灰度缓冲写成原始 PGM (P5，最大值 255)

    参数:
    stream (file): 以二进制模式打开的输出
    header (ImageHeader): 要写出的图像尺寸
    pixels (np.ndarray): 形状为 (height, width) 的 uint8 数组
    """
    pixels = np.ascontiguousarray(pixels, dtype=np.uint8)
    if pixels.shape != (header.height, header.width):
        raise ValueError(f"buffer shape {pixels.shape} does not match {header.width}x{header.height}")
    Image.fromarray(pixels).save(stream, format='PPM')


def expand_inputs(paths):
    """
    把命令行输入展开为图像文件列表

    文件原样保留（即使不存在，失败会在处理该图像时报告）；
    文件夹替换为其中的图像文件。
    """
    names = []
    for path in paths:
        if os.path.isdir(path):
            names.extend(_load_folder_images(path))
        else:
            names.append(path)
    return names


def _load_folder_images(folder_path):
    """列出文件夹中的图像文件，按文件名排序"""
    found = []
    for filename in sorted(os.listdir(folder_path)):
        file_path = os.path.join(folder_path, filename)
        if os.path.isfile(file_path) and os.path.splitext(filename)[1].lower() in IMAGE_EXTENSIONS:
            found.append(file_path)
    logger.debug(f"sift: {len(found)} images found in '{folder_path}'")
    return found
