import math
import logging

import numpy as np
from scipy import ndimage

logger = logging.getLogger(__name__)

# 输入图像的标称模糊
SIFT_INIT_SIGMA = 0.5
# 第 0 层的模糊为 SIFT_SIGMA * 2^(1/S)
SIFT_SIGMA = 1.6


def compute_number_of_octaves(width, height, first_octave):
    """
    计算图像金字塔的组数(octaves)

    参数:
    width, height (int): 输入图像尺寸
    first_octave (int): 第一组的序号（-1 表示先把图像上采样一次）

    返回:
    int: 组数，非空图像至少为 1，空图像为 0

    公式:
    octaves = floor(log₂(min_dimension)) - first_octave - 3

    解释:
    1. 金字塔每组图像尺寸减半，min_dimension 为短边（512x640 取 512）
    2. log₂(512) = 9，最多可以减半 9 次
    3. 减 3 使最后一组不小于 8 像素（极值检测需要边界）
    4. 第一组为负时图像先被上采样，组数相应增加

    示例:
    对于 512x512 图像且 first_octave = -1:
    octaves = 9 + 1 - 3 = 7
    """
    min_dimension = min(width, height)
    if min_dimension < 1:
        return 0
    octaves = int(math.floor(math.log2(min_dimension))) - first_octave - 3
    return max(octaves, 1)


def generate_gaussian_kernel_sigmas(sigma0, num_levels, s_min, s_max):
    """
    生成一组内相邻两层之间的增量模糊核sigma值

    参数:
    sigma0 (float): 第 s = 0 层的模糊（以本组像素计）
    num_levels (int): 每组层数 S
    s_min, s_max (int): 第一层和最后一层的序号（-1 和 S+1）

    返回:
    numpy.ndarray: 第 s_min+1 .. s_max 层的核sigma，长度 s_max - s_min

    推导:
    第 s 层的总模糊为 sigma0 * k^s，其中 k = 2^(1/S)，从 s-1 到 s
    需要 √((sigma0 k^s)² - (sigma0 k^(s-1))²) = sigma0 * √(1 - 1/k²) * k^s
    """
    k = 2.0 ** (1.0 / num_levels)
    dsigma0 = sigma0 * math.sqrt(1.0 - 1.0 / (k * k))
    return np.array([dsigma0 * k ** s for s in range(s_min + 1, s_max + 1)])


def upsample_by_two(image):
    """
    线性插值把图像放大2倍

    输出像素 2i 等于输入像素 i，输出像素 2i+1 为输入像素 i 和 i+1 的均值，
    边界处重复最后一个像素。
    """
    rows = np.empty((image.shape[0], 2 * image.shape[1]), dtype=image.dtype)
    right = np.concatenate([image[:, 1:], image[:, -1:]], axis=1)
    rows[:, 0::2] = image
    rows[:, 1::2] = 0.5 * (image + right)

    out = np.empty((2 * image.shape[0], 2 * image.shape[1]), dtype=image.dtype)
    below = np.concatenate([rows[1:], rows[-1:]], axis=0)
    out[0::2] = rows
    out[1::2] = 0.5 * (rows + below)
    return out


def create_base_image(image, first_octave, sigma0, num_levels, s_min, initial_blur=SIFT_INIT_SIGMA):
    """
    创建第一组的第一层 (s = s_min)

    参数:
    image (np.ndarray): 输入图像，float32，灰度范围 [0, 255]
    first_octave (int): 负值上采样 2^-first_octave 倍，正值降采样
    sigma0 (float): 第 0 层的模糊
    num_levels (int): 每组层数 S
    s_min (int): 第一层的序号
    initial_blur (float): 输入图像已存在的模糊量

    返回:
    np.ndarray or None: 基础图像，该组为空时返回 None

    解释 (first_octave = -1, S = 3):
    输入图像，标称模糊 0.5
        [512x512]
        |
        v 上采样2倍
    上采样图像
        [1024x1024] -> 继承模糊 2 x 0.5 = 1.0（以新像素计）
        |
        v 添加 √(1.6² - 1.0²) = 1.25
    基础图像，模糊 sigma0 * 2^(s_min/S) = 1.6
    """
    image = np.asarray(image, dtype=np.float32)

    # 1. 重采样到第一组的分辨率
    if first_octave < 0:
        base = image
        for _ in range(-first_octave):
            base = upsample_by_two(base)
    elif first_octave > 0:
        step = 2 ** first_octave
        if image.shape[0] // step < 1 or image.shape[1] // step < 1:
            return None
        base = image[::step, ::step].copy()
    else:
        base = image.copy()

    # 2. 从输入的标称模糊补充模糊到第 s_min 层
    target_sigma = sigma0 * 2.0 ** (s_min / float(num_levels))
    current_sigma = initial_blur * 2.0 ** (-first_octave)
    if target_sigma > current_sigma:
        required_blur = math.sqrt(target_sigma ** 2 - current_sigma ** 2)
        base = ndimage.gaussian_filter(base, sigma=required_blur, truncate=4.0, mode='mirror')

    return base


def downsample_for_next_octave(level):
    """
    把一层减半，作为下一组的起点

    传入的层 (s = S-1) 的模糊恰好是第 s_min 层的两倍，
    隔一个像素取一个即得到下一组的第 s_min 层，无需额外平滑。
    """
    return level[::2, ::2].copy()


def build_octave(base_image, gaussian_kernel_sigmas):
    """
    构建一组的高斯图像

    参数:
    base_image (np.ndarray): 本组第 s_min 层
    gaussian_kernel_sigmas (np.ndarray): 后续每层的增量模糊

    返回:
    list: 第 s_min .. s_max 层，每层都是与基础图像同尺寸的 float32 数组
    """
    octave_images = [base_image]
    current_image = base_image
    for kernel_sigma in gaussian_kernel_sigmas:
        current_image = ndimage.gaussian_filter(
            current_image,
            sigma=kernel_sigma,
            truncate=4.0,
            mode='mirror'
        )
        octave_images.append(current_image)
    return octave_images


def build_dog_octave(gaussian_octave):
    """
    一组的高斯差分(DoG)图像

    DoG[i] = Gaussian[i+1] - Gaussian[i]，因此比高斯图像少一层。
    """
    logger.debug('Generating Difference-of-Gaussian images...')
    return [gaussian_octave[i + 1] - gaussian_octave[i] for i in range(len(gaussian_octave) - 1)]
