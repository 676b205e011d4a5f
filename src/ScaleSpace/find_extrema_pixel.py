import math
import logging

import numpy as np
from scipy import ndimage

logger = logging.getLogger(__name__)


def find_extremum_candidates(dog_octave, threshold, border_width=1):
    """
    查找在 3x3x3 邻域内为严格极值的像素

    参数:
    dog_octave (list): 当前组的DoG图像
    threshold (float): 候选点DoG绝对值的下限
    border_width (int): 图像边界跳过的像素数（至少为 1）

    返回:
    np.ndarray: (n, 3) 数组，每行为 (layer, row, col)

    逻辑:
    1. 把每个像素与其 26 个邻居的最大/最小值比较
       （下一层 9 个、上一层 9 个、同层周围 8 个）
    2. 正极值必须严格大于所有邻居，负极值严格小于所有邻居
    3. 第一层和最后一层DoG只作为邻居
    """
    stack = np.stack(dog_octave)
    border_width = max(int(border_width), 1)
    if stack.shape[0] < 3 or min(stack.shape[1:]) <= 2 * border_width:
        return np.zeros((0, 3), dtype=int)

    footprint = np.ones((3, 3, 3), dtype=bool)
    footprint[1, 1, 1] = False
    neighbor_max = ndimage.maximum_filter(stack, footprint=footprint, mode='nearest')
    neighbor_min = ndimage.minimum_filter(stack, footprint=footprint, mode='nearest')

    is_extremum = ((stack > neighbor_max) & (stack >= threshold)) | \
                  ((stack < neighbor_min) & (stack <= -threshold))

    # 去掉首尾两层和图像边界
    is_extremum[0] = False
    is_extremum[-1] = False
    is_extremum[:, :border_width, :] = False
    is_extremum[:, -border_width:, :] = False
    is_extremum[:, :, :border_width] = False
    is_extremum[:, :, -border_width:] = False

    return np.argwhere(is_extremum)


def compute_gradient_at_center_pixel(pixel_cube):
    """
    计算 3x3x3 像素立方体（索引为 [s, y, x]）中心的梯度 (dx, dy, ds)

    中心差分:
        dx = 0.5 * (f(x+1,y,s) - f(x-1,y,s))
        dy = 0.5 * (f(x,y+1,s) - f(x,y-1,s))
        ds = 0.5 * (f(x,y,s+1) - f(x,y,s-1))
    """
    dx = 0.5 * (pixel_cube[1, 1, 2] - pixel_cube[1, 1, 0])
    dy = 0.5 * (pixel_cube[1, 2, 1] - pixel_cube[1, 0, 1])
    ds = 0.5 * (pixel_cube[2, 1, 1] - pixel_cube[0, 1, 1])
    return np.array([dx, dy, ds])


def compute_hessian_at_center_pixel(pixel_cube):
    """
    计算 3x3x3 像素立方体（索引为 [s, y, x]）中心的Hessian矩阵

    二阶导数使用中心差分:
        dxx = f(x+1,y,s) - 2f(x,y,s) + f(x-1,y,s)
    混合导数使用四个角点:
        dxy = 0.25 * (f(x+1,y+1,s) - f(x+1,y-1,s) - f(x-1,y+1,s) + f(x-1,y-1,s))
    """
    center_value = pixel_cube[1, 1, 1]
    dxx = pixel_cube[1, 1, 2] - 2 * center_value + pixel_cube[1, 1, 0]
    dyy = pixel_cube[1, 2, 1] - 2 * center_value + pixel_cube[1, 0, 1]
    dss = pixel_cube[2, 1, 1] - 2 * center_value + pixel_cube[0, 1, 1]
    dxy = 0.25 * (pixel_cube[1, 2, 2] - pixel_cube[1, 2, 0] - pixel_cube[1, 0, 2] + pixel_cube[1, 0, 0])
    dxs = 0.25 * (pixel_cube[2, 1, 2] - pixel_cube[2, 1, 0] - pixel_cube[0, 1, 2] + pixel_cube[0, 1, 0])
    dys = 0.25 * (pixel_cube[2, 2, 1] - pixel_cube[2, 0, 1] - pixel_cube[0, 2, 1] + pixel_cube[0, 0, 1])
    return np.array([
        [dxx, dxy, dxs],
        [dxy, dyy, dys],
        [dxs, dys, dss]
    ])


def localize_extremum_via_quadratic_fit(i, j, layer_idx, dog_stack, peak_threshold, edge_threshold,
                                        border_width=1, max_attempts=5):
    """
    通过二次拟合把极值点精确到亚像素

    参数:
    i, j (int): 初始行和列
    layer_idx (int): 候选点所在的DoG层
    dog_stack (np.ndarray): 本组DoG图像，按 [s, y, x] 堆叠
    peak_threshold (float): 精确化后极值点DoG绝对值的下限
    edge_threshold (float): 主曲率比 r 的上限
    border_width (int): 精确化后的位置不会进入边界
    max_attempts (int): 放弃前的最大迭代次数

    返回:
    dict or None: 本组坐标下的精确极值 {row, col, layer, x, y, ds, response}，
    候选点被剔除时返回 None

    数学原理:
    1. 在 (j, i, layer) 附近把 D 建模为 D(x) = D + g·x + 1/2 xᵀ H x
    2. 极值位于 x* = -H⁻¹ g
    3. 若 x* 在 x 或 y 方向偏离超过 0.6 像素，移动一个像素后重试
    """
    num_layers, height, width = dog_stack.shape
    converged = False

    for attempt in range(max_attempts):
        pixel_cube = dog_stack[layer_idx - 1:layer_idx + 2, i - 1:i + 2, j - 1:j + 2].astype(np.float64)
        gradient = compute_gradient_at_center_pixel(pixel_cube)
        hessian = compute_hessian_at_center_pixel(pixel_cube)
        offset = -np.linalg.lstsq(hessian, gradient, rcond=None)[0]

        step_x = 0
        step_y = 0
        if offset[0] > 0.6 and j < width - border_width - 1:
            step_x = 1
        elif offset[0] < -0.6 and j > border_width:
            step_x = -1
        if offset[1] > 0.6 and i < height - border_width - 1:
            step_y = 1
        elif offset[1] < -0.6 and i > border_width:
            step_y = -1

        if step_x == 0 and step_y == 0:
            converged = True
            break
        j += step_x
        i += step_y

    if not converged:
        logger.debug('Exceeded maximum number of attempts without reaching convergence. Skipping...')
        return None

    # 极值点处二次模型的值
    response = pixel_cube[1, 1, 1] + 0.5 * np.dot(gradient, offset)
    if not abs(response) > peak_threshold:
        return None

    # 用 2x2 空间Hessian剔除边缘响应
    xy_hessian = hessian[:2, :2]
    trace_hessian = np.trace(xy_hessian)
    det_hessian = np.linalg.det(xy_hessian)
    if det_hessian <= 0 or edge_threshold * (trace_hessian ** 2) >= ((edge_threshold + 1) ** 2) * det_hessian:
        return None

    if np.any(np.abs(offset) >= 1.5):
        logger.debug('Extremum offset too large. Skipping...')
        return None

    x = j + offset[0]
    y = i + offset[1]
    if not (0 <= x <= width - 1 and 0 <= y <= height - 1):
        return None

    return {
        'row': i,
        'col': j,
        'layer': layer_idx,
        'x': x,
        'y': y,
        'ds': offset[2],
        'response': abs(response)
    }


def find_scale_space_extrema(dog_octave, peak_threshold, edge_threshold, border_width=1):
    """
    检测并精确化一组DoG图像的极值点

    参数:
    dog_octave (list): 本组DoG图像
    peak_threshold (float): 精确化后DoG值的对比度阈值
    edge_threshold (float): 主曲率比阈值
    border_width (int): 不参与搜索的图像边界

    返回:
    list: localize_extremum_via_quadratic_fit 返回的精确极值

    步骤:
    1. 候选点: |D| >= 0.8 * peak_threshold 的 3x3x3 严格极值
    2. 逐个精确化，剔除不稳定和边缘上的点
    """
    dog_stack = np.stack(dog_octave)
    candidates = find_extremum_candidates(dog_octave, 0.8 * peak_threshold, border_width)
    logger.debug(f'{len(candidates)} extremum candidates')

    extrema = []
    for layer_idx, i, j in candidates:
        extremum = localize_extremum_via_quadratic_fit(
            int(i), int(j), int(layer_idx), dog_stack,
            peak_threshold, edge_threshold, border_width
        )
        if extremum is not None:
            extrema.append(extremum)
    return extrema


def compute_gradient_images(gaussian_image):
    """
    计算一层高斯图像的梯度幅值和方向

    返回:
    tuple: (magnitude, orientation)，方向为弧度，范围 [0, 2π)，y 轴向下
    """
    dy, dx = np.gradient(np.asarray(gaussian_image, dtype=np.float32))
    magnitude = np.sqrt(dx ** 2 + dy ** 2)
    orientation = np.mod(np.arctan2(dy, dx), 2 * np.pi)
    return magnitude, orientation


def compute_keypoint_orientations(x, y, sigma, magnitude, orientation, radius_factor=3, num_bins=36,
                                  peak_ratio=0.8, scale_factor=1.5, max_orientations=4):
    """
    计算关键点的主方向

    参数:
    x, y, sigma (float): 关键点在本组坐标下的位置和尺度
    magnitude, orientation (np.ndarray): 关键点所在层的梯度图像
    radius_factor (float): 窗口半径（以加权sigma为单位）
    num_bins (int): 方向直方图的柱数
    peak_ratio (float): 次峰值至少达到主峰值的该比例
    scale_factor (float): 加权sigma（以关键点尺度为单位）
    max_orientations (int): 最多返回的方向数

    返回:
    list: 弧度表示的方向，最强的峰值在前

    步骤:
    1. 把高斯加权的梯度幅值累加到方向直方图
    2. 平滑直方图
    3. 保留超过 peak_ratio * max 的局部峰值并插值其位置
    """
    height, width = magnitude.shape
    scale = scale_factor * sigma
    radius = max(int(math.floor(radius_factor * scale)), 1)
    weight_factor = -0.5 / (scale ** 2)

    region_center_x = int(math.floor(x + 0.5))
    region_center_y = int(math.floor(y + 0.5))
    if not (0 <= region_center_x < width and 0 <= region_center_y < height):
        return []

    y_indices = np.arange(max(region_center_y - radius, 0), min(region_center_y + radius, height - 1) + 1)
    x_indices = np.arange(max(region_center_x - radius, 0), min(region_center_x + radius, width - 1) + 1)
    y_grid, x_grid = np.meshgrid(y_indices, x_indices, indexing='ij')

    # 圆形窗口
    distances_sq = (x_grid - x) ** 2 + (y_grid - y) ** 2
    inside = distances_sq < radius ** 2 + 0.6
    weights = np.exp(weight_factor * distances_sq[inside])

    weighted_magnitudes = magnitude[y_grid[inside], x_grid[inside]] * weights
    angles = orientation[y_grid[inside], x_grid[inside]]

    bin_indices = np.floor(num_bins * angles / (2 * np.pi)).astype(int) % num_bins
    raw_histogram = np.bincount(bin_indices, weights=weighted_magnitudes, minlength=num_bins)

    # (6*自身 + 4*相邻 + 1*次相邻) / 16，循环
    smooth_histogram = (6 * raw_histogram +
                        4 * (np.roll(raw_histogram, 1) + np.roll(raw_histogram, -1)) +
                        np.roll(raw_histogram, 2) + np.roll(raw_histogram, -2)) / 16.

    orientation_max = np.max(smooth_histogram)
    if orientation_max <= 0:
        return []

    orientation_peaks_index = np.where(
        np.logical_and(
            smooth_histogram > np.roll(smooth_histogram, 1),
            smooth_histogram > np.roll(smooth_histogram, -1)
        )
    )[0]

    peaks = []
    for peak_index in orientation_peaks_index:
        peak_value = smooth_histogram[peak_index]
        if peak_value < peak_ratio * orientation_max:
            continue
        left_value = smooth_histogram[(peak_index - 1) % num_bins]
        right_value = smooth_histogram[(peak_index + 1) % num_bins]
        interp_factor = 0.5 * (left_value - right_value) / (left_value - 2 * peak_value + right_value)
        # 第 i 个柱覆盖 [i, i+1)，中心在 i + 0.5
        interpolated_peak_index = (peak_index + interp_factor + 0.5) % num_bins
        peaks.append((peak_value, 2 * np.pi * interpolated_peak_index / num_bins))

    peaks.sort(key=lambda peak: -peak[0])
    return [float(angle) for _, angle in peaks[:max_orientations]]
