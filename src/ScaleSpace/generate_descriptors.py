import math

import numpy as np

float_tolerance = 1e-7


def normalize_descriptor(descriptor_vector, descriptor_max_value=0.2):
    """
    归一化，截断较大的分量，再次归一化

    在 descriptor_max_value 处截断可以降低大梯度幅值（非线性光照变化）的影响。
    """
    descriptor_vector = descriptor_vector / max(np.linalg.norm(descriptor_vector), float_tolerance)
    descriptor_vector = np.minimum(descriptor_vector, descriptor_max_value)
    return descriptor_vector / max(np.linalg.norm(descriptor_vector), float_tolerance)


def generate_descriptor(x, y, sigma, angle, magnitude, orientation, window_width=4, num_bins=8,
                        scale_multiplier=3., descriptor_max_value=0.2):
    """
    计算一个带方向关键点的描述符

    参数:
    x, y, sigma (float): 关键点在本组坐标下的位置和尺度
    angle (float): 关键点方向（弧度）
    magnitude, orientation (np.ndarray): 关键点所在层的梯度图像
    window_width (int): 每边的空间格数（4 -> 4x4 个格子）
    num_bins (int): 每个格子的方向柱数
    scale_multiplier (float): 格子大小（以sigma为单位）
    descriptor_max_value (float): 归一化向量的截断阈值

    返回:
    np.ndarray: 长度为 window_width * window_width * num_bins 的 float32 向量，
    按格子行、格子列、方向柱排列

    步骤:
    1. 以关键点为中心把窗口旋转 angle
    2. 用覆盖窗口的高斯函数对每个梯度加权
    3. 把梯度分配到 x、y 和方向上最近的两个柱（三线性插值）
    4. 归一化并截断
    """
    height, width = magnitude.shape
    histogram_tensor = np.zeros((window_width, window_width, num_bins))

    hist_width = scale_multiplier * sigma
    half_width = int(math.floor(math.sqrt(2) * hist_width * (window_width + 1) * 0.5 + 0.5))

    point_col = int(math.floor(x + 0.5))
    point_row = int(math.floor(y + 0.5))

    # 梯度至少取在图像内部一个像素处
    rows = np.arange(max(-half_width, 1 - point_row), min(half_width, height - 2 - point_row) + 1)
    cols = np.arange(max(-half_width, 1 - point_col), min(half_width, width - 2 - point_col) + 1)
    if rows.size == 0 or cols.size == 0:
        return histogram_tensor.flatten().astype(np.float32)

    row_grid, col_grid = np.meshgrid(rows, cols, indexing='ij')
    window_row = point_row + row_grid
    window_col = point_col + col_grid

    gradient_magnitude = magnitude[window_row, window_col]
    gradient_orientation = np.mod(orientation[window_row, window_col] - angle, 2 * np.pi)

    # 相对亚像素关键点的偏移，旋转到关键点坐标系
    dx = window_col - x
    dy = window_row - y
    cos_angle = math.cos(angle)
    sin_angle = math.sin(angle)
    col_rot = (cos_angle * dx + sin_angle * dy) / hist_width
    row_rot = (-sin_angle * dx + cos_angle * dy) / hist_width
    orientation_bin = num_bins * gradient_orientation / (2 * np.pi)

    weight_sigma = window_width / 2.
    weight = np.exp(-(col_rot ** 2 + row_rot ** 2) / (2 * weight_sigma ** 2))
    weighted_magnitude = weight * gradient_magnitude

    col_bin_floor = np.floor(col_rot - 0.5)
    row_bin_floor = np.floor(row_rot - 0.5)
    orientation_bin_floor = np.floor(orientation_bin)
    col_fraction = col_rot - (col_bin_floor + 0.5)
    row_fraction = row_rot - (row_bin_floor + 0.5)
    orientation_fraction = orientation_bin - orientation_bin_floor

    half_window = window_width // 2
    for d_row in (0, 1):
        row_bin = (row_bin_floor + d_row + half_window).astype(int)
        row_weight = np.abs(1 - d_row - row_fraction)
        for d_col in (0, 1):
            col_bin = (col_bin_floor + d_col + half_window).astype(int)
            col_weight = np.abs(1 - d_col - col_fraction)
            valid = (row_bin >= 0) & (row_bin < window_width) & (col_bin >= 0) & (col_bin < window_width)
            if not valid.any():
                continue
            for d_orientation in (0, 1):
                orientation_index = (orientation_bin_floor + d_orientation).astype(int) % num_bins
                contribution = weighted_magnitude * row_weight * col_weight * \
                    np.abs(1 - d_orientation - orientation_fraction)
                np.add.at(
                    histogram_tensor,
                    (row_bin[valid], col_bin[valid], orientation_index[valid]),
                    contribution[valid]
                )

    descriptor_vector = normalize_descriptor(histogram_tensor.flatten(), descriptor_max_value)
    return descriptor_vector.astype(np.float32)
