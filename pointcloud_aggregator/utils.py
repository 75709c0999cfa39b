"""
Helpers shared by the stream manager: conversion between raw fragments, numpy dictionaries and
Open3D tensor pointclouds, homogeneous transforms and the time source.

Labeled pointclouds are Open3D tensor pointclouds with two attributes:
    * positions: Float32 tensor of shape (N, 3)
    * labels: UInt32 tensor of shape (N, 1)
    * colors: optional Float32 tensor of shape (N, 3) with values in [0, 1]
"""
import logging
import time

import numpy as np
import open3d as o3d
import open3d.core as o3c
import open3d.t.geometry as t
from scipy.spatial.transform import Rotation as R

try:
    import torch
    from torch.utils.dlpack import from_dlpack as torch_from_dlpack
    from torch.utils.dlpack import to_dlpack as torch_to_dlpack
except ImportError:
    torch = None
    torch_from_dlpack = None
    torch_to_dlpack = None

_logger = logging.getLogger(__name__)

POSITIONS_DTYPE = np.float32
LABELS_DTYPE = np.uint32
COLORS_DTYPE = np.float32
BACKENDS = ('open3d', 'numpy', 'torch')


def get_device(use_gpu=False):
    """
    Select the Open3D device the pointclouds live on. Falls back to the CPU if CUDA is unavailable.
    """
    if use_gpu and o3d.core.cuda.is_available():
        return o3c.Device('CUDA:0')
    if use_gpu:
        _logger.warning("CUDA requested but not available. Using CPU:0")
    return o3c.Device('CPU:0')


def extract_rgb_from_pointcloud(rgb):
    # Many ROS drivers, such as RealSense and Zed pack RGB as a float32 where bytes are [R,G,B,0].
    # We reinterpret the float as a uint32, then bit-shift.
    rgb_bytes = np.ascontiguousarray(rgb, dtype=np.float32).view(np.uint32)
    # Extract RGB channels
    r = ((rgb_bytes >> 16) & 0xFF).astype(np.uint8)
    g = ((rgb_bytes >> 8) & 0xFF).astype(np.uint8)
    b = (rgb_bytes & 0xFF).astype(np.uint8)

    # Stack RGB channels
    rgb_arr = np.vstack((r, g, b)).T.astype(np.uint8)
    return rgb_arr


def convert_pointcloud_to_numpy(structured_cloud_array, cloud_field_names=None):
    """
    Unpack a numpy structured array (x, y, z and optional rgb and label fields) into a pointcloud dictionary.
    Packed rgb is converted to float colors in [0, 1].
    """
    if cloud_field_names is None:
        cloud_field_names = structured_cloud_array.dtype.names

    # test if x, y, and z are present
    if not {"x", "y", "z"}.issubset(cloud_field_names):
        raise ValueError("Incoming PointCloud does not have x, y, z fields.")

    positions_arr = np.vstack(
        (structured_cloud_array["x"], structured_cloud_array["y"], structured_cloud_array["z"])
    ).T.astype(POSITIONS_DTYPE)

    pointcloud_dictionary = {
        'positions': positions_arr,
    }
    if "rgb" in cloud_field_names:
        rgb_arr = extract_rgb_from_pointcloud(structured_cloud_array["rgb"])
        pointcloud_dictionary['colors'] = rgb_arr.astype(COLORS_DTYPE) / 255.0
    if "label" in cloud_field_names:
        pointcloud_dictionary['labels'] = structured_cloud_array["label"].astype(LABELS_DTYPE)

    return pointcloud_dictionary


def dict_to_open3d_tensor_pointcloud(pointcloud_dict, device=None):
    """
    Build a labeled Open3D tensor pointcloud from a dictionary of numpy arrays.

    :param pointcloud_dict: dictionary with 'positions' (N, 3), optional 'labels' (N,) or (N, 1) and
                            optional 'colors' (N, 3).
    :param device: Open3D device. Defaults to CPU:0.
    :return: open3d.t.geometry.PointCloud
    """
    if device is None:
        device = o3c.Device('CPU:0')
    positions = np.ascontiguousarray(pointcloud_dict['positions'], dtype=POSITIONS_DTYPE).reshape(-1, 3)
    labels = pointcloud_dict.get('labels')
    if labels is None:
        labels = np.zeros(positions.shape[0], dtype=LABELS_DTYPE)
    labels = np.ascontiguousarray(labels, dtype=LABELS_DTYPE).reshape(-1, 1)
    if labels.shape[0] != positions.shape[0]:
        raise ValueError(f"Got {labels.shape[0]} labels for {positions.shape[0]} points.")
    colors = pointcloud_dict.get('colors')
    if colors is not None:
        colors = np.ascontiguousarray(colors, dtype=COLORS_DTYPE).reshape(-1, 3)
        if colors.shape[0] != positions.shape[0]:
            raise ValueError(f"Got {colors.shape[0]} colors for {positions.shape[0]} points.")

    if positions.shape[0] == 0:
        return t.PointCloud(device)

    tensors = {
        'positions': o3c.Tensor(positions, dtype=o3c.float32),
        'labels': o3c.Tensor(labels, dtype=o3c.uint32),
    }
    if colors is not None:
        tensors['colors'] = o3c.Tensor(colors, dtype=o3c.float32)
    pointcloud = t.PointCloud(tensors)
    return pointcloud.to(device)


def pointcloud_to_dict(pointcloud):
    """
    Copy the positions, labels and colors (if any) of a labeled pointcloud to numpy arrays.

    :return: dictionary with 'positions' of shape (N, 3), 'labels' of shape (N,) and, when the pointcloud
             has colors, 'colors' of shape (N, 3)
    """
    if pointcloud.is_empty():
        return {'positions': np.zeros((0, 3), dtype=POSITIONS_DTYPE),
                'labels': np.zeros((0,), dtype=LABELS_DTYPE)}

    positions = pointcloud.point.positions.cpu().numpy().astype(POSITIONS_DTYPE, copy=True)
    if 'labels' in pointcloud.point:
        labels = pointcloud.point.labels.cpu().numpy().reshape(-1).astype(LABELS_DTYPE, copy=True)
    else:
        labels = np.zeros(positions.shape[0], dtype=LABELS_DTYPE)
    pointcloud_dict = {'positions': positions, 'labels': labels}
    if 'colors' in pointcloud.point:
        pointcloud_dict['colors'] = pointcloud.point.colors.cpu().numpy().reshape(-1, 3).astype(COLORS_DTYPE,
                                                                                               copy=True)
    return pointcloud_dict


def as_labeled_pointcloud(raw_pointcloud, device=None, remove_non_finite=True):
    """
    Convert a raw fragment handed in by a transport layer to a labeled Open3D tensor pointcloud.

    Accepts an open3d.t.geometry.PointCloud, a dictionary with 'positions' and optional 'labels' and 'colors',
    a numpy structured array with x, y, z and optional rgb and label fields, or a plain (N, 3) array.
    """
    if isinstance(raw_pointcloud, t.PointCloud):
        pointcloud_dict = pointcloud_to_dict(raw_pointcloud)
    elif isinstance(raw_pointcloud, np.ndarray) and raw_pointcloud.dtype.names is not None:
        pointcloud_dict = convert_pointcloud_to_numpy(raw_pointcloud)
    elif isinstance(raw_pointcloud, np.ndarray):
        if raw_pointcloud.ndim != 2 or raw_pointcloud.shape[1] != 3:
            raise ValueError(f"Expected an (N, 3) array of points, got shape {raw_pointcloud.shape}.")
        pointcloud_dict = {'positions': raw_pointcloud}
    elif isinstance(raw_pointcloud, dict):
        if 'positions' not in raw_pointcloud:
            raise ValueError("Pointcloud dictionary has no 'positions' key.")
        pointcloud_dict = {'positions': np.asarray(raw_pointcloud['positions']).reshape(-1, 3),
                           'labels': raw_pointcloud.get('labels'),
                           'colors': raw_pointcloud.get('colors')}
    else:
        raise TypeError(f"Unsupported pointcloud type: {type(raw_pointcloud).__name__}")

    if remove_non_finite:
        positions = np.asarray(pointcloud_dict['positions'], dtype=POSITIONS_DTYPE)
        finite_mask = np.all(np.isfinite(positions), axis=1)
        if not finite_mask.all():
            pointcloud_dict['positions'] = positions[finite_mask]
            if pointcloud_dict.get('labels') is not None:
                pointcloud_dict['labels'] = np.asarray(pointcloud_dict['labels']).reshape(-1)[finite_mask]
            if pointcloud_dict.get('colors') is not None:
                pointcloud_dict['colors'] = np.asarray(pointcloud_dict['colors']).reshape(-1, 3)[finite_mask]

    return dict_to_open3d_tensor_pointcloud(pointcloud_dict, device=device)


def concatenate_pointclouds(pointclouds, device=None):
    """
    Merge labeled pointclouds by concatenating their points. No deduplication is done and the input
    order is kept. If any input has colors the result has colors, points without one are black.
    """
    pointcloud_dicts = [pointcloud_to_dict(pointcloud) for pointcloud in pointclouds if not pointcloud.is_empty()]
    if not pointcloud_dicts:
        return t.PointCloud(device if device is not None else o3c.Device('CPU:0'))

    merged = {'positions': np.concatenate([d['positions'] for d in pointcloud_dicts], axis=0),
              'labels': np.concatenate([d['labels'] for d in pointcloud_dicts], axis=0)}
    if any('colors' in d for d in pointcloud_dicts):
        merged['colors'] = np.concatenate(
            [d.get('colors', np.zeros((d['positions'].shape[0], 3), dtype=COLORS_DTYPE)) for d in pointcloud_dicts],
            axis=0)
    return dict_to_open3d_tensor_pointcloud(merged, device=device)


def transform_pointcloud(pointcloud, transformation_matrix, backend='open3d'):
    """
    Apply a 4x4 homogeneous transform to the positions of a labeled pointcloud.
    The input is left untouched and a new pointcloud is returned.

    :param pointcloud: Open3D.t.geometry.PointCloud object
    :param transformation_matrix: 4x4 numpy array
    :param backend: open3d, numpy or torch
    :return: transformed Open3D.t.geometry.PointCloud
    """
    if pointcloud.is_empty():
        return pointcloud.clone()

    matrix = np.asarray(transformation_matrix, dtype=np.float64)
    # Depending on how numpy/torch/open3d are installed/built, one backend may be preferred
    if backend.lower() in ['np', 'numpy']:
        pointcloud_dict = pointcloud_to_dict(pointcloud)
        positions = pointcloud_dict['positions'].astype(np.float64)
        pointcloud_dict['positions'] = positions @ matrix[:3, :3].T + matrix[:3, 3]
        return dict_to_open3d_tensor_pointcloud(pointcloud_dict, device=pointcloud.device)
    elif backend.lower() in ['torch', 'pytorch']:
        if torch is None:
            raise RuntimeError("The torch backend was requested but torch is not installed.")
        transformed = pointcloud.clone()
        points = torch_from_dlpack(transformed.point.positions.to_dlpack())
        rotation = torch.as_tensor(matrix[:3, :3], dtype=points.dtype, device=points.device)
        translation = torch.as_tensor(matrix[:3, 3], dtype=points.dtype, device=points.device)
        points = points @ rotation.T + translation
        transformed.point.positions = o3c.Tensor.from_dlpack(torch_to_dlpack(points.contiguous()))
        return transformed
    else:
        transformed = pointcloud.clone()
        # transform in place on the clone. Keep the matrix dtype equal to the positions dtype
        transformed.transform(o3c.Tensor(matrix, dtype=o3c.float32, device=transformed.device))
        return transformed


def transform_to_matrix(translation, rotation):
    """
    Convert a translation and a quaternion (x, y, z, w) to a 4x4 transformation matrix.
    """
    tx, ty, tz = translation
    qx, qy, qz, qw = rotation
    homogenous_matrix = np.eye(4)
    homogenous_matrix[:3, :3] = R.from_quat([qx, qy, qz, qw]).as_matrix()  # x, y, z, w
    homogenous_matrix[:3, 3] = [tx, ty, tz]
    return homogenous_matrix


def is_rigid_transform(matrix, tolerance=1e-4):
    """
    Check that a matrix is a finite 4x4 rigid transform, i.e. an orthonormal rotation with a
    determinant of +1, a translation and a [0, 0, 0, 1] last row.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.shape != (4, 4) or not np.all(np.isfinite(matrix)):
        return False
    if not np.allclose(matrix[3], [0.0, 0.0, 0.0, 1.0], atol=tolerance):
        return False
    rotation = matrix[:3, :3]
    if not np.allclose(rotation.T @ rotation, np.eye(3), atol=tolerance):
        return False
    return abs(np.linalg.det(rotation) - 1.0) <= tolerance


def get_current_time(monotonic=True):
    """
    Reference function to make switching time sources as easy as overriding the time returned.
    Can be overridden, e.g., ROS clock.
    :param monotonic: If true, returns values that are guaranteed to monotonically increase.
    :return:
    """
    if not monotonic:
        return time.time()
    return time.perf_counter()  # time.perf_counter() or time.monotonic()


def get_time_difference(start_time, end_time):
    """
    Reference implementation for time difference calculation.
    Can be overridden, e.g., ROS clock message or ROS Time object
    """
    return end_time - start_time
