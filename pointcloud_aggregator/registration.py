"""
ICP refinement of a fragment against the running merged pointcloud.

Alignment is best effort. Whenever ICP does not produce a usable rigid transform the caller gets an
identity transform with converged=False and keeps the transform-only pose.
"""
import logging
from dataclasses import dataclass, field

import numpy as np
import open3d as o3d

from pointcloud_aggregator.utils import is_rigid_transform

_logger = logging.getLogger(__name__)

ICP_MAX_CORRESPONDENCE_DISTANCE = 1.0
ICP_MAX_ITERATIONS = 10


@dataclass
class IcpResult:
    transformation: np.ndarray = field(default_factory=lambda: np.eye(4))
    fitness: float = 0.0
    inlier_rmse: float = 0.0
    converged: bool = False


def icp_align(source, target, max_correspondence_distance=ICP_MAX_CORRESPONDENCE_DISTANCE,
              max_iterations=ICP_MAX_ITERATIONS, min_fitness=0.0):
    """
    Point-to-point ICP of source onto target.

    :param source: Open3D.t.geometry.PointCloud to align
    :param target: Open3D.t.geometry.PointCloud used as reference
    :param max_correspondence_distance: correspondences further apart than this are ignored
    :param max_iterations: maximum number of ICP iterations
    :param min_fitness: results with a fitness at or below this are rejected
    :return: IcpResult
    """
    if source.is_empty() or target.is_empty():
        _logger.debug("Skipping ICP on an empty pointcloud.")
        return IcpResult()

    registration = o3d.pipelines.registration
    try:
        result = registration.registration_icp(
            source.to_legacy(), target.to_legacy(), max_correspondence_distance, np.eye(4),
            registration.TransformationEstimationPointToPoint(),
            registration.ICPConvergenceCriteria(max_iteration=max_iterations))
    except RuntimeError as e:
        _logger.warning(f"ICP failed: {str(e)}")
        return IcpResult()

    transformation = np.asarray(result.transformation, dtype=np.float64)
    fitness = float(result.fitness)
    inlier_rmse = float(result.inlier_rmse)
    _logger.debug(f"[ICP] fitness={fitness:.4f} inlier_rmse={inlier_rmse:.6f}")

    if fitness <= min_fitness:
        _logger.debug(f"ICP fitness {fitness:.4f} below the minimum {min_fitness:.4f}.")
        return IcpResult(fitness=fitness, inlier_rmse=inlier_rmse)
    if not is_rigid_transform(transformation):
        _logger.warning("ICP returned a degenerate transform.")
        return IcpResult(fitness=fitness, inlier_rmse=inlier_rmse)

    return IcpResult(transformation=transformation, fitness=fitness, inlier_rmse=inlier_rmse, converged=True)
