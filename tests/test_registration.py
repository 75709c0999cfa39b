from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import open3d as o3d

from pointcloud_aggregator.registration import icp_align
from pointcloud_aggregator.utils import as_labeled_pointcloud, dict_to_open3d_tensor_pointcloud
from tests.conftest import make_points


def test_icp_recovers_small_offset() -> None:
    points = make_points(500, seed=3)
    target = as_labeled_pointcloud(points)
    source = as_labeled_pointcloud(points + np.array([0.02, -0.01, 0.015], dtype=np.float32))

    result = icp_align(source, target, max_correspondence_distance=0.5, max_iterations=50)

    assert result.converged
    assert result.fitness > 0.9
    np.testing.assert_allclose(result.transformation[:3, 3], [-0.02, 0.01, -0.015], atol=5e-3)
    np.testing.assert_allclose(result.transformation[:3, :3], np.eye(3), atol=1e-2)


def test_icp_without_correspondences_falls_back_to_identity() -> None:
    target = as_labeled_pointcloud(make_points(100, seed=1))
    source = as_labeled_pointcloud(make_points(100, offset=(100.0, 100.0, 100.0), seed=2))

    result = icp_align(source, target, max_correspondence_distance=1.0, max_iterations=10)

    assert not result.converged
    assert result.fitness == 0.0
    np.testing.assert_array_equal(result.transformation, np.eye(4))


def test_icp_with_minimum_fitness_rejects_partial_overlap() -> None:
    points = make_points(200, seed=4)
    target = as_labeled_pointcloud(points[:20])
    source = as_labeled_pointcloud(points)

    result = icp_align(source, target, max_correspondence_distance=0.05, max_iterations=10, min_fitness=0.99)

    assert not result.converged


def test_icp_on_empty_cloud_is_not_converged() -> None:
    empty = dict_to_open3d_tensor_pointcloud({"positions": np.zeros((0, 3))})
    target = as_labeled_pointcloud(make_points(10))

    assert not icp_align(empty, target).converged
    assert not icp_align(target, empty).converged


def test_icp_degenerate_transform_falls_back_to_identity(monkeypatch) -> None:
    def scaling_icp(*args, **kwargs):
        return SimpleNamespace(transformation=np.diag([2.0, 2.0, 2.0, 1.0]), fitness=1.0, inlier_rmse=0.0)

    monkeypatch.setattr(o3d.pipelines.registration, "registration_icp", scaling_icp)
    cloud = as_labeled_pointcloud(make_points(50))

    result = icp_align(cloud, cloud)

    assert result.converged is False
    assert result.fitness == 1.0
    np.testing.assert_array_equal(result.transformation, np.eye(4))
