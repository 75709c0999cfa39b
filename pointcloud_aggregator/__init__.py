"""Merge and age the pointclouds of a single sensor stream."""
import logging

from pointcloud_aggregator.aging_watcher import AgingWatcher, WatcherState
from pointcloud_aggregator.config import StreamManagerConfig, load_parameters_file
from pointcloud_aggregator.exceptions import (ConfigurationError, InvalidTransformError, ManagerShutdownError,
                                              PointcloudAggregatorError)
from pointcloud_aggregator.registration import IcpResult, icp_align
from pointcloud_aggregator.stamped_pointcloud import StampedPointCloud
from pointcloud_aggregator.stream_manager import StreamManager

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = '0.1.0'

__all__ = [
    'AgingWatcher',
    'ConfigurationError',
    'IcpResult',
    'InvalidTransformError',
    'ManagerShutdownError',
    'PointcloudAggregatorError',
    'StampedPointCloud',
    'StreamManager',
    'StreamManagerConfig',
    'WatcherState',
    'icp_align',
    'load_parameters_file',
]
