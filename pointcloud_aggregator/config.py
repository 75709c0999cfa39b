"""
Stream manager configuration.

Parameters use the same dotted names as ROS 2 parameters (e.g. icp.max_iterations) so they can be read from a
parameter dictionary or a ROS 2 style YAML parameter file:

    lidar_front_aggregator:
      ros__parameters:
        topic_name: /lidar_front/points
        max_age: 2.0
        icp:
          enabled: true
          max_correspondence_distance: 1.0
          max_iterations: 10
"""
import math
from dataclasses import dataclass

import yaml

from pointcloud_aggregator.exceptions import ConfigurationError
from pointcloud_aggregator.registration import ICP_MAX_CORRESPONDENCE_DISTANCE, ICP_MAX_ITERATIONS
from pointcloud_aggregator.utils import BACKENDS, torch

# parameter name -> dataclass field
PARAMETER_NAMES = {
    'topic_name': 'topic_name',
    'max_age': 'max_age',
    'icp.enabled': 'icp_enabled',
    'icp.max_correspondence_distance': 'icp_max_correspondence_distance',
    'icp.max_iterations': 'icp_max_iterations',
    'icp.min_fitness': 'icp_min_fitness',
    'assign_fragment_label': 'assign_fragment_label',
    'remove_non_finite': 'remove_non_finite',
    'backend': 'backend',
    'use_gpu': 'use_gpu',
    'max_workers': 'max_workers',
    'watcher_poll_interval': 'watcher_poll_interval',
}


@dataclass(frozen=True)
class StreamManagerConfig:
    topic_name: str
    max_age: float
    icp_enabled: bool = True
    icp_max_correspondence_distance: float = ICP_MAX_CORRESPONDENCE_DISTANCE
    icp_max_iterations: int = ICP_MAX_ITERATIONS
    icp_min_fitness: float = 0.0
    assign_fragment_label: bool = True
    remove_non_finite: bool = True
    backend: str = 'open3d'  # numpy, torch or open3d
    use_gpu: bool = False
    max_workers: int = 4
    watcher_poll_interval: float = 0.1

    def __post_init__(self):
        self.validate()

    def validate(self):
        if not isinstance(self.topic_name, str) or not self.topic_name:
            raise ConfigurationError("topic_name must be a non-empty string.")
        if not _is_positive_number(self.max_age):
            raise ConfigurationError(f"max_age must be a positive number of seconds, got {self.max_age!r}.")
        if not _is_positive_number(self.icp_max_correspondence_distance):
            raise ConfigurationError(f"icp.max_correspondence_distance must be positive, "
                                     f"got {self.icp_max_correspondence_distance!r}.")
        if isinstance(self.icp_max_iterations, bool) or not isinstance(self.icp_max_iterations, int) \
                or self.icp_max_iterations < 1:
            raise ConfigurationError(f"icp.max_iterations must be an integer >= 1, got {self.icp_max_iterations!r}.")
        if not _is_non_negative_number(self.icp_min_fitness):
            raise ConfigurationError(f"icp.min_fitness must be a finite number >= 0, got {self.icp_min_fitness!r}.")
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"backend must be one of {BACKENDS}, got {self.backend!r}.")
        if self.backend == 'torch' and torch is None:
            raise ConfigurationError("backend 'torch' requires torch to be installed.")
        if isinstance(self.max_workers, bool) or not isinstance(self.max_workers, int) or self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be an integer >= 1, got {self.max_workers!r}.")
        if not _is_positive_number(self.watcher_poll_interval):
            raise ConfigurationError(f"watcher_poll_interval must be positive, got {self.watcher_poll_interval!r}.")

    @classmethod
    def from_parameters(cls, parameters, namespace='', **overrides):
        """
        Build a configuration from a flat dictionary of dotted parameter names.

        :param parameters: e.g. {'max_age': 2.0, 'icp.max_iterations': 20}
        :param namespace: optional prefix, e.g. 'lidar_front' reads 'lidar_front.max_age'
        :param overrides: dataclass fields that take precedence over the parameters
        """
        if namespace:
            namespace = f'{namespace.rstrip(".")}.'

        kwargs = {}
        for parameter_name, field_name in PARAMETER_NAMES.items():
            key = f'{namespace}{parameter_name}'
            if key in parameters:
                kwargs[field_name] = parameters[key]
        kwargs.update(overrides)

        missing = [name for name in ('topic_name', 'max_age') if name not in kwargs]
        if missing:
            raise ConfigurationError(f"Missing required parameters: {', '.join(missing)}")
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path, node_name=None, namespace='', **overrides):
        return cls.from_parameters(load_parameters_file(path, node_name), namespace=namespace, **overrides)


def _is_positive_number(value):
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value) and value > 0)


def _is_non_negative_number(value):
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value) and value >= 0)


def flatten_parameters(parameters, prefix=''):
    """Flatten nested parameter maps to dotted names, as ROS 2 does."""
    flat = {}
    for key, value in parameters.items():
        name = f'{prefix}{key}'
        if isinstance(value, dict):
            flat.update(flatten_parameters(value, prefix=f'{name}.'))
        else:
            flat[name] = value
    return flat


def load_parameters_file(path, node_name=None):
    """
    Read a ROS 2 style parameter file and return the flattened parameters of one node.

    :param path: YAML file path
    :param node_name: node whose parameters to read. Defaults to the first node in the file.
    """
    with open(path, 'r') as f:
        document = yaml.safe_load(f) or {}

    if not isinstance(document, dict) or not document:
        raise ConfigurationError(f"No parameters found in {path}.")

    if node_name is None:
        node_name = next(iter(document))
    node_name = node_name if node_name in document else f'/{node_name.lstrip("/")}'
    if node_name not in document:
        raise ConfigurationError(f"Node {node_name!r} not found in {path}.")

    node_parameters = document[node_name] or {}
    if 'ros__parameters' in node_parameters:
        node_parameters = node_parameters['ros__parameters'] or {}
    return flatten_parameters(node_parameters)
