"""Exceptions raised by the point cloud aggregator."""


class PointcloudAggregatorError(Exception):
    """Base exception for the package."""


class ConfigurationError(PointcloudAggregatorError, ValueError):
    """Raised when a stream manager is configured with unusable parameters."""


class InvalidTransformError(PointcloudAggregatorError, ValueError):
    """Raised when a sensor transform is not a finite 4x4 rigid transform."""


class ManagerShutdownError(PointcloudAggregatorError, RuntimeError):
    """Raised when a destroyed stream manager is used or destroyed again."""
