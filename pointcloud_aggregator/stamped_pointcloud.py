import functools
import itertools
import threading

import numpy as np

from pointcloud_aggregator.utils import (get_current_time, pointcloud_to_dict, dict_to_open3d_tensor_pointcloud,
                                         transform_pointcloud, LABELS_DTYPE)

_LABEL_MASK = 0xFFFFFFFF
_label_counter = itertools.count(1)
_label_lock = threading.Lock()


def generate_label():
    """
    Generate a fragment label. Labels fit in an unsigned 32-bit point label and are never 0, which is the
    label of points that were never assigned one.
    """
    with _label_lock:
        label = next(_label_counter) & _LABEL_MASK
        while label == 0:
            label = next(_label_counter) & _LABEL_MASK
    return label


@functools.total_ordering
class StampedPointCloud:
    """
    A labeled pointcloud together with a unique label and the time it was captured.

    The label and timestamp never change after construction. The payload is only ever replaced as a whole,
    by the transform and ICP steps. Fragments are ordered by (timestamp, label) so two fragments with the
    same timestamp still have a deterministic order.
    """

    def __init__(self, pointcloud, origin_topic='', timestamp=None, assign_label=True):
        self._label = generate_label()
        self._timestamp = get_current_time(monotonic=True) if timestamp is None else float(timestamp)
        self.origin_topic = origin_topic
        self.transform_computed = False
        self.icp_transform_computed = False
        self._lock = threading.Lock()

        if assign_label and not pointcloud.is_empty():
            pointcloud = self._assign_label(pointcloud)
        self._pointcloud = pointcloud

    @property
    def label(self):
        return self._label

    @property
    def timestamp(self):
        return self._timestamp

    @property
    def pointcloud(self):
        with self._lock:
            return self._pointcloud

    def _assign_label(self, pointcloud):
        # every point carries the label of its fragment
        pointcloud_dict = pointcloud_to_dict(pointcloud)
        pointcloud_dict['labels'] = np.full(pointcloud_dict['positions'].shape[0], self._label, dtype=LABELS_DTYPE)
        return dict_to_open3d_tensor_pointcloud(pointcloud_dict, device=pointcloud.device)

    def apply_transform(self, transformation_matrix, backend='open3d'):
        """Move the fragment from the sensor frame to the robot frame."""
        with self._lock:
            self._pointcloud = transform_pointcloud(self._pointcloud, transformation_matrix, backend=backend)
            self.transform_computed = True

    def apply_icp_transform(self, transformation_matrix, backend='open3d'):
        """Apply the ICP refinement on top of the sensor transform."""
        with self._lock:
            self._pointcloud = transform_pointcloud(self._pointcloud, transformation_matrix, backend=backend)
            self.icp_transform_computed = True

    def point_labels(self):
        """Distinct point labels in this fragment."""
        return np.unique(pointcloud_to_dict(self.pointcloud)['labels'])

    def get_age(self, now=None):
        if now is None:
            now = get_current_time(monotonic=True)
        return now - self._timestamp

    def __len__(self):
        pointcloud = self.pointcloud
        if pointcloud.is_empty():
            return 0
        return int(pointcloud.point.positions.shape[0])

    def _sort_key(self):
        return self._timestamp, self._label

    def __eq__(self, other):
        if not isinstance(other, StampedPointCloud):
            return NotImplemented
        return self._label == other._label

    def __lt__(self, other):
        if not isinstance(other, StampedPointCloud):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __hash__(self):
        return hash(self._label)

    def __repr__(self):
        return (f"StampedPointCloud(label={self._label}, timestamp={self._timestamp:.6f}, "
                f"origin_topic={self.origin_topic!r})")
