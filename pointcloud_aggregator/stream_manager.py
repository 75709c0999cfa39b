"""
Manager of a stream of pointclouds coming from a single sensor.

Fragments fed to the manager are moved to the robot frame with the sensor transform, refined against the
current merged pointcloud with ICP, merged and finally removed once they are older than max_age.

Locks are always taken in the order: sensor transform -> fragment set -> merged pointcloud.
"""
import bisect
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import open3d.core as o3c
import open3d.t.geometry as t

from pointcloud_aggregator.aging_watcher import AgingWatcher
from pointcloud_aggregator.config import StreamManagerConfig
from pointcloud_aggregator.exceptions import InvalidTransformError, ManagerShutdownError
from pointcloud_aggregator.registration import icp_align
from pointcloud_aggregator.stamped_pointcloud import StampedPointCloud
from pointcloud_aggregator.utils import (as_labeled_pointcloud, concatenate_pointclouds, get_current_time,
                                         get_device, get_time_difference, is_rigid_transform)

_logger = logging.getLogger(__name__)


class StreamManager:
    """
    Merges and ages the pointclouds captured by a single sensor, e.g. one LiDAR.

    Fragments received before the sensor transform is set wait in a FIFO queue and are processed, in order,
    once it is set. Every fragment is evicted as a whole max_age seconds after it was received and the point
    aging callback, if any, is called once for every distinct point label of the evicted fragment.

    The merged pointcloud returned by get_cloud() is replaced on every change, never modified in place, so it
    can be handed out without copying. Consumers must not modify it.

    Call destroy() (or use the manager as a context manager) to stop the background threads.
    """

    def __init__(self, topic_name=None, max_age=None, config=None, **kwargs):
        if config is None:
            config = StreamManagerConfig(topic_name=topic_name, max_age=max_age, **kwargs)
        self.config = config
        self.o3d_device = get_device(config.use_gpu)

        self._sensor_transform = None
        # fragments ordered by (timestamp, label)
        self._clouds = []
        self._cloud_labels = {}
        self._clouds_not_transformed = deque()
        self._cloud = t.PointCloud(self.o3d_device)
        self._point_aging_callback = None

        self._sensor_transform_lock = threading.Lock()
        self._set_lock = threading.Lock()
        self._cloud_lock = threading.Lock()

        # Debugging parameters
        self.processing_times = {}

        # in flight transform/ICP/merge tasks
        self._tasks_condition = threading.Condition()
        self._tasks_in_flight = 0
        self._stopped = False
        self._executor = ThreadPoolExecutor(max_workers=config.max_workers,
                                            thread_name_prefix=f"{self._thread_prefix}_worker")

        self._age_watcher = AgingWatcher(self._remove_pointcloud, name=f"{self._thread_prefix}_age_watcher",
                                         poll_interval=config.watcher_poll_interval)
        self._age_watcher.start()
        _logger.info(f"Stream manager for {config.topic_name} started on device: {self.o3d_device} "
                     f"(max_age={config.max_age:.2f}s, icp={config.icp_enabled})")

    @classmethod
    def from_config(cls, config):
        return cls(config=config)

    @property
    def topic_name(self):
        return self.config.topic_name

    @property
    def _thread_prefix(self):
        return self.config.topic_name.strip('/').replace('/', '_') or 'stream'

    @property
    def is_destroyed(self):
        return self._stopped

    def __eq__(self, other):
        if not isinstance(other, StreamManager):
            return NotImplemented
        return self.topic_name == other.topic_name

    def __hash__(self):
        return hash(self.topic_name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._stopped:
            self.destroy()

    def _check_alive(self):
        if self._stopped:
            raise ManagerShutdownError(f"Stream manager for {self.topic_name} was destroyed.")

    def add_cloud(self, cloud):
        """
        Feed a pointcloud to manage.

        :param cloud: raw fragment. See utils.as_labeled_pointcloud for the accepted types.
        :return: label of the new fragment or None if the pointcloud was empty.
        """
        self._check_alive()
        pointcloud = as_labeled_pointcloud(cloud, device=self.o3d_device,
                                          remove_non_finite=self.config.remove_non_finite)
        if pointcloud.is_empty():
            _logger.warning(f"Received an empty PointCloud on {self.topic_name}. Skipping...")
            return None

        spcl = StampedPointCloud(pointcloud, origin_topic=self.topic_name,
                                 assign_label=self.config.assign_fragment_label)

        with self._sensor_transform_lock:
            sensor_transform = self._sensor_transform
            if sensor_transform is None:
                with self._set_lock:
                    self._clouds_not_transformed.append(spcl)
                _logger.debug(f"Sensor transform of {self.topic_name} not set. "
                              f"Queued pointcloud {spcl.label}.")
                return spcl.label

        self._submit(self._transform_and_merge, spcl, sensor_transform)
        return spcl.label

    def get_cloud(self):
        """
        Get the merged version of the still valid pointclouds fed into this manager.

        :return: open3d.t.geometry.PointCloud snapshot
        """
        with self._cloud_lock:
            return self._cloud

    def get_snapshot(self):
        """
        Get the fragments (in timestamp order) and the merged pointcloud built from exactly those fragments.
        """
        with self._set_lock:
            with self._cloud_lock:
                return list(self._clouds), self._cloud

    def set_sensor_transform(self, transform):
        """
        Set the transform between the sensor frame and the robot base frame. Pointclouds queued while the
        transform was unset are processed in the order they arrived.

        :param transform: 4x4 homogeneous rigid transform (numpy array or Open3D tensor)
        """
        self._check_alive()
        if isinstance(transform, o3c.Tensor):
            transform = transform.cpu().numpy()
        matrix = np.array(transform, dtype=np.float64)
        if not is_rigid_transform(matrix):
            raise InvalidTransformError(f"Sensor transform of {self.topic_name} is not a 4x4 rigid transform.")
        matrix.setflags(write=False)

        with self._sensor_transform_lock:
            first_time = self._sensor_transform is None
            self._sensor_transform = matrix
            with self._set_lock:
                backlog = list(self._clouds_not_transformed)
                self._clouds_not_transformed.clear()
            if backlog:
                self._submit(self._process_backlog, backlog, matrix)

        if first_time:
            _logger.info(f"Sensor transform of {self.topic_name} set. {len(backlog)} queued pointclouds pending.")
        else:
            _logger.info(f"Sensor transform of {self.topic_name} updated.")

    def get_sensor_transform(self):
        with self._sensor_transform_lock:
            if self._sensor_transform is None:
                return None
            return self._sensor_transform.copy()

    def get_max_age(self):
        """Get the max age points live for after being fed."""
        return self.config.max_age

    def get_point_aging_callback(self):
        return self._point_aging_callback

    def set_point_aging_callback(self, func):
        """
        Set the callback called with a point label whenever a pointcloud ages older than max_age.
        May be useful to remove points from an aggregated pointcloud.
        """
        self._point_aging_callback = func

    def get_fragment_labels(self):
        with self._set_lock:
            return [spcl.label for spcl in self._clouds]

    def get_num_clouds(self):
        with self._set_lock:
            return len(self._clouds)

    def get_num_pending_transform(self):
        with self._set_lock:
            return len(self._clouds_not_transformed)

    def get_processing_times(self):
        return dict(self.processing_times)

    def join_pending(self, timeout=None):
        """
        Wait for every submitted transform/ICP/merge task to finish.

        :return: False if the timeout expired first.
        """
        with self._tasks_condition:
            return self._tasks_condition.wait_for(lambda: self._tasks_in_flight == 0, timeout)

    def destroy(self):
        """
        Stop the age watcher, cancel queued tasks, wait for running ones and drop every pointcloud.
        """
        with self._tasks_condition:
            self._check_alive()
            self._stopped = True

        self._age_watcher.stop()
        # running tasks finish without touching the fragments since the manager is stopped
        self._executor.shutdown(wait=True, cancel_futures=True)

        with self._set_lock:
            self._clouds.clear()
            self._cloud_labels.clear()
            self._clouds_not_transformed.clear()
            with self._cloud_lock:
                self._cloud = t.PointCloud(self.o3d_device)
        _logger.info(f"Stream manager for {self.topic_name} destroyed.")

    def _submit(self, fn, *args):
        with self._tasks_condition:
            self._check_alive()
            future = self._executor.submit(fn, *args)
            self._tasks_in_flight += 1
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future):
        with self._tasks_condition:
            self._tasks_in_flight -= 1
            self._tasks_condition.notify_all()
        if not future.cancelled() and future.exception() is not None:
            _logger.error(f"Pointcloud task of {self.topic_name} failed: {str(future.exception())}")

    def _process_backlog(self, backlog, sensor_transform):
        for spcl in backlog:
            if self._stopped:
                return
            self._transform_and_merge(spcl, sensor_transform)
        _logger.debug(f"Processed {len(backlog)} queued pointclouds of {self.topic_name}.")

    def _transform_and_merge(self, spcl, sensor_transform):
        try:
            start_time = get_current_time(monotonic=True)
            spcl.apply_transform(sensor_transform, backend=self.config.backend)
            self.processing_times['transform'] = get_time_difference(start_time, get_current_time(monotonic=True))

            if self.config.icp_enabled:
                self._align_pointcloud(spcl)

            start_time = get_current_time(monotonic=True)
            self._merge_pointcloud(spcl)
            self.processing_times['merge'] = get_time_difference(start_time, get_current_time(monotonic=True))
        except Exception as e:
            _logger.error(f"Error processing point cloud {spcl.label} of {self.topic_name}: {str(e)}")

    def _align_pointcloud(self, spcl):
        # the merged pointcloud is never modified in place so the reference is a stable target
        target = self.get_cloud()
        if target.is_empty():
            return

        start_time = get_current_time(monotonic=True)
        result = icp_align(spcl.pointcloud, target,
                           max_correspondence_distance=self.config.icp_max_correspondence_distance,
                           max_iterations=self.config.icp_max_iterations,
                           min_fitness=self.config.icp_min_fitness)
        if result.converged:
            spcl.apply_icp_transform(result.transformation, backend=self.config.backend)
        else:
            _logger.warning(f"ICP did not converge for pointcloud {spcl.label} of {self.topic_name}. "
                            f"Using the sensor transform only.")
        self.processing_times['icp'] = get_time_difference(start_time, get_current_time(monotonic=True))

    def _merge_pointcloud(self, spcl):
        with self._set_lock:
            if self._stopped:
                _logger.debug(f"Stream manager for {self.topic_name} stopped. Dropping pointcloud {spcl.label}.")
                return False
            if spcl.label in self._cloud_labels:
                return False

            # the fragment set and the merged cloud change together or not at all
            merged = concatenate_pointclouds([self._cloud, spcl.pointcloud], device=self.o3d_device)
            bisect.insort(self._clouds, spcl)
            self._cloud_labels[spcl.label] = spcl
            with self._cloud_lock:
                self._cloud = merged
            self._age_watcher.schedule(spcl, spcl.timestamp + self.config.max_age)

        _logger.debug(f"Merged pointcloud {spcl.label} ({len(spcl)} points) into {self.topic_name}.")
        return True

    def _remove_pointcloud(self, spcl):
        start_time = get_current_time(monotonic=True)
        with self._set_lock:
            if self._stopped or spcl.label not in self._cloud_labels:
                # already removed
                return False

            remaining = [c for c in self._clouds if c is not spcl]
            merged = concatenate_pointclouds([c.pointcloud for c in remaining], device=self.o3d_device)
            del self._cloud_labels[spcl.label]
            self._clouds = remaining
            with self._cloud_lock:
                self._cloud = merged
        self.processing_times['eviction'] = get_time_difference(start_time, get_current_time(monotonic=True))
        _logger.debug(f"Removed pointcloud {spcl.label} of {self.topic_name} after {spcl.get_age():.3f}s.")

        point_aging_callback = self._point_aging_callback
        if point_aging_callback is not None:
            for label in spcl.point_labels():
                try:
                    point_aging_callback(int(label))
                except Exception as e:
                    _logger.error(f"Point aging callback of {self.topic_name} failed for label {label}: {str(e)}")
        return True
