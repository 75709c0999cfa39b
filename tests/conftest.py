from __future__ import annotations

import time
from collections.abc import Callable

import numpy as np
import pytest

from pointcloud_aggregator import StreamManager


def make_points(num_points: int = 100, offset=(0.0, 0.0, 0.0), seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return (rng.uniform(0.0, 2.0, size=(num_points, 3)) + np.asarray(offset)).astype(np.float32)


def make_fragment(num_points: int = 100, offset=(0.0, 0.0, 0.0), seed: int = 0, label: int | None = None) -> dict:
    fragment = {"positions": make_points(num_points, offset, seed)}
    if label is not None:
        fragment["labels"] = np.full(num_points, label, dtype=np.uint32)
    return fragment


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def managers():
    created: list[StreamManager] = []

    def _factory(*args, **kwargs) -> StreamManager:
        manager = StreamManager(*args, **kwargs)
        created.append(manager)
        return manager

    yield _factory

    for manager in created:
        if not manager.is_destroyed:
            manager.destroy()
