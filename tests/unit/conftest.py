"""Shared fixtures for the unit test suite."""

from __future__ import annotations

import pytest
from fakes import FakeCluster

from appoperator.controller.reconciler import Reconciler
from appoperator.controller.status import StatusUpdater


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def updater(cluster: FakeCluster) -> StatusUpdater:
    return StatusUpdater(cluster, max_attempts=5, backoff_base_s=0.001)


@pytest.fixture
def reconciler(cluster: FakeCluster, updater: StatusUpdater) -> Reconciler:
    return Reconciler(cluster, updater)
