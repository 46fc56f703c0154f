"""
Pytest configuration and fixtures.
"""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external systems")
    config.addinivalue_line("markers", "integration: tests driving the CLI end to end with mocks")


def make_configuration(**overrides):
    """Build an ``ontap_nvme`` option group stand-in with default values."""
    configuration = Mock()
    values = {
        "mgmt_ip": "192.0.2.10",
        "username": "admin",
        "password": "secret",
        "vserver": "svm_nvme",
        "verify_ssl": False,
        "api_timeout": 30,
        "api_retry_count": 3,
        "job_poll_interval": 1,
        "job_poll_max": 120,
        "subsystem": "hv_subsys",
        "portals": ["192.0.2.21"],
        "device_wait_retries": 2,
        "aggregate": "aggr1",
        "storage_prefix": "",
        "snapshot_policy": "none",
        "space_reserve": "none",
        "encryption": None,
        "qos_policy": None,
        "adaptive_qos_policy": None,
        "snapshot_reserve": None,
        "tiering_policy": None,
        "volume_overhead": 1.05,
        "min_namespace_bytes": 20 * 1024 * 1024,
        "max_disk_index": 256,
        "best_effort_group_maintenance": True,
        "copy_block_size": "4M",
    }
    values.update(overrides)
    for key, value in values.items():
        setattr(configuration, key, value)
    return configuration


@pytest.fixture
def configuration():
    """Default driver configuration."""
    return make_configuration()


@pytest.fixture
def mock_client():
    """Mock ONTAP API client."""
    return MagicMock()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for testing."""
    with patch("subprocess.run") as mock:
        yield mock
