"""
Unit tests for the ONTAP NVMe driver.
"""

from unittest.mock import MagicMock, patch

import pytest

from ontap_nvme import driver as ontap_driver
from ontap_nvme import exceptions as ontap_exceptions

NS = {
    "uuid": "ns-1",
    "name": "/vol/vm_100_disk_0/vm_100_disk_0",
    "space": {"size": 8 * 1024 ** 3, "used": 1024},
}


@pytest.fixture
def resolver():
    return MagicMock()


@pytest.fixture
def driver(configuration, mock_client, resolver):
    """Driver wired to a mock client with fabric commands mocked out."""
    mock_client.list_namespaces.return_value = []
    mock_client.list_volumes.return_value = []
    mock_client.create_namespace.return_value = {"records": [{"uuid": "ns-1"}]}
    mock_client.get_subsystem.return_value = {"uuid": "sub-1", "name": "hv_subsys"}
    mock_client.get_consistency_group.return_value = None
    mock_client.get_volume_uuid.return_value = "vol-1"

    with patch("ontap_nvme.driver.ontap_devices") as mock_devices:
        mock_devices.get_portals.return_value = ["192.0.2.21"]
        drv = ontap_driver.OntapNvmeDriver(configuration, client=mock_client, resolver=resolver)
        drv.mock_devices = mock_devices
        yield drv


class TestSetup:
    """Tests for driver setup."""

    @pytest.mark.unit
    @patch("ontap_nvme.driver.OntapNvmeClient")
    def test_do_setup(self, mock_client_class, configuration):
        """Test client is built from the configured connection."""
        drv = ontap_driver.OntapNvmeDriver(configuration)
        drv.do_setup()

        assert drv.client is mock_client_class.return_value
        context = mock_client_class.call_args[0][0]
        assert context.host == "192.0.2.10"
        assert context.vserver == "svm_nvme"
        assert mock_client_class.call_args.kwargs["job_poll_max"] == 120

    @pytest.mark.unit
    @patch("ontap_nvme.driver.OntapNvmeClient")
    def test_api_sets_up_lazily(self, mock_client_class, configuration):
        """Test first API use creates the client."""
        drv = ontap_driver.OntapNvmeDriver(configuration)

        assert drv.api is mock_client_class.return_value
        mock_client_class.assert_called_once()


class TestAllocImage:
    """Tests for alloc_image."""

    @pytest.mark.unit
    def test_alloc_next_free_index(self, driver, mock_client):
        """Test volume, namespace, map and group are created in order."""
        mock_client.list_namespaces.return_value = [{"name": "/vol/vm_100_disk_0/vm_100_disk_0"}]

        volname = driver.alloc_image(100, "raw", None, 1)

        assert volname == "vm-100-disk-1"
        ns_bytes = 20 * 1024 * 1024
        mock_client.create_volume.assert_called_once_with(
            "vm_100_disk_1",
            int(ns_bytes * 1.05),
            aggregate="aggr1",
            snapshot_policy="none",
            space_reserve="none",
            snapshot_reserve=None,
            encryption=None,
            qos_policy=None,
            adaptive_qos_policy=None,
            tiering_policy=None,
        )
        mock_client.create_namespace.assert_called_once_with("vm_100_disk_1", "vm_100_disk_1", ns_bytes, "linux")
        mock_client.map_namespace_to_subsystem.assert_called_once_with("sub-1", "ns-1")
        mock_client.create_consistency_group.assert_called_once_with("hv_cg_vm_100", ["vm_100_disk_1"])
        driver.mock_devices.rescan.assert_called_once()

    @pytest.mark.unit
    def test_alloc_namespace_failure_rolls_back_volume(self, driver, mock_client):
        """Test a failed namespace create deletes the new volume."""
        mock_client.create_namespace.side_effect = ontap_exceptions.OntapAPIError("no space")

        with pytest.raises(ontap_exceptions.OntapNamespaceCreateError, match="no space"):
            driver.alloc_image(100, "raw", None, 1024)

        mock_client.get_volume_uuid.assert_called_with("vm_100_disk_0")
        mock_client.delete_volume.assert_called_once_with("vol-1")
        mock_client.map_namespace_to_subsystem.assert_not_called()
        mock_client.create_consistency_group.assert_not_called()

    @pytest.mark.unit
    def test_alloc_rollback_failure_still_raises_create_error(self, driver, mock_client):
        """Test a failing rollback does not mask the namespace error."""
        mock_client.create_namespace.side_effect = ontap_exceptions.OntapAPIError("no space")
        mock_client.delete_volume.side_effect = ontap_exceptions.OntapAPIError("busy")

        with pytest.raises(ontap_exceptions.OntapNamespaceCreateError):
            driver.alloc_image(100, "raw", None, 1024)

    @pytest.mark.unit
    def test_alloc_uuid_lookup_fallback(self, driver, mock_client):
        """Test namespace uuid is looked up when not returned."""
        mock_client.create_namespace.return_value = {}
        mock_client.get_namespace_by_name.return_value = {"uuid": "ns-9"}

        driver.alloc_image(100, "raw", None, 1024)

        mock_client.get_namespace_by_name.assert_called_with("/vol/vm_100_disk_0/vm_100_disk_0")
        mock_client.map_namespace_to_subsystem.assert_called_once_with("sub-1", "ns-9")

    @pytest.mark.unit
    def test_alloc_explicit_name(self, driver, mock_client):
        """Test an explicit disk name skips index allocation."""
        assert driver.alloc_image(100, "raw", "vm-100-disk-5", 1024) == "vm-100-disk-5"

        mock_client.list_volumes.assert_not_called()
        assert mock_client.create_volume.call_args[0][0] == "vm_100_disk_5"

    @pytest.mark.unit
    def test_alloc_state_name(self, driver, mock_client):
        """Test state volumes keep their name."""
        assert driver.alloc_image(100, "raw", "vm-100-state-snap1", 1024) == "vm-100-state-snap1"

        assert mock_client.create_volume.call_args[0][0] == "vm_100_state_snap1"

    @pytest.mark.unit
    def test_alloc_invalid_name(self, driver, mock_client):
        """Test names outside the scheme are rejected."""
        with pytest.raises(ontap_exceptions.InvalidVolumeName):
            driver.alloc_image(100, "raw", "data-disk", 1024)

        mock_client.create_volume.assert_not_called()

    @pytest.mark.unit
    def test_alloc_unsupported_format(self, driver, mock_client):
        """Test only raw images are supported."""
        with pytest.raises(ontap_exceptions.OntapUnsupportedOperation):
            driver.alloc_image(100, "qcow2", None, 1024)

        mock_client.create_volume.assert_not_called()

    @pytest.mark.unit
    def test_alloc_missing_subsystem(self, driver, mock_client):
        """Test a missing subsystem is fatal."""
        mock_client.get_subsystem.return_value = None

        with pytest.raises(ontap_exceptions.OntapSubsystemNotFound):
            driver.alloc_image(100, "raw", None, 1024)

    @pytest.mark.unit
    def test_alloc_rescan_without_portals_is_not_fatal(self, driver, mock_client):
        """Test a missing portal only skips the rescan."""
        driver.mock_devices.get_portals.side_effect = ontap_exceptions.OntapPortalError("none")

        assert driver.alloc_image(100, "raw", None, 1024) == "vm-100-disk-0"
        driver.mock_devices.rescan.assert_not_called()

    @pytest.mark.unit
    def test_alloc_prefix(self, driver, mock_client):
        """Test the storage prefix is applied to every native name."""
        driver.prefix = "pve_"

        assert driver.alloc_image(100, "raw", None, 1024) == "vm-100-disk-0"
        assert mock_client.create_volume.call_args[0][0] == "pve_vm_100_disk_0"
        mock_client.create_consistency_group.assert_called_once_with("pve_hv_cg_vm_100", ["pve_vm_100_disk_0"])


class TestFreeImage:
    """Tests for free_image."""

    @pytest.mark.unit
    def test_free(self, driver, mock_client):
        """Test unmap, namespace delete, volume delete and group cleanup."""
        mock_client.get_namespace_by_name.return_value = NS
        mock_client.get_namespace_subsystem_maps.return_value = [{"subsystem": {"uuid": "sub-1"}}, {}]
        mock_client.get_consistency_group.return_value = {"uuid": "cg-1", "volumes": []}

        driver.free_image("vm-100-disk-0")

        mock_client.unmap_namespace_from_subsystem.assert_called_once_with("sub-1", "ns-1")
        mock_client.delete_namespace.assert_called_once_with("ns-1")
        mock_client.delete_volume.assert_called_once_with("vol-1")
        mock_client.delete_consistency_group.assert_called_once_with("cg-1")

    @pytest.mark.unit
    def test_free_without_namespace(self, driver, mock_client):
        """Test a volume left without namespace is still deleted."""
        mock_client.get_namespace_by_name.return_value = None
        mock_client.list_namespaces.return_value = []

        driver.free_image("vm-100-disk-0")

        mock_client.delete_namespace.assert_not_called()
        mock_client.delete_volume.assert_called_once_with("vol-1")

    @pytest.mark.unit
    def test_free_keeps_group_with_members(self, driver, mock_client):
        """Test the group stays while other disks remain."""
        mock_client.get_namespace_by_name.return_value = NS
        mock_client.get_namespace_subsystem_maps.return_value = []
        mock_client.get_consistency_group.return_value = {"uuid": "cg-1", "volumes": [{"name": "vm_100_disk_1"}]}

        driver.free_image("vm-100-disk-0")

        mock_client.delete_consistency_group.assert_not_called()


class TestVolumeResize:
    """Tests for volume_resize."""

    @pytest.mark.unit
    def test_resize(self, driver, mock_client):
        """Test namespace and volume are resized."""
        mock_client.get_namespace_by_name.return_value = NS

        assert driver.volume_resize("vm-100-disk-0", 1000) is True

        mock_client.resize_namespace.assert_called_once_with("ns-1", 1000)
        mock_client.resize_volume.assert_called_once_with("vol-1", 1050)

    @pytest.mark.unit
    def test_volume_resize_failure_is_not_fatal(self, driver, mock_client):
        """Test a failing volume resize only logs."""
        mock_client.get_namespace_by_name.return_value = NS
        mock_client.resize_volume.side_effect = ontap_exceptions.OntapAPIError("busy")

        assert driver.volume_resize("vm-100-disk-0", 1000) is True

    @pytest.mark.unit
    def test_resize_missing_namespace(self, driver, mock_client):
        """Test resizing a missing namespace raises."""
        mock_client.get_namespace_by_name.return_value = None

        with pytest.raises(ontap_exceptions.OntapNamespaceNotFound):
            driver.volume_resize("vm-100-disk-0", 1000)


class TestDevicePath:
    """Tests for path and device_path."""

    @pytest.mark.unit
    def test_resolved(self, driver, mock_client, resolver):
        """Test a visible namespace resolves without rescan."""
        mock_client.get_namespace_by_name.return_value = NS
        resolver.resolve.return_value = "/dev/nvme0n1"

        assert driver.path("vm-100-disk-0") == "/dev/nvme0n1"
        resolver.resolve.assert_called_once_with("ns-1", NS["name"])
        driver.mock_devices.rescan.assert_not_called()

    @pytest.mark.unit
    def test_resolved_after_rescan(self, driver, mock_client, resolver):
        """Test a rescan is tried once before giving up."""
        mock_client.get_namespace_by_name.return_value = NS
        resolver.resolve.side_effect = [None, "/dev/nvme0n2"]

        assert driver.device_path("vm-100-disk-0") == "/dev/nvme0n2"
        driver.mock_devices.rescan.assert_called_once_with(["192.0.2.21"], settle=2)

    @pytest.mark.unit
    def test_placeholder(self, driver, mock_client, resolver):
        """Test an invisible namespace gives the pending placeholder."""
        mock_client.get_namespace_by_name.return_value = NS
        resolver.resolve.return_value = None

        assert driver.path("vm-100-disk-0") == "/dev/ontap-nvme-pending/vm_100_disk_0"

        with pytest.raises(ontap_exceptions.DeviceNotAvailable) as exc_info:
            driver.device_path("vm-100-disk-0")
        assert exc_info.value.placeholder == "/dev/ontap-nvme-pending/vm_100_disk_0"

    @pytest.mark.unit
    def test_namespace_fallback_lookup(self, driver, mock_client, resolver):
        """Test a namespace named differently from its volume is found."""
        mock_client.get_namespace_by_name.return_value = None
        mock_client.list_namespaces.return_value = [{"uuid": "ns-2", "name": "/vol/vm_100_disk_0/other"}]
        resolver.resolve.return_value = "/dev/nvme0n5"

        assert driver.device_path("vm-100-disk-0") == "/dev/nvme0n5"
        mock_client.list_namespaces.assert_called_with("/vol/vm_100_disk_0/*")

    @pytest.mark.unit
    def test_missing_namespace(self, driver, mock_client):
        """Test a disk without namespace raises."""
        mock_client.get_namespace_by_name.return_value = None

        with pytest.raises(ontap_exceptions.OntapNamespaceNotFound):
            driver.device_path("vm-100-disk-0")

    @pytest.mark.unit
    def test_blockdev_options(self, driver, mock_client, resolver):
        """Test block device options for the VM process."""
        mock_client.get_namespace_by_name.return_value = NS
        resolver.resolve.return_value = "/dev/nvme0n1"

        options = driver.blockdev_options("vm-100-disk-0")

        assert options == {
            "driver": "host_device",
            "filename": "/dev/nvme0n1",
            "discard": "unmap",
            "detect-zeroes": "unmap",
        }


class TestCloneImage:
    """Tests for clone_image."""

    @pytest.mark.unit
    @patch("ontap_nvme.driver.ontap_utils.copy_block_device")
    @patch("ontap_nvme.driver.ontap_utils.is_block_device", return_value=True)
    def test_clone(self, mock_is_blk, mock_copy, driver, mock_client):
        """Test full copy into a new disk of the target owner."""
        mock_client.get_namespace_by_name.return_value = NS

        with patch.object(driver, "device_path", return_value="/dev/nvme0n1"), patch.object(
            driver, "alloc_image", return_value="vm-101-disk-0"
        ) as mock_alloc, patch.object(driver, "_wait_for_device", return_value="/dev/nvme0n2"):
            assert driver.clone_image("vm-100-disk-0", 101) == "vm-101-disk-0"

        mock_alloc.assert_called_once_with(101, "raw", None, 8 * 1024 * 1024)
        mock_copy.assert_called_once_with("/dev/nvme0n1", "/dev/nvme0n2", 8 * 1024 ** 3, block_size="4M")

    @pytest.mark.unit
    @patch("ontap_nvme.driver.ontap_utils.copy_block_device")
    @patch("ontap_nvme.driver.ontap_utils.is_block_device", return_value=True)
    def test_clone_copy_failure_frees_target(self, mock_is_blk, mock_copy, driver, mock_client):
        """Test a failed copy frees the new disk and re-raises."""
        mock_client.get_namespace_by_name.return_value = NS
        mock_copy.side_effect = ontap_exceptions.OntapNvmeException("dd failed")

        with patch.object(driver, "device_path", return_value="/dev/nvme0n1"), patch.object(
            driver, "alloc_image", return_value="vm-101-disk-0"
        ), patch.object(driver, "_wait_for_device", return_value="/dev/nvme0n2"), patch.object(
            driver, "free_image"
        ) as mock_free:
            with pytest.raises(ontap_exceptions.OntapNvmeException, match="dd failed"):
                driver.clone_image("vm-100-disk-0", 101)

        mock_free.assert_called_once_with("vm-101-disk-0")

    @pytest.mark.unit
    @patch("ontap_nvme.driver.time.sleep")
    @patch("ontap_nvme.driver.ontap_utils.is_block_device")
    def test_clone_target_never_appears(self, mock_is_blk, mock_sleep, driver, mock_client):
        """Test the new disk is freed when its device never shows up."""
        mock_client.get_namespace_by_name.return_value = NS
        mock_is_blk.side_effect = lambda path: path == "/dev/nvme0n1"

        with patch.object(driver, "device_path", side_effect=["/dev/nvme0n1"] + [None] * 3), patch.object(
            driver, "alloc_image", return_value="vm-101-disk-0"
        ), patch.object(driver, "free_image") as mock_free:
            with pytest.raises(ontap_exceptions.DeviceNotAvailable):
                driver.clone_image("vm-100-disk-0", 101)

        mock_free.assert_called_once_with("vm-101-disk-0")
        assert mock_sleep.call_count == 2

    @pytest.mark.unit
    @patch("ontap_nvme.driver.ontap_utils.is_block_device", return_value=True)
    @patch("ontap_nvme.utils.subprocess.run", side_effect=FileNotFoundError("dd"))
    def test_clone_missing_dd_frees_target(self, mock_run, mock_is_blk, driver, mock_client, resolver):
        """Test a copy that cannot start dd still deletes the new disk."""
        mock_client.get_namespace_by_name.return_value = NS
        mock_client.get_namespace_subsystem_maps.return_value = [{"subsystem": {"uuid": "sub-1"}}]
        resolver.resolve.return_value = "/dev/nvme0n1"

        with pytest.raises(ontap_exceptions.OntapNvmeException, match="dd"):
            driver.clone_image("vm-100-disk-0", 101)

        mock_client.create_volume.assert_called_once()
        assert mock_client.create_volume.call_args[0][0] == "vm_101_disk_0"
        mock_client.unmap_namespace_from_subsystem.assert_called_once_with("sub-1", "ns-1")
        mock_client.delete_namespace.assert_called_once_with("ns-1")
        mock_client.delete_volume.assert_called_once_with("vol-1")

    @pytest.mark.unit
    @patch("ontap_nvme.driver.ontap_utils.is_block_device", return_value=True)
    def test_clone_invalid_block_size_frees_target(self, mock_is_blk, driver, mock_client, resolver):
        """Test an unusable copy block size still deletes the new disk."""
        driver.configuration.copy_block_size = "fast"
        mock_client.get_namespace_by_name.return_value = NS
        mock_client.get_namespace_subsystem_maps.return_value = []
        resolver.resolve.return_value = "/dev/nvme0n1"

        with pytest.raises(ontap_exceptions.OntapNvmeException, match="block size"):
            driver.clone_image("vm-100-disk-0", 101)

        mock_client.delete_namespace.assert_called_once_with("ns-1")
        mock_client.delete_volume.assert_called_once_with("vol-1")

    @pytest.mark.unit
    @patch("ontap_nvme.driver.ontap_utils.copy_block_device", side_effect=RuntimeError("unexpected"))
    @patch("ontap_nvme.driver.ontap_utils.is_block_device", return_value=True)
    def test_clone_unexpected_error_frees_target(self, mock_is_blk, mock_copy, driver, mock_client, resolver):
        """Test errors from outside the package also delete the new disk and propagate."""
        mock_client.get_namespace_by_name.return_value = NS
        mock_client.get_namespace_subsystem_maps.return_value = []
        resolver.resolve.return_value = "/dev/nvme0n1"

        with pytest.raises(RuntimeError, match="unexpected"):
            driver.clone_image("vm-100-disk-0", 101)

        mock_client.delete_namespace.assert_called_once_with("ns-1")
        mock_client.delete_volume.assert_called_once_with("vol-1")

    @pytest.mark.unit
    def test_linked_clone_unsupported(self, driver):
        """Test cloning from a snapshot is rejected."""
        with pytest.raises(ontap_exceptions.OntapUnsupportedOperation):
            driver.clone_image("vm-100-disk-0", 101, snap="daily")


class TestSnapshots:
    """Tests for snapshot delegation."""

    @pytest.mark.unit
    def test_snapshot_uses_group(self, driver, mock_client):
        """Test snapshot goes to the owner's group."""
        mock_client.get_consistency_group.return_value = {"uuid": "cg-1"}
        mock_client.get_cg_snapshot_by_name.return_value = None

        assert driver.volume_snapshot("vm-100-disk-0", "daily") == "group"
        assert mock_client.create_cg_snapshot.call_args[0][:2] == ("cg-1", "hv_snap_daily")

    @pytest.mark.unit
    def test_snapshot_info(self, driver, mock_client):
        """Test snapshot listing is keyed by label."""
        mock_client.list_snapshots.return_value = [{"uuid": "s-1", "name": "hv_snap_daily"}]

        result = driver.volume_snapshot_info("vm-100-disk-0")

        assert list(result) == ["daily"]

    @pytest.mark.unit
    def test_rollback_not_found(self, driver, mock_client):
        """Test rollback of an unknown snapshot raises."""
        mock_client.get_snapshot_by_name.return_value = None

        with pytest.raises(ontap_exceptions.OntapSnapshotNotFound):
            driver.volume_snapshot_rollback("vm-100-disk-0", "daily")


class TestHostOperations:
    """Tests for listing, status and activation."""

    @pytest.mark.unit
    def test_list_images(self, driver, mock_client):
        """Test disk and state namespaces are listed with owner filter."""
        mock_client.list_namespaces.side_effect = [
            [
                {"name": "/vol/vm_100_disk_0/vm_100_disk_0", "space": {"size": 100, "used": 10}},
                {"name": "/vol/vm_101_disk_0/vm_101_disk_0", "space": {"size": 200}},
                {"name": "/vol/foreign/foreign"},
            ],
            [{"name": "/vol/vm_100_state_snap1/vm_100_state_snap1", "space": {"size": 50}}],
        ]

        images = driver.list_images(owner_id=100)

        assert [i.name for i in images] == ["vm-100-disk-0", "vm-100-state-snap1"]
        assert images[0].size == 100
        assert images[0].used == 10
        assert images[0].format == "raw"

    @pytest.mark.unit
    def test_volume_size_info_missing(self, driver, mock_client):
        """Test missing disks report zero size."""
        mock_client.get_namespace_by_name.return_value = None

        assert driver.volume_size_info("vm-100-disk-0") == (0, 0)

    @pytest.mark.unit
    def test_status(self, driver, mock_client):
        """Test aggregate capacity is reported."""
        mock_client.get_aggregate_space.return_value = {"total": 100, "used": 40, "free": 60}

        assert driver.status() == (100, 60, 40, True)
        mock_client.get_aggregate_space.assert_called_once_with("aggr1")

    @pytest.mark.unit
    def test_check_connection_failure(self, driver, mock_client):
        """Test API errors mark the connection as down."""
        mock_client.get_svm_uuid.side_effect = ontap_exceptions.OntapAPIConnectionError("refused")

        assert driver.check_connection() is False

    @pytest.mark.unit
    @patch("ontap_nvme.driver.ontap_utils.read_host_nqn", return_value="nqn.host")
    @patch("ontap_nvme.driver.shutil.which", return_value="/usr/sbin/nvme")
    def test_activate_storage(self, mock_which, mock_nqn, driver, mock_client):
        """Test missing subsystem is created and the host registered."""
        mock_client.get_subsystem.side_effect = [None, {"uuid": "sub-1"}]

        assert driver.activate_storage() is True

        mock_client.create_subsystem.assert_called_once_with("hv_subsys", "linux")
        mock_client.add_host_to_subsystem.assert_called_once_with("sub-1", "nqn.host")
        driver.mock_devices.ensure_connected.assert_called_once_with(["192.0.2.21"])

    @pytest.mark.unit
    @patch("ontap_nvme.driver.shutil.which", return_value=None)
    def test_activate_storage_without_nvme_cli(self, mock_which, driver):
        """Test activation requires nvme-cli."""
        with pytest.raises(ontap_exceptions.OntapNvmeException, match="nvme-cli"):
            driver.activate_storage()

    @pytest.mark.unit
    def test_volume_has_feature(self, driver):
        """Test feature table lookups."""
        assert driver.volume_has_feature("snapshot") is True
        assert driver.volume_has_feature("copy", snapname="daily") is False
        assert driver.volume_has_feature("clone") is False


class TestOwnerLock:
    """Tests for per-owner serialisation."""

    @pytest.mark.unit
    def test_lock_is_reentrant_and_released(self, driver):
        """Test nested use works and no entry is kept afterwards."""
        with driver._owner_lock(100):
            with driver._owner_lock(100):
                assert driver._owner_locks[100][1] == 2

        assert driver._owner_locks == {}

    @pytest.mark.unit
    def test_lock_released_on_error(self, driver, mock_client):
        """Test a failing allocation leaves no lock entry behind."""
        mock_client.get_subsystem.return_value = None

        with pytest.raises(ontap_exceptions.OntapSubsystemNotFound):
            driver.alloc_image(100, "raw", None, 1024)

        assert driver._owner_locks == {}
