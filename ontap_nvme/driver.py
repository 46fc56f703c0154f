"""ONTAP NVMe/TCP block storage driver.

One hypervisor disk is one NVMe namespace inside its own FlexVol volume. All
disks of one VM are grouped in an ONTAP consistency group so that snapshots
are atomic across them.
"""

import contextlib
import re
import shutil
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from oslo_log import log as logging

from . import allocator
from . import devices as ontap_devices
from . import naming
from . import utils as ontap_utils
from .client import OntapNvmeClient
from .configuration import ConnectionContext
from .exceptions import (
    DeviceNotAvailable,
    InvalidVolumeName,
    OntapNamespaceCreateError,
    OntapNamespaceNotFound,
    OntapNvmeException,
    OntapPortalError,
    OntapSubsystemNotFound,
    OntapUnsupportedOperation,
)
from .groups import GroupManager
from .snapshots import SnapshotRecord, SnapshotStrategy

LOG = logging.getLogger(__name__)

VERSION = "1.0.0"

SUPPORTED_FORMAT = "raw"
NAMESPACE_OS_TYPE = "linux"

# Seconds to let the kernel settle after connect-all before resolving again
RESCAN_SETTLE = 1
PATH_RETRY_SETTLE = 2


@dataclass(frozen=True)
class ImageInfo:
    name: str
    owner_id: int
    size: int
    used: int = 0
    format: str = SUPPORTED_FORMAT


class OntapNvmeDriver:
    """ONTAP NVMe/TCP storage driver.

    Version history:
        1.0.0 - Initial implementation
    """

    VERSION = VERSION

    FEATURES = {
        "copy": {"current": True},
        "snapshot": {"current": True, "snap": True},
        "sparseinit": {"current": True},
    }

    def __init__(
        self,
        configuration,
        context: Optional[ConnectionContext] = None,
        client: Optional[OntapNvmeClient] = None,
        resolver=None,
    ):
        """Initialize the driver.

        Args:
            configuration: ``ontap_nvme`` option group (or an object with the
                same attributes)
            context: Connection context; built from configuration when omitted
            client: Pre-built API client; created in do_setup when omitted
            resolver: Device resolver (default: DeviceResolver())
        """
        self.configuration = configuration
        self.context = context
        self.client = client
        self.resolver = resolver or ontap_devices.DeviceResolver()
        self.prefix = configuration.storage_prefix or ""

        self._owner_locks = {}
        self._owner_locks_guard = threading.Lock()

    def do_setup(self, context: Optional[ConnectionContext] = None) -> None:
        """Create the API client from an explicit or configured connection context."""
        if context is None:
            context = self.context or ConnectionContext.from_configuration(self.configuration)
        self.context = context

        self.client = OntapNvmeClient(
            context,
            timeout=self.configuration.api_timeout,
            retry_count=self.configuration.api_retry_count,
            job_poll_interval=self.configuration.job_poll_interval,
            job_poll_max=self.configuration.job_poll_max,
        )

        LOG.info(
            "ONTAP NVMe driver initialized (version=%s, mgmt_ip=%s, vserver=%s, subsystem=%s)",
            VERSION,
            context.host,
            context.vserver,
            self.configuration.subsystem,
        )

    @property
    def api(self) -> OntapNvmeClient:
        if self.client is None:
            self.do_setup()
        return self.client

    # Helpers

    @contextlib.contextmanager
    def _owner_lock(self, owner_id: int):
        """Serialise allocation and teardown for one owner within this process.

        Entries are dropped once no caller holds or waits for them.
        """
        with self._owner_locks_guard:
            entry = self._owner_locks.setdefault(owner_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._owner_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._owner_locks[owner_id]

    def _groups(self) -> GroupManager:
        return GroupManager(
            self.api,
            prefix=self.prefix,
            best_effort=self.configuration.best_effort_group_maintenance,
        )

    def _snapshots(self) -> SnapshotStrategy:
        return SnapshotStrategy(self.api, prefix=self.prefix)

    def _native(self, name: str) -> str:
        return naming.to_native(name, self.prefix)

    def _volume_create_opts(self) -> Dict[str, Any]:
        conf = self.configuration
        return {
            "aggregate": conf.aggregate,
            "snapshot_policy": conf.snapshot_policy or "none",
            "space_reserve": conf.space_reserve or "none",
            "snapshot_reserve": conf.snapshot_reserve,
            "encryption": conf.encryption,
            "qos_policy": conf.qos_policy,
            "adaptive_qos_policy": conf.adaptive_qos_policy,
            "tiering_policy": conf.tiering_policy,
        }

    def _find_namespace(self, native: str) -> Optional[Dict[str, Any]]:
        ns = self.api.get_namespace_by_name(naming.namespace_path(native))
        if ns:
            return ns

        # namespace name may differ from its volume name
        namespaces = self.api.list_namespaces(f"/vol/{native}/*")
        return namespaces[0] if namespaces else None

    def _portals(self) -> List[str]:
        return ontap_devices.get_portals(self.configuration.portals, self.api)

    def _rescan(self, settle: float = RESCAN_SETTLE) -> None:
        try:
            ontap_devices.rescan(self._portals(), settle=settle)
        except OntapPortalError as e:
            LOG.warning("NVMe rescan skipped: %s", e)

    def _delete_volume_best_effort(self, native: str) -> None:
        vol_uuid = self.api.get_volume_uuid(native)
        if not vol_uuid:
            return
        try:
            self.api.delete_volume(vol_uuid)
            LOG.info("Deleted volume %s", native)
        except OntapNvmeException as e:
            LOG.warning("Failed to delete volume %s: %s", native, e)

    def _resolve_alloc_name(self, owner_id: int, name: Optional[str]) -> Tuple[str, str]:
        """Return ``(native, external)`` names for a new disk."""
        if name and naming.parse_state_name(self._native(name), self.prefix):
            native = self._native(name)
            return native, naming.from_native(native, self.prefix)

        if name:
            parsed = naming.parse_disk_name(self._native(name), self.prefix)
            if parsed is None:
                raise InvalidVolumeName(f"invalid namespace name '{name}'")
            native = naming.disk_name(parsed[0], parsed[1], self.prefix)
        else:
            index = allocator.find_free_disk_index(
                self.api,
                owner_id,
                self.prefix,
                max_index=self.configuration.max_disk_index,
            )
            native = naming.disk_name(owner_id, index, self.prefix)

        return native, naming.from_native(native, self.prefix)

    def _ensure_subsystem_and_host(self) -> Optional[Dict[str, Any]]:
        name = self.configuration.subsystem
        subsys = self.api.get_subsystem(name)
        if not subsys:
            try:
                self.api.create_subsystem(name, NAMESPACE_OS_TYPE)
                LOG.info("Created NVMe subsystem %s", name)
            except OntapNvmeException as e:
                LOG.warning("Failed to create subsystem %s: %s", name, e)
            subsys = self.api.get_subsystem(name)

        if subsys:
            self.api.add_host_to_subsystem(subsys["uuid"], ontap_utils.read_host_nqn())
        return subsys

    # Volume lifecycle

    def parse_volname(self, volname: str) -> naming.VolumeName:
        return naming.parse_volname(volname)

    def alloc_image(self, owner_id: int, fmt: Optional[str], name: Optional[str], size_kib: int) -> str:
        """Create a disk: volume, namespace, subsystem map and group membership.

        Args:
            owner_id: VM id owning the disk
            fmt: Image format, only ``raw`` is supported
            name: Explicit disk name, or None to pick the next free index
            size_kib: Requested size in KiB

        Returns:
            Hypervisor name of the new disk

        Raises:
            OntapUnsupportedOperation: Format is not raw
            InvalidVolumeName: Explicit name is not a disk or state name
            AllocationExhausted: No free index left
            OntapNamespaceCreateError: Namespace creation failed (volume rolled back)
            OntapSubsystemNotFound: Configured subsystem is missing
        """
        if fmt and fmt != SUPPORTED_FORMAT:
            raise OntapUnsupportedOperation(f"unsupported format '{fmt}' - only raw is supported")

        with self._owner_lock(owner_id):
            native, external = self._resolve_alloc_name(owner_id, name)

            ns_bytes = ontap_utils.namespace_size(size_kib, self.configuration.min_namespace_bytes)
            vol_bytes = ontap_utils.volume_size(ns_bytes, self.configuration.volume_overhead)

            LOG.info(
                "Allocating disk %s for VM %s (namespace=%d bytes, volume=%d bytes)",
                external,
                owner_id,
                ns_bytes,
                vol_bytes,
            )

            # step 1: dedicated FlexVol
            self.api.create_volume(native, vol_bytes, **self._volume_create_opts())

            # step 2: namespace inside the volume; never leave the volume behind
            try:
                result = self.api.create_namespace(native, native, ns_bytes, NAMESPACE_OS_TYPE)
                records = result.get("records") or []
                ns_uuid = records[0].get("uuid") if records else None
                if not ns_uuid:
                    ns = self.api.get_namespace_by_name(naming.namespace_path(native))
                    ns_uuid = ns["uuid"] if ns else None
                if not ns_uuid:
                    raise OntapNvmeException("namespace uuid not returned")
            except OntapNvmeException as e:
                LOG.error("Failed to create namespace %s, removing its volume: %s", native, e)
                self._delete_volume_best_effort(native)
                raise OntapNamespaceCreateError(f"failed to create namespace {native}: {e}")

            # step 3: subsystem map
            subsys = self.api.get_subsystem(self.configuration.subsystem)
            if not subsys:
                raise OntapSubsystemNotFound(f"subsystem '{self.configuration.subsystem}' not found")
            self.api.map_namespace_to_subsystem(subsys["uuid"], ns_uuid)

            # step 4: consistency group
            self._groups().ensure(owner_id, native)

            # step 5: make the device visible on this host
            self._rescan()

        LOG.info("Allocated disk %s", external)
        return external

    def free_image(self, volname: str) -> None:
        """Unmap and delete a disk's namespace, then its volume and empty group."""
        vn = naming.parse_volname(volname)
        native = self._native(vn.name)

        LOG.info("Freeing disk %s", volname)

        with self._owner_lock(vn.owner_id):
            ns = self._find_namespace(native)
            if ns:
                for mapping in self.api.get_namespace_subsystem_maps(ns["uuid"]):
                    sub_uuid = (mapping.get("subsystem") or {}).get("uuid")
                    if not sub_uuid:
                        continue
                    self.api.unmap_namespace_from_subsystem(sub_uuid, ns["uuid"])
                self.api.delete_namespace(ns["uuid"])
                LOG.info("Deleted namespace %s", ns.get("name"))

            self._delete_volume_best_effort(native)
            self._groups().cleanup_if_empty(vn.owner_id)

    def volume_resize(self, volname: str, size_bytes: int) -> bool:
        """Resize the namespace; the volume follows on a best-effort basis."""
        vn = naming.parse_volname(volname)
        native = self._native(vn.name)

        LOG.info("Resizing disk %s to %d bytes", volname, size_bytes)

        ns = self.api.get_namespace_by_name(naming.namespace_path(native))
        if not ns:
            raise OntapNamespaceNotFound(f"namespace not found for '{native}'")

        self.api.resize_namespace(ns["uuid"], size_bytes)

        vol_uuid = self.api.get_volume_uuid(native)
        if vol_uuid:
            new_vol = ontap_utils.volume_size(size_bytes, self.configuration.volume_overhead)
            try:
                self.api.resize_volume(vol_uuid, new_vol)
            except OntapNvmeException as e:
                LOG.warning("Volume resize for %s failed: %s", native, e)

        return True

    def clone_image(self, volname: str, owner_id: int, snap: Optional[str] = None) -> str:
        """Full copy of a disk into a newly allocated disk of ``owner_id``.

        Raises:
            OntapUnsupportedOperation: A source snapshot was requested
        """
        if snap:
            raise OntapUnsupportedOperation("linked clone not supported, only full clone")

        vn = naming.parse_volname(volname)
        native = self._native(vn.name)

        ns = self._find_namespace(native)
        if not ns:
            raise OntapNamespaceNotFound(f"source namespace not found for '{native}'")
        size_bytes = (ns.get("space") or {}).get("size")
        if size_bytes is None:
            raise OntapNvmeException(f"cannot determine size of '{native}'")

        src_path = self.device_path(volname)
        if not ontap_utils.is_block_device(src_path):
            raise DeviceNotAvailable(f"source device not available: {src_path}")

        LOG.info("Cloning %s to VM %s (%d bytes)", volname, owner_id, size_bytes)

        with self._owner_lock(owner_id):
            dst_volname = self.alloc_image(owner_id, SUPPORTED_FORMAT, None, int(size_bytes) // 1024)

            try:
                dst_path = self._wait_for_device(dst_volname)
                LOG.info("Copying %s -> %s", src_path, dst_path)
                ontap_utils.copy_block_device(
                    src_path,
                    dst_path,
                    int(size_bytes),
                    block_size=self.configuration.copy_block_size,
                )
            except Exception as e:
                LOG.error("Clone of %s failed, freeing %s: %s", volname, dst_volname, e)
                try:
                    self.free_image(dst_volname)
                except OntapNvmeException as cleanup_error:
                    LOG.warning("Failed to free clone target %s: %s", dst_volname, cleanup_error)
                raise

        return dst_volname

    def list_images(self, owner_id: Optional[int] = None, vollist: Optional[List[str]] = None) -> List[ImageInfo]:
        """List disk and state images, optionally filtered by owner or name."""
        p = self.prefix
        namespaces = self.api.list_namespaces(f"/vol/{p}vm_*_disk_*/{p}vm_*_disk_*")
        namespaces += self.api.list_namespaces(f"/vol/{p}vm_*_state_*/{p}vm_*_state_*")

        vol_re = re.compile(rf"^/vol/({re.escape(p)}vm_[0-9]+_(?:disk_[0-9]+|state_\S+?))/")

        images = []
        for ns in namespaces:
            match = vol_re.match(ns.get("name") or "")
            if not match:
                continue

            name = naming.from_native(match.group(1), p)
            try:
                vn = naming.parse_volname(name)
            except InvalidVolumeName:
                continue

            if owner_id is not None and vn.owner_id != owner_id:
                continue
            if vollist is not None and name not in vollist:
                continue

            space = ns.get("space") or {}
            images.append(
                ImageInfo(
                    name=name,
                    owner_id=vn.owner_id,
                    size=space.get("size", 0),
                    used=space.get("used", 0),
                )
            )

        return images

    def volume_size_info(self, volname: str) -> Tuple[int, int]:
        """Return ``(size, used)`` bytes of a disk, ``(0, 0)`` when missing."""
        vn = naming.parse_volname(volname)
        ns = self._find_namespace(self._native(vn.name))
        if not ns:
            return 0, 0
        space = ns.get("space") or {}
        return space.get("size", 0), space.get("used", 0)

    # Device access

    def device_path(self, volname: str) -> str:
        """Resolve the local block device of a disk.

        Raises:
            OntapNamespaceNotFound: No namespace for this disk
            DeviceNotAvailable: Namespace exists but is not visible locally yet
        """
        vn = naming.parse_volname(volname)
        native = self._native(vn.name)

        ns = self._find_namespace(native)
        if not ns:
            raise OntapNamespaceNotFound(f"namespace not found in volume '{native}'")

        device = self.resolver.resolve(ns.get("uuid"), ns.get("name"))
        if not device:
            self._rescan(settle=PATH_RETRY_SETTLE)
            device = self.resolver.resolve(ns.get("uuid"), ns.get("name"))

        if not device:
            raise DeviceNotAvailable(
                f"NVMe device not yet connected for {ns.get('name')} (uuid={ns.get('uuid')})",
                placeholder=naming.pending_device_path(native),
            )
        return device

    def path(self, volname: str) -> str:
        """Local device path, or a pending placeholder while not yet visible."""
        try:
            return self.device_path(volname)
        except DeviceNotAvailable as e:
            LOG.warning("%s", e.message)
            return e.placeholder

    def _wait_for_device(self, volname: str) -> str:
        retries = self.configuration.device_wait_retries
        path = None
        for attempt in range(retries + 1):
            try:
                path = self.device_path(volname)
            except DeviceNotAvailable:
                path = None
            if ontap_utils.is_block_device(path):
                return path
            if attempt < retries:
                time.sleep(1)
        raise DeviceNotAvailable(
            f"destination device not available for {volname}",
            placeholder=naming.pending_device_path(self._native(volname)),
        )

    def blockdev_options(self, volname: str) -> Dict[str, Any]:
        """Block device options for the VM process.

        Namespaces are thin; unmap hands freed blocks back to the array.
        """
        return {
            "driver": "host_device",
            "filename": self.path(volname),
            "discard": "unmap",
            "detect-zeroes": "unmap",
        }

    # Snapshots

    def volume_snapshot(self, volname: str, snap: str) -> str:
        vn = naming.parse_volname(volname)
        LOG.info("Snapshot %s of %s", snap, volname)
        return self._snapshots().create(vn.owner_id, vn.name, snap)

    def volume_snapshot_rollback(self, volname: str, snap: str) -> str:
        vn = naming.parse_volname(volname)
        LOG.info("Rolling back %s to snapshot %s", volname, snap)
        return self._snapshots().rollback(vn.owner_id, vn.name, snap)

    def volume_snapshot_delete(self, volname: str, snap: str) -> Optional[str]:
        vn = naming.parse_volname(volname)
        LOG.info("Deleting snapshot %s of %s", snap, volname)
        return self._snapshots().delete(vn.owner_id, vn.name, snap)

    def volume_snapshot_info(self, volname: str) -> Dict[str, SnapshotRecord]:
        vn = naming.parse_volname(volname)
        return self._snapshots().list(vn.owner_id, vn.name)

    def volume_has_feature(self, feature: str, snapname: Optional[str] = None) -> bool:
        key = "snap" if snapname else "current"
        return bool(self.FEATURES.get(feature, {}).get(key))

    # Storage activation

    def status(self) -> Tuple[int, int, int, bool]:
        """Return ``(total, free, used, active)`` of the configured aggregate."""
        space = self.api.get_aggregate_space(self.configuration.aggregate)
        if not space:
            return 0, 0, 0, False
        return space["total"], space["free"], space["used"], True

    def activate_storage(self) -> bool:
        """Register this host on the subsystem and connect the fabric."""
        if shutil.which("nvme") is None:
            raise OntapNvmeException("nvme-cli not installed")

        LOG.info("Activating storage (subsystem=%s)", self.configuration.subsystem)
        self._ensure_subsystem_and_host()
        ontap_devices.ensure_connected(self._portals())
        return True

    def activate_volume(self, volname: str) -> bool:
        naming.parse_volname(volname)
        ontap_devices.ensure_connected(self._portals())
        return True

    def check_connection(self) -> bool:
        try:
            self.api.get_svm_uuid()
        except OntapNvmeException as e:
            LOG.warning("ONTAP connection check failed: %s", e)
            return False
        return True
