"""Local NVMe device discovery and fabric connection management.

Maps an ONTAP namespace (UUID + path) to the local ``/dev/nvmeXnY`` block
device. Three strategies are tried in order and the first match wins:

1. ``nvme netapp ontapdevices`` (NetApp plugin of nvme-cli)
2. the ``uuid``/``nguid`` attributes of every NVMe block device in sysfs
3. ``nvme list`` filtered to ONTAP models, confirmed through sysfs
"""

import json
import os
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from oslo_log import log as logging

from .exceptions import OntapNvmeException, OntapPortalError

LOG = logging.getLogger(__name__)

SYSFS_BLOCK_ROOT = "/sys/class/block"
SYSFS_ID_ATTRS = ("nguid", "uuid")
VENDOR_MODEL_RE = re.compile(r"ONTAP", re.IGNORECASE)

_DEVICE_PATH_RE = re.compile(r"^(/dev/nvme[0-9]+n[0-9]+)$")
_DEVICE_NAME_RE = re.compile(r"/dev/(nvme[0-9]+n[0-9]+)")
_SYSFS_NAME_RE = re.compile(r"^nvme[0-9]+n[0-9]+$")
_PORTAL_RE = re.compile(r"^[0-9a-fA-F.:]+$")

ONTAPDEVICES_TIMEOUT = 15
NVME_LIST_TIMEOUT = 10
LIST_SUBSYS_TIMEOUT = 5
CONNECT_TIMEOUT = 30


def normalize_identity(value: Optional[str]) -> str:
    """Lower-case an NVMe UUID/NGUID and drop every separator."""
    return re.sub(r"[^0-9a-z]", "", (value or "").lower())


def identities_match(left: Optional[str], right: Optional[str]) -> bool:
    left_id = normalize_identity(left)
    return bool(left_id) and left_id == normalize_identity(right)


def _pick(entry: dict, *keys: str, default: Any = None) -> Any:
    """Return the first present field among alternative spellings."""
    for key in keys:
        value = entry.get(key)
        if value is not None:
            return value
    return default


@dataclass(frozen=True)
class VendorDevice:
    """One row of ``nvme netapp ontapdevices -o json``."""

    device: str
    namespace_path: str = ""
    uuid: str = ""

    @classmethod
    def from_json(cls, entry: dict) -> Optional["VendorDevice"]:
        device = _pick(entry, "Device", "device")
        if not device:
            return None
        return cls(
            device=device,
            namespace_path=_pick(entry, "Namespace Path", "namespacepath", "namespace_path", default=""),
            uuid=_pick(entry, "UUID", "uuid", default=""),
        )


@dataclass(frozen=True)
class GenericDevice:
    """One row of ``nvme list -o json``."""

    node: str
    model: str = ""

    @classmethod
    def from_json(cls, entry: dict) -> Optional["GenericDevice"]:
        node = _pick(entry, "DevicePath", "NameSpace")
        if not node or not isinstance(node, str):
            return None
        return cls(node=node, model=_pick(entry, "ModelNumber", default="") or "")


def parse_vendor_devices(data: Any) -> List[VendorDevice]:
    if isinstance(data, dict):
        rows = data.get("ONTAPdevices") or []
    elif isinstance(data, list):
        rows = data
    else:
        rows = []
    return [dev for dev in (VendorDevice.from_json(row) for row in rows if isinstance(row, dict)) if dev]


def parse_generic_devices(data: Any) -> List[GenericDevice]:
    rows = (data.get("Devices") or []) if isinstance(data, dict) else []
    return [dev for dev in (GenericDevice.from_json(row) for row in rows if isinstance(row, dict)) if dev]


def run_json_command(cmd: List[str], timeout: int = 10) -> Optional[Any]:
    """Run a command and decode its stdout as JSON.

    Returns:
        Decoded data, or None when the command fails or prints no valid JSON
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        LOG.debug("Command timed out after %ss: %s", timeout, " ".join(cmd))
        return None
    except (subprocess.CalledProcessError, OSError) as e:
        LOG.debug("Command failed: %s: %s", " ".join(cmd), e)
        return None

    raw = (result.stdout or "").strip()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        LOG.debug("Command printed invalid JSON: %s", " ".join(cmd))
        return None


def _read_first_line(path: str) -> str:
    try:
        with open(path, "r") as f:
            return f.readline().strip()
    except OSError:
        return ""


def match_sysfs_identity(dev_name: str, target: str, sysfs_root: str = SYSFS_BLOCK_ROOT) -> bool:
    """Whether a block device's NGUID or UUID equals ``target``."""
    if not normalize_identity(target):
        return False
    for attr in SYSFS_ID_ATTRS:
        attr_path = os.path.join(sysfs_root, dev_name, attr)
        if not os.path.isfile(attr_path):
            continue
        if identities_match(_read_first_line(attr_path), target):
            return True
    return False


def find_by_vendor_tool(ns_uuid: str, ns_path: Optional[str] = None) -> Optional[str]:
    """Strategy 1: match ``nvme netapp ontapdevices`` by path or UUID."""
    data = run_json_command(["nvme", "netapp", "ontapdevices", "-o", "json"], ONTAPDEVICES_TIMEOUT)
    if data is None:
        return None

    for dev in parse_vendor_devices(data):
        match = _DEVICE_PATH_RE.match(dev.device)
        if not match:
            continue
        if ns_path and dev.namespace_path == ns_path:
            return match.group(1)
        if identities_match(dev.uuid, ns_uuid):
            return match.group(1)
    return None


def find_by_sysfs(ns_uuid: str, ns_path: Optional[str] = None, sysfs_root: str = SYSFS_BLOCK_ROOT) -> Optional[str]:
    """Strategy 2: compare the identity attributes of every NVMe block device."""
    try:
        entries = sorted(os.listdir(sysfs_root))
    except OSError:
        return None

    for name in entries:
        if not _SYSFS_NAME_RE.match(name):
            continue
        if match_sysfs_identity(name, ns_uuid, sysfs_root):
            return f"/dev/{name}"
    return None


def find_by_generic_tool(ns_uuid: str, ns_path: Optional[str] = None, sysfs_root: str = SYSFS_BLOCK_ROOT) -> Optional[str]:
    """Strategy 3: ``nvme list`` rows from ONTAP, confirmed via sysfs."""
    data = run_json_command(["nvme", "list", "-o", "json"], NVME_LIST_TIMEOUT)
    if data is None:
        return None

    for dev in parse_generic_devices(data):
        if not VENDOR_MODEL_RE.search(dev.model):
            continue
        match = _DEVICE_NAME_RE.search(dev.node)
        if not match:
            continue
        if match_sysfs_identity(match.group(1), ns_uuid, sysfs_root):
            return f"/dev/{match.group(1)}"
    return None


Strategy = Callable[[str, Optional[str]], Optional[str]]


def first_success(strategies: Iterable[Strategy], *args) -> Optional[str]:
    """Return the first non-empty strategy result."""
    for strategy in strategies:
        result = strategy(*args)
        if result:
            return result
    return None


class DeviceResolver:
    """Ordered lookup of the local block device of an ONTAP namespace."""

    def __init__(self, strategies: Optional[List[Strategy]] = None, sysfs_root: str = SYSFS_BLOCK_ROOT):
        self.sysfs_root = sysfs_root
        if strategies is None:
            strategies = [
                find_by_vendor_tool,
                lambda ns_uuid, ns_path: find_by_sysfs(ns_uuid, ns_path, self.sysfs_root),
                lambda ns_uuid, ns_path: find_by_generic_tool(ns_uuid, ns_path, self.sysfs_root),
            ]
        self.strategies = strategies

    def resolve(self, ns_uuid: str, ns_path: Optional[str] = None) -> Optional[str]:
        device = first_success(self.strategies, ns_uuid, ns_path)
        LOG.debug("Resolved namespace %s (%s) -> %s", ns_path, ns_uuid, device)
        return device


# Fabric connection management


def clean_portals(portals: Iterable[str]) -> List[str]:
    """Drop empty entries and anything that is not an IP address."""
    cleaned = []
    for portal in portals:
        portal = (portal or "").strip()
        if not portal:
            continue
        if not _PORTAL_RE.match(portal):
            LOG.warning("Ignoring invalid NVMe/TCP portal address %r", portal)
            continue
        cleaned.append(portal)
    return cleaned


def get_portals(configured: Optional[Iterable[str]], client) -> List[str]:
    """Return configured portals, or NVMe/TCP data LIFs discovered via the API.

    Raises:
        OntapPortalError: Nothing configured and discovery found nothing
    """
    portals = clean_portals(configured or [])
    if portals:
        return portals

    error = None
    try:
        portals = clean_portals(client.get_nvme_lif_addresses())
    except OntapNvmeException as e:
        error = e
        LOG.warning("Unable to discover NVMe/TCP data LIFs: %s", e)

    if not portals:
        raise OntapPortalError(
            "no NVMe/TCP portals configured and auto-discovery failed. "
            "Set 'portals' or ensure NVMe/TCP data LIFs exist."
            + (f" ({error})" if error else "")
        )
    return portals


def nvme_connect_all(portal: str) -> bool:
    """Run ``nvme connect-all`` against one portal; failures are logged only."""
    cmd = ["nvme", "connect-all", "-t", "tcp", "-a", portal]
    try:
        subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=CONNECT_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        LOG.warning("nvme connect-all to %s timed out", portal)
        return False
    except subprocess.CalledProcessError as e:
        LOG.warning("nvme connect-all to %s failed: %s", portal, e.stderr or e.stdout or e)
        return False
    except OSError as e:
        LOG.warning("nvme connect-all to %s failed: %s", portal, e)
        return False
    return True


def is_fabric_connected() -> bool:
    """Whether any NVMe/TCP controller is already connected."""
    data = run_json_command(["nvme", "list-subsys", "-o", "json"], LIST_SUBSYS_TIMEOUT)
    if data is None:
        return False
    return "tcp" in json.dumps(data).lower()


def ensure_connected(portals: List[str]) -> bool:
    """Connect to every portal unless controllers already exist.

    Returns:
        True when a connect was attempted
    """
    if is_fabric_connected():
        return False
    for portal in portals:
        nvme_connect_all(portal)
    return True


def rescan(portals: List[str], settle: float = 1) -> None:
    """Re-run discovery so that newly mapped namespaces show up."""
    for portal in portals:
        nvme_connect_all(portal)
    if settle:
        time.sleep(settle)
