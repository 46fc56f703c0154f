"""Name mapping between hypervisor disk names and ONTAP object names.

Hypervisor names use hyphens (``vm-100-disk-0``, ``vm-100-state-snap1``);
ONTAP forbids ``-`` in volume names so the native form uses underscores
(``vm_100_disk_0``), optionally preceded by a storage prefix.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from .exceptions import InvalidVolumeName

SNAPSHOT_PREFIX = "hv_snap_"
GROUP_PREFIX = "hv_cg_vm_"

KIND_DISK = "disk"
KIND_STATE = "state"

_DISK_NATIVE_RE = re.compile(r"^vm_([0-9]+)_disk_([0-9]+)$")
_STATE_NATIVE_RE = re.compile(r"^vm_([0-9]+)_state_(.+)$")
_DISK_VOLNAME_RE = re.compile(r"^(vm-([0-9]+)-disk-([0-9]+))$")
_STATE_VOLNAME_RE = re.compile(r"^(vm-([0-9]+)-state-\S+)$")


@dataclass(frozen=True)
class VolumeName:
    """A parsed hypervisor volume name."""

    kind: str
    name: str
    owner_id: int


def parse_volname(volname: str) -> VolumeName:
    """Parse ``vm-<owner>-disk-<idx>`` or ``vm-<owner>-state-<label>``.

    Raises:
        InvalidVolumeName: Name matches neither form
    """
    match = _DISK_VOLNAME_RE.match(volname or "")
    if match:
        return VolumeName(KIND_DISK, match.group(1), int(match.group(2)))

    match = _STATE_VOLNAME_RE.match(volname or "")
    if match:
        return VolumeName(KIND_STATE, match.group(1), int(match.group(2)))

    raise InvalidVolumeName(f"unable to parse ONTAP NVMe volume name '{volname}'")


def _strip_prefix(name: str, prefix: str) -> str:
    if prefix and name.startswith(prefix):
        return name[len(prefix):]
    return name


def _unprefixed(native: str, prefix: str) -> Optional[str]:
    native = native or ""
    if prefix and not native.startswith(prefix):
        return None
    return native[len(prefix or ""):]


def to_native(name: str, prefix: str = "") -> str:
    """Translate a hypervisor name to its ONTAP object name."""
    return f"{prefix or ''}{name.replace('-', '_')}"


def from_native(native: str, prefix: str = "") -> str:
    """Translate an ONTAP object name back to the hypervisor name.

    Names that are neither disk nor state volumes are returned without the
    prefix but otherwise unchanged.
    """
    name = _strip_prefix(native, prefix or "")

    match = _DISK_NATIVE_RE.match(name)
    if match:
        return f"vm-{match.group(1)}-disk-{match.group(2)}"

    match = _STATE_NATIVE_RE.match(name)
    if match:
        return f"vm-{match.group(1)}-state-{match.group(2)}"

    return name


def disk_name(owner_id: int, index: int, prefix: str = "") -> str:
    return f"{prefix or ''}vm_{owner_id}_disk_{index}"


def parse_disk_name(native: str, prefix: str = "") -> Optional[Tuple[int, int]]:
    """Return ``(owner_id, index)`` for a native disk name, else None."""
    name = _unprefixed(native, prefix)
    match = _DISK_NATIVE_RE.match(name) if name is not None else None
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def parse_state_name(native: str, prefix: str = "") -> Optional[Tuple[int, str]]:
    """Return ``(owner_id, label)`` for a native state name, else None."""
    name = _unprefixed(native, prefix)
    match = _STATE_NATIVE_RE.match(name) if name is not None else None
    if not match:
        return None
    return int(match.group(1)), match.group(2)


def group_name(owner_id: int, prefix: str = "") -> str:
    return f"{prefix or ''}{GROUP_PREFIX}{owner_id}"


def snapshot_name(label: str) -> str:
    return f"{SNAPSHOT_PREFIX}{label}"


def parse_snapshot_name(name: str) -> Optional[str]:
    """Strip the reserved snapshot prefix; None for foreign snapshots."""
    if name and name.startswith(SNAPSHOT_PREFIX) and len(name) > len(SNAPSHOT_PREFIX):
        return name[len(SNAPSHOT_PREFIX):]
    return None


def namespace_path(volume: str, namespace: Optional[str] = None) -> str:
    """ONTAP namespace path; the namespace shares its volume's name by default."""
    return f"/vol/{volume}/{namespace or volume}"


def pending_device_path(native: str) -> str:
    """Placeholder path handed out while a namespace is not yet visible."""
    return f"/dev/ontap-nvme-pending/{native}"
