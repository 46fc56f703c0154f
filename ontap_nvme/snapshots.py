"""Snapshot handling with consistency-group-first, per-volume fallback.

Snapshots live either on the owner's consistency group (atomic across all of
its disks) or on a single volume, the latter for disks that were snapshotted
before a group existed. Every operation looks at the layers in
``GROUP_FIRST`` order.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from oslo_log import log as logging

from . import naming
from .exceptions import OntapSnapshotNotFound, OntapVolumeNotFound

LOG = logging.getLogger(__name__)

LAYER_GROUP = "group"
LAYER_VOLUME = "volume"

# When a label exists on both layers the group copy wins for rollback,
# delete and listing.
GROUP_FIRST: Tuple[str, str] = (LAYER_GROUP, LAYER_VOLUME)


@dataclass(frozen=True)
class SnapshotRecord:
    name: str
    id: str
    timestamp: int
    comment: str = ""
    layer: str = LAYER_VOLUME


def parse_create_time(value) -> int:
    """Convert an ONTAP ``create_time`` (ISO 8601) to epoch seconds."""
    if not value:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return int(datetime.fromisoformat(text).timestamp())
    except ValueError:
        LOG.debug("Unparseable snapshot create_time %r", value)
        return 0


def default_comment(owner_id: int) -> str:
    return f"Snapshot for VM {owner_id} at {time.strftime('%Y-%m-%d %H:%M:%S')}"


class SnapshotStrategy:
    """Create, roll back, delete and list snapshots across both layers."""

    def __init__(self, client, prefix: str = "", layer_order: Tuple[str, ...] = GROUP_FIRST):
        self.client = client
        self.prefix = prefix or ""
        self.layer_order = layer_order

    def _group(self, owner_id: int):
        return self.client.get_consistency_group(naming.group_name(owner_id, self.prefix))

    def _volume_uuid(self, volume_name: str) -> Optional[str]:
        return self.client.get_volume_uuid(naming.to_native(volume_name, self.prefix))

    def _find(self, layer: str, owner_id: int, volume_name: str, snap_name: str):
        """Return ``(scope_uuid, snapshot)`` for a layer, or ``(scope_uuid, None)``."""
        if layer == LAYER_GROUP:
            group = self._group(owner_id)
            if not group:
                return None, None
            return group["uuid"], self.client.get_cg_snapshot_by_name(group["uuid"], snap_name)

        vol_uuid = self._volume_uuid(volume_name)
        if not vol_uuid:
            return None, None
        return vol_uuid, self.client.get_snapshot_by_name(vol_uuid, snap_name)

    def create(self, owner_id: int, volume_name: str, label: str, comment: Optional[str] = None) -> str:
        """Create a snapshot; an existing one with the same label is left alone.

        The group layer is used whenever the owner has a group. Only owners
        without a group get a per-volume snapshot.

        Returns:
            The layer holding the snapshot
        """
        snap_name = naming.snapshot_name(label)
        comment = comment or default_comment(owner_id)

        group = self._group(owner_id)
        if group:
            if self.client.get_cg_snapshot_by_name(group["uuid"], snap_name):
                LOG.debug("Group snapshot %s already exists for VM %s", snap_name, owner_id)
            else:
                self.client.create_cg_snapshot(group["uuid"], snap_name, comment)
                LOG.info("Created group snapshot %s for VM %s", snap_name, owner_id)
            return LAYER_GROUP

        vol_uuid = self._volume_uuid(volume_name)
        if not vol_uuid:
            raise OntapVolumeNotFound(f"volume '{volume_name}' not found")

        if self.client.get_snapshot_by_name(vol_uuid, snap_name):
            LOG.debug("Volume snapshot %s already exists on %s", snap_name, volume_name)
        else:
            self.client.create_snapshot(vol_uuid, snap_name, comment)
            LOG.info("Created volume snapshot %s on %s", snap_name, volume_name)
        return LAYER_VOLUME

    def rollback(self, owner_id: int, volume_name: str, label: str) -> str:
        """Restore the first layer holding the snapshot.

        Raises:
            OntapSnapshotNotFound: Neither layer has the snapshot
        """
        snap_name = naming.snapshot_name(label)

        for layer in self.layer_order:
            scope_uuid, snap = self._find(layer, owner_id, volume_name, snap_name)
            if not snap:
                continue
            if layer == LAYER_GROUP:
                self.client.restore_cg_snapshot(scope_uuid, snap["uuid"])
            else:
                self.client.restore_snapshot(scope_uuid, snap["uuid"])
            LOG.info("Rolled back %s to %s snapshot %s", volume_name, layer, snap_name)
            return layer

        raise OntapSnapshotNotFound(f"snapshot '{label}' not found on volume '{volume_name}'")

    def delete(self, owner_id: int, volume_name: str, label: str) -> Optional[str]:
        """Delete the snapshot from the first layer holding it.

        Returns:
            The layer it was deleted from, or None if it did not exist
        """
        snap_name = naming.snapshot_name(label)

        for layer in self.layer_order:
            scope_uuid, snap = self._find(layer, owner_id, volume_name, snap_name)
            if not snap:
                continue
            if layer == LAYER_GROUP:
                self.client.delete_cg_snapshot(scope_uuid, snap["uuid"])
            else:
                self.client.delete_snapshot(scope_uuid, snap["uuid"])
            LOG.info("Deleted %s snapshot %s of %s", layer, snap_name, volume_name)
            return layer

        LOG.debug("Snapshot %s of %s not found, nothing to delete", snap_name, volume_name)
        return None

    def list(self, owner_id: int, volume_name: str) -> Dict[str, SnapshotRecord]:
        """Return snapshots of both layers keyed by logical name."""
        name_filter = f"{naming.SNAPSHOT_PREFIX}*"
        result: Dict[str, SnapshotRecord] = {}

        for layer in self.layer_order:
            if layer == LAYER_GROUP:
                group = self._group(owner_id)
                snaps = self.client.list_cg_snapshots(group["uuid"], name_filter) if group else []
            else:
                vol_uuid = self._volume_uuid(volume_name)
                snaps = self.client.list_snapshots(vol_uuid, name_filter) if vol_uuid else []

            for snap in snaps:
                label = naming.parse_snapshot_name(snap.get("name") or "")
                if label is None or label in result:
                    continue
                result[label] = SnapshotRecord(
                    name=label,
                    id=snap.get("uuid") or "",
                    timestamp=parse_create_time(snap.get("create_time")),
                    comment=snap.get("comment") or "",
                    layer=layer,
                )

        return result
