"""Per-owner consistency group maintenance.

Every owner (VM) gets one ONTAP consistency group holding all of its disk
volumes, so that snapshots of multi-disk VMs are taken atomically. Group
membership is an enhancement over plain volumes: by default a failure here is
logged and the surrounding disk operation carries on.
"""

from typing import Any, Dict, Optional

from oslo_log import log as logging

from . import naming
from .exceptions import OntapNvmeException

LOG = logging.getLogger(__name__)


class GroupManager:
    """Idempotent get-or-create and cleanup of per-owner consistency groups."""

    def __init__(self, client, prefix: str = "", best_effort: bool = True):
        self.client = client
        self.prefix = prefix or ""
        self.best_effort = best_effort

    def name_for(self, owner_id: int) -> str:
        return naming.group_name(owner_id, self.prefix)

    def get(self, owner_id: int) -> Optional[Dict[str, Any]]:
        return self.client.get_consistency_group(self.name_for(owner_id))

    def _failed(self, msg: str, error: Exception) -> None:
        if not self.best_effort:
            LOG.error("%s: %s", msg, error)
            raise error
        LOG.warning("%s: %s", msg, error)

    def ensure(self, owner_id: int, volume_name: str) -> Optional[Dict[str, Any]]:
        """Make sure ``volume_name`` is a member of the owner's group.

        Returns:
            The (refreshed) group, or None when it could not be created
        """
        cg_name = self.name_for(owner_id)
        group = self.client.get_consistency_group(cg_name)

        if not group:
            try:
                self.client.create_consistency_group(cg_name, [volume_name])
            except OntapNvmeException as e:
                self._failed(f"Failed to create consistency group {cg_name}", e)
                return None
            LOG.info("Created consistency group %s with volume %s", cg_name, volume_name)
            return self.client.get_consistency_group(cg_name)

        members = [vol.get("name") for vol in group.get("volumes") or []]
        if volume_name in members:
            return group

        try:
            self.client.add_volume_to_consistency_group(group["uuid"], volume_name)
            LOG.info("Added volume %s to consistency group %s", volume_name, cg_name)
        except OntapNvmeException as e:
            self._failed(f"Failed to add {volume_name} to consistency group {cg_name}", e)

        return self.client.get_consistency_group(cg_name)

    def cleanup_if_empty(self, owner_id: int) -> bool:
        """Delete the owner's group when it has no member volumes left.

        Returns:
            True if the group was deleted
        """
        cg_name = self.name_for(owner_id)
        group = self.client.get_consistency_group(cg_name)
        if not group or group.get("volumes"):
            return False

        try:
            self.client.delete_consistency_group(group["uuid"])
        except OntapNvmeException as e:
            self._failed(f"Failed to delete empty consistency group {cg_name}", e)
            return False

        LOG.info("Deleted empty consistency group %s", cg_name)
        return True
