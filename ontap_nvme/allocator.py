"""Free disk index allocation."""

import re

from oslo_log import log as logging

from . import naming
from .exceptions import AllocationExhausted

LOG = logging.getLogger(__name__)

DEFAULT_MAX_INDEX = 256


def find_free_disk_index(client, owner_id: int, prefix: str = "", max_index: int = DEFAULT_MAX_INDEX) -> int:
    """Return the lowest disk index not used by any volume or namespace of an owner.

    Both namespaces and volumes are scanned so that a half-deleted disk
    (volume left behind, namespace gone) still reserves its index. Names that
    do not parse are ignored.

    Args:
        client: OntapNvmeClient
        owner_id: Numeric owner (VM) id
        prefix: Storage prefix of native names
        max_index: Number of indices available to the owner

    Returns:
        Free index

    Raises:
        AllocationExhausted: Every index below max_index is taken
    """
    prefix = prefix or ""
    used = set()

    base = f"{prefix}vm_{owner_id}_disk_*"
    ns_re = re.compile(r"^/vol/([^/]+)/")

    for ns in client.list_namespaces(f"/vol/{base}/{base}"):
        match = ns_re.match(ns.get("name") or "")
        if not match:
            continue
        parsed = naming.parse_disk_name(match.group(1), prefix)
        if parsed and parsed[0] == owner_id:
            used.add(parsed[1])

    for vol in client.list_volumes(base):
        parsed = naming.parse_disk_name(vol.get("name") or "", prefix)
        if parsed and parsed[0] == owner_id:
            used.add(parsed[1])

    for index in range(max_index):
        if index not in used:
            LOG.debug("Free disk index for owner %s: %d (used: %s)", owner_id, index, sorted(used))
            return index

    raise AllocationExhausted(
        f"no free disk index for VM {owner_id} ({max_index} disks max)",
        owner_id=owner_id,
    )
