"""
ONTAP NVMe/TCP block storage backend.

Provisions hypervisor disks as NVMe namespaces on NetApp ONTAP, one FlexVol
per disk, grouped per VM for crash-consistent snapshots, and resolves them to
local block devices over NVMe/TCP.
"""

__version__ = "1.0.0"
__all__ = ["cli", "client", "driver"]
