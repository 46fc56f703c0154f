"""Utility functions for the ONTAP NVMe/TCP storage backend."""

import os
import stat
import subprocess
from typing import Optional

from .exceptions import OntapNvmeException

HOSTNQN_PATH = "/etc/nvme/hostnqn"

DEFAULT_VOLUME_OVERHEAD = 1.05
DEFAULT_MIN_NAMESPACE_BYTES = 20 * 1024 * 1024


def kib_to_bytes(size_kib: int) -> int:
    return int(size_kib) * 1024


def namespace_size(size_kib: int, min_bytes: int = DEFAULT_MIN_NAMESPACE_BYTES) -> int:
    """Namespace size in bytes for a request in KiB, raised to the minimum extent."""
    return max(kib_to_bytes(size_kib), int(min_bytes))


def volume_size(ns_bytes: int, overhead: float = DEFAULT_VOLUME_OVERHEAD) -> int:
    """Volume size holding a namespace: ``ns_bytes * overhead`` truncated toward zero."""
    return int(ns_bytes * overhead)


def read_host_nqn(path: str = HOSTNQN_PATH) -> str:
    """Read this host's NVMe qualified name.

    Raises:
        OntapNvmeException: File missing or empty
    """
    try:
        with open(path, "r") as f:
            nqn = f.readline().strip()
    except OSError as e:
        raise OntapNvmeException(f"cannot read host NQN from {path}: {e}")

    if not nqn:
        raise OntapNvmeException(f"cannot read host NQN from {path}")
    return nqn


def is_block_device(path: Optional[str]) -> bool:
    if not path:
        return False
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def parse_block_size(block_size: str) -> int:
    """Convert a dd block size such as ``4M`` or ``512K`` to bytes."""
    units = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
    text = str(block_size).strip().upper()
    if text and text[-1] in units:
        return int(text[:-1]) * units[text[-1]]
    return int(text)


def copy_block_device(
    source_path: str,
    dest_path: str,
    size_bytes: int,
    block_size: str = "4M",
    timeout: Optional[int] = None,
) -> None:
    """Copy ``size_bytes`` from one block device to another with dd.

    The block count is rounded up so the whole extent is covered.

    Raises:
        OntapNvmeException: If dd fails or times out
    """
    try:
        bs_bytes = parse_block_size(block_size)
    except ValueError:
        bs_bytes = 0
    if bs_bytes <= 0:
        raise OntapNvmeException(f"Invalid block size for copy: {block_size!r}")
    count = size_bytes // bs_bytes + 1

    cmd = [
        "dd",
        f"if={source_path}",
        f"of={dest_path}",
        f"bs={block_size}",
        f"count={count}",
        "conv=fdatasync",
        "status=none",
    ]

    try:
        subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise OntapNvmeException(f"Block copy timed out after {timeout}s: {source_path} -> {dest_path}")
    except subprocess.CalledProcessError as e:
        error_msg = e.stderr or e.stdout or str(e)
        raise OntapNvmeException(f"Failed to copy {source_path} -> {dest_path}: {error_msg}")
    except OSError as e:
        raise OntapNvmeException(f"Failed to run dd for {source_path} -> {dest_path}: {e}")
