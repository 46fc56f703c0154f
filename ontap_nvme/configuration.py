"""Configuration options for the ONTAP NVMe/TCP storage backend."""

from dataclasses import dataclass
from typing import Optional

from oslo_config import cfg

# Configuration group name
CONF_GROUP = "ontap_nvme"


def _get_ontap_nvme_opts():
    """Get ONTAP NVMe configuration options.

    Returns:
        List of oslo_config options
    """
    return [
        # Array connection
        cfg.StrOpt(
            "mgmt_ip",
            help="ONTAP cluster or SVM management IP address or hostname.",
        ),
        cfg.StrOpt(
            "username",
            help="ONTAP API user name.",
        ),
        cfg.StrOpt(
            "password",
            secret=True,
            help="ONTAP API password.",
        ),
        cfg.StrOpt(
            "vserver",
            help="ONTAP SVM (Vserver) that owns all volumes and namespaces.",
        ),
        cfg.BoolOpt(
            "verify_ssl",
            default=False,
            help="Verify the ONTAP TLS certificate.",
        ),
        cfg.IntOpt(
            "api_timeout",
            default=30,
            min=1,
            max=300,
            help="API request timeout in seconds",
        ),
        cfg.IntOpt(
            "api_retry_count",
            default=3,
            min=0,
            max=10,
            help="Number of retries for idempotent (GET) API requests",
        ),
        cfg.IntOpt(
            "job_poll_interval",
            default=1,
            min=1,
            help="Seconds between polls of an asynchronous ONTAP job",
        ),
        cfg.IntOpt(
            "job_poll_max",
            default=120,
            min=1,
            help="Maximum number of polls before an ONTAP job is considered timed out",
        ),
        # NVMe fabric
        cfg.StrOpt(
            "subsystem",
            help="NVMe subsystem every namespace is mapped to.",
        ),
        cfg.ListOpt(
            "portals",
            default=[],
            help=(
                "NVMe/TCP target portal addresses. When empty, data LIFs serving "
                "data_nvme_tcp are discovered through the API."
            ),
        ),
        cfg.IntOpt(
            "device_wait_retries",
            default=10,
            min=0,
            help="Seconds to wait for a freshly allocated namespace to appear locally",
        ),
        # Volume provisioning
        cfg.StrOpt(
            "aggregate",
            help="ONTAP aggregate for volume creation.",
        ),
        cfg.StrOpt(
            "storage_prefix",
            default="",
            help="Prefix for all ONTAP object names created by this backend.",
        ),
        cfg.StrOpt(
            "snapshot_policy",
            default="none",
            help="ONTAP snapshot policy assigned to new volumes.",
        ),
        cfg.StrOpt(
            "space_reserve",
            default="none",
            choices=["none", "volume"],
            help="Volume space guarantee.",
        ),
        cfg.BoolOpt(
            "encryption",
            default=None,
            help=(
                "Volume encryption. Unset or True enables NVE unless the aggregate "
                "already uses NAE; False disables it explicitly."
            ),
        ),
        cfg.StrOpt(
            "qos_policy",
            help="QoS policy group for new volumes.",
        ),
        cfg.StrOpt(
            "adaptive_qos_policy",
            help="Adaptive QoS policy group (ignored when qos_policy is set).",
        ),
        cfg.IntOpt(
            "snapshot_reserve",
            min=0,
            max=90,
            help="Snapshot reserve percent. Defaults to 0 with snapshot policy none, else 5.",
        ),
        cfg.StrOpt(
            "tiering_policy",
            help="FabricPool tiering policy.",
        ),
        cfg.FloatOpt(
            "volume_overhead",
            default=1.05,
            min=1.0,
            help="Volume size as a multiple of namespace size (WAFL metadata headroom).",
        ),
        cfg.IntOpt(
            "min_namespace_bytes",
            default=20 * 1024 * 1024,
            min=4096,
            help="Smallest namespace the backend will create, in bytes.",
        ),
        cfg.IntOpt(
            "max_disk_index",
            default=256,
            min=1,
            help="Number of disk indices available to each owner.",
        ),
        cfg.BoolOpt(
            "best_effort_group_maintenance",
            default=True,
            help=(
                "Log and continue when consistency group maintenance fails. "
                "When False such failures abort the surrounding operation."
            ),
        ),
        cfg.StrOpt(
            "copy_block_size",
            default="4M",
            help="dd block size used for full clones",
        ),
    ]


def register_opts(conf, group=None):
    """Register ONTAP NVMe configuration options.

    Args:
        conf: oslo_config.cfg.ConfigOpts instance
        group: Configuration group name (default: CONF_GROUP)
    """
    if group is None:
        group = CONF_GROUP
    conf.register_opts(_get_ontap_nvme_opts(), group=group)


def list_opts():
    """Return a list of options for oslo-config-generator.

    Returns:
        List of (group_name, options) tuples
    """
    return [
        (CONF_GROUP, _get_ontap_nvme_opts()),
    ]


def get_ontap_nvme_opts():
    """Get ONTAP NVMe configuration options (public API)."""
    return _get_ontap_nvme_opts()


def load_configuration(config_files=None, conf=None):
    """Parse config files and return the ``ontap_nvme`` option group.

    Args:
        config_files: List of INI files to read
        conf: ConfigOpts instance (default: a fresh one)

    Returns:
        Group attribute object exposing the options as attributes
    """
    if conf is None:
        conf = cfg.ConfigOpts()
    register_opts(conf)
    conf(args=[], default_config_files=config_files or [])
    return getattr(conf, CONF_GROUP)


@dataclass(frozen=True)
class ConnectionContext:
    """Array endpoint, credentials and SVM scope of one client."""

    host: str
    username: str
    password: str
    vserver: str
    verify_ssl: bool = False

    def __post_init__(self):
        for key in ("host", "username", "password", "vserver"):
            if not getattr(self, key):
                raise ValueError(f"{key} required")

    @property
    def base_url(self) -> str:
        return f"https://{self.host}/api"

    @classmethod
    def from_configuration(cls, configuration, password: Optional[str] = None) -> "ConnectionContext":
        """Build a context from an ``ontap_nvme`` option group."""
        return cls(
            host=configuration.mgmt_ip,
            username=configuration.username,
            password=password if password is not None else configuration.password,
            vserver=configuration.vserver,
            verify_ssl=bool(configuration.verify_ssl),
        )
