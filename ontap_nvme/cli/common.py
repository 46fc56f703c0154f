"""
Shared CLI state: configuration files and driver construction.
"""

from typing import List, Optional

from oslo_config import cfg
from oslo_log import log as logging

from ontap_nvme.configuration import load_configuration
from ontap_nvme.driver import OntapNvmeDriver

DEFAULT_CONFIG_FILE = "/etc/ontap-nvme/ontap-nvme.conf"
PROGRAM = "ontap-nvme"

state = {
    "config_files": [DEFAULT_CONFIG_FILE],
    "debug": False,
}


def load_conf(config_files: Optional[List[str]] = None):
    """Parse configuration and set up logging.

    Returns:
        The ``ontap_nvme`` option group
    """
    conf = cfg.ConfigOpts()
    logging.register_options(conf)
    configuration = load_configuration(config_files or state["config_files"], conf=conf)
    if state["debug"]:
        conf.set_override("debug", True)
    logging.setup(conf, PROGRAM)
    return configuration


def get_driver() -> OntapNvmeDriver:
    """Build a driver from the configured files."""
    driver = OntapNvmeDriver(load_conf())
    driver.do_setup()
    return driver
