#!/usr/bin/env python3
"""
Entry point for the ontap-nvme CLI tool.
"""

import sys

from ontap_nvme.cli.cli import main

if __name__ == "__main__":
    sys.exit(main())
