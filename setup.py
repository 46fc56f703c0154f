#!/usr/bin/env python3
"""
Setup script for the ONTAP NVMe/TCP storage backend.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

packages = find_packages(where=".", include=["ontap_nvme", "ontap_nvme.*"])

setup(
    name="ontap-nvme-storage",
    version="1.0.0",
    author="ONTAP NVMe Storage Project",
    description="NetApp ONTAP NVMe/TCP block storage backend for hypervisor disks",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache-2.0",
    packages=packages,
    package_dir={"": "."},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0.0"],
    },
    entry_points={
        "console_scripts": [
            "ontap-nvme=ontap_nvme.cli.cli:main",
        ],
        "oslo.config.opts": [
            "ontap_nvme = ontap_nvme.configuration:list_opts",
        ],
    },
)
