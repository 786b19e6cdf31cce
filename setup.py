# SPDX-License-Identifier: LGPL-3.0-or-later
from setuptools import setup, find_packages

setup(
    name="vmi",
    version="0.1.0",
    description="Convert and inspect VM disk images: raw, VMDK, OVF/OVA, AWS AMI, GCE",
    packages=find_packages(include=["vmi", "vmi.*"]),
    python_requires=">=3.8",
    install_requires=[l.strip() for l in open("requirements.txt", encoding="utf-8") if l.strip() and not l.startswith("#")],
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["vmi=vmi.__main__:main"]},
)
