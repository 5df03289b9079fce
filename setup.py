# SPDX-License-Identifier: LGPL-3.0-or-later
from setuptools import setup, find_packages

setup(
    name="vdiskmigrate",
    version="0.1.0",
    packages=find_packages(include=["vdiskmigrate", "vdiskmigrate.*"]),
    python_requires=">=3.8",
    install_requires=[l.strip() for l in open("requirements.txt", encoding="utf-8") if l.strip() and not l.startswith("#")],
    extras_require={
        # libnbd python bindings, normally from the distro (python3-libnbd)
        "nbd": ["nbd"],
        "test": ["pytest"],
    },
)
