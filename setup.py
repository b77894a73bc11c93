#!/usr/bin/env python

import re

from setuptools import find_packages, setup


def read_version():
    with open("zoneplayer/__init__.py", encoding="utf-8") as init_file:
        return re.search(
            r'^__version__ = "([^"]+)"', init_file.read(), re.MULTILINE
        ).group(1)


setup(
    name="zoneplayer",
    version=read_version(),
    description="asyncio client for the UPnP events of Sonos ZonePlayers",
    license="MIT License",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    python_requires=">=3.8",
    install_requires=["aiohttp>=3.7"],
    extras_require={
        # We don't run integration tests which need an actual Sonos device
        # unless --ip is given, see tests/conftest.py
        "testing": ["pytest>=6", "pytest-asyncio>=0.17"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Framework :: AsyncIO",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Topic :: Home Automation",
        "Topic :: Multimedia :: Sound/Audio",
    ],
)
