#!/usr/bin/env python3
"""pbdeploy CLI - Setup"""

from setuptools import setup, find_packages

with open("requirements.txt") as f:
    requirements = [line for line in f.read().splitlines() if line and not line.startswith("#")]

setup(
    name="pbdeploy",
    version="1.0.0",
    description="Provision, harden and deploy PocketBase apps on your own servers over SSH",
    author="pbdeploy Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"pbdeploy": ["stubs/*/*.j2"]},
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "pbdeploy=pbdeploy.main:main",
        ],
    },
    python_requires=">=3.11",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
