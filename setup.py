#!/usr/bin/env python
"""
distributed_heat setup script
"""

from setuptools import setup, find_packages
import os

# read README if present
here = os.path.abspath(os.path.dirname(__file__))
long_description = ""
readme_path = os.path.join(here, "README.md")
if os.path.exists(readme_path):
    with open(readme_path, "r", encoding="utf-8") as fh:
        long_description = fh.read()

setup(
    name="distributed-heat",
    version="0.1.0",
    description="MPI-distributed 2D Jacobi heat relaxation with optional CUDA offload",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "examples*", "docs*", "results*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering",
        "Topic :: System :: Distributed Computing",
    ],
    python_requires=">=3.8",
    install_requires=[
        "torch>=2.2.0",
        "mpi4py>=3.1.0",
        "numpy>=1.21.0",
        "psutil>=5.9.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-mpi>=0.6",
        ],
    },
    entry_points={
        "console_scripts": [
            "distributed-heat=distributed_heat.__main__:main",
        ],
    },
)
