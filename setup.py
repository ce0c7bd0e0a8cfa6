from __future__ import annotations

from setuptools import find_namespace_packages, setup

setup(
    name="distortion-solver",
    version="0.1.0",
    description=(
        "Per-element Jacobians and weighted least-squares assembly for "
        "local-global distortion minimization on simplicial meshes."
    ),
    python_requires=">=3.9",
    packages=find_namespace_packages(
        include=[
            "core",
            "core.*",
            "geometry",
            "geometry.*",
            "parameters",
            "parameters.*",
            "runtime",
            "runtime.*",
            "distortion_solver",
            "distortion_solver.*",
        ]
    ),
    install_requires=[
        "numpy>=1.21",
        "scipy>=1.8",
        "PyYAML>=5.4",
    ],
    extras_require={"test": ["pytest>=7"]},
)
