"""Package utilities for distortion-solver.

The solver core lives in top-level packages like `geometry/`, `runtime/`,
`core/` and `parameters/`. This package only exposes the distribution
version.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("distortion-solver")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
