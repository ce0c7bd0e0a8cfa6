# geom_io.py
import json
import logging

import numpy as np
import yaml

from geometry.element_mesh import ElementMesh
from parameters.global_parameters import GlobalParameters

logger = logging.getLogger("distortion_solver")

_FLOAT_PARAMS = ("proximal_weight", "soft_constraint_penalty", "tolerance")
_INT_PARAMS = ("num_workers", "chunk_size", "max_iterations")


def load_data(filename):
    """Load a mesh description from a JSON or YAML file.

    Expected format:
    {
        "vertices": [[x, y], ...] or [[x, y, z], ...],
        "elements": [[i, j, k], ...] or [[i, j, k, l], ...],
        "anchors": {vertex_index: [x, y], ...},          # optional
        "global_parameters": {"proximal_weight": 0.01}   # optional
    }"""
    filename_str = str(filename)
    with open(filename_str, "r") as f:
        if filename_str.endswith((".yaml", ".yml")):
            data = yaml.safe_load(f)
        elif filename_str.endswith(".json"):
            data = json.load(f)
        else:
            logger.error(f"Unsupported file format for: {filename_str}")
            raise ValueError(f"Unsupported file format for: {filename_str}")

    return data


def _coerce_params(params: GlobalParameters) -> None:
    """Coerce numeric parameters that may parse as strings in YAML (e.g. 1e-3)."""
    for key in _FLOAT_PARAMS + _INT_PARAMS:
        val = params.get(key)
        if not isinstance(val, str):
            continue
        try:
            num = float(val.strip())
        except ValueError:
            logger.warning("global_parameters.%s should be numeric; got %r", key, val)
            continue
        params.set(key, int(num) if key in _INT_PARAMS else num)
    for key in ("reuse_sparsity_pattern", "debug"):
        val = params.get(key)
        if isinstance(val, str):
            params.set(key, val.strip().lower() in {"1", "true", "yes", "on"})


def parse_anchors(raw) -> dict:
    """Return anchors as ``{vertex_index: target array}``.

    Accepts a mapping, or a list of ``[index, [x, y(, z)]]`` pairs.
    """
    if not raw:
        return {}
    items = raw.items() if isinstance(raw, dict) else raw
    anchors = {}
    for entry in items:
        idx, target = entry
        anchors[int(idx)] = np.asarray(target, dtype=float)
    return anchors


def parse_mesh(data: dict):
    """Build ``(ElementMesh, GlobalParameters, anchors)`` from loaded data."""
    if "vertices" not in data or "elements" not in data:
        raise KeyError("Mesh input requires 'vertices' and 'elements'.")

    mesh = ElementMesh(
        np.asarray(data["vertices"], dtype=float),
        np.asarray(data["elements"], dtype=np.int64),
    )

    global_params = GlobalParameters()
    global_params.update(data.get("global_parameters") or {})
    _coerce_params(global_params)

    anchors = parse_anchors(data.get("anchors"))
    for idx, target in anchors.items():
        if target.shape != (mesh.dim,):
            logger.warning(
                "Anchor for vertex %d has %d coordinates; expected %d.",
                idx,
                target.size,
                mesh.dim,
            )

    logger.debug(
        "Parsed mesh: %r with %d anchors.", mesh, len(anchors)
    )
    return mesh, global_params, anchors


def load_mesh(filename):
    """Load and parse a mesh file in one call."""
    return parse_mesh(load_data(filename))
