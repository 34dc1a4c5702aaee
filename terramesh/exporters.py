"""Pluggable mesh exporters.

Every exporter takes the one merged ``MeshBuffer`` and returns file bytes.
OBJ is written directly (a lossless vertex/face list with vertex colors);
the binary formats go through ``trimesh`` and 3MF is assembled by
``export_3mf``.
"""

import io
import logging
import pathlib
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import trimesh

from .errors import ConfigurationError
from .export_3mf import generate_3mf
from .models import MeshBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Exporter:
    name: str
    suffix: str
    media_type: str
    write: Callable[[MeshBuffer], bytes]


EXPORTERS: dict[str, Exporter] = {}


def register_exporter(name: str, suffix: str, media_type: str):
    """Decorator adding an export function to ``EXPORTERS``."""
    def decorator(func):
        EXPORTERS[name] = Exporter(name, suffix, media_type, func)
        return func
    return decorator


def get_exporter(name: str) -> Exporter:
    try:
        return EXPORTERS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown export format {name!r}; choose from {sorted(EXPORTERS)}") from None


@register_exporter("obj", ".obj", "text/plain")
def export_obj(mesh: MeshBuffer) -> bytes:
    out = io.StringIO()
    out.write("# terramesh OBJ export\n")
    out.write(f"# {mesh.vertex_count} vertices, {mesh.face_count} faces\n")
    if mesh.colors is not None:
        for (x, y, z), (r, g, b) in zip(mesh.positions, mesh.colors):
            out.write(f"v {x:.6f} {y:.6f} {z:.6f} {r:.4f} {g:.4f} {b:.4f}\n")
    else:
        for x, y, z in mesh.positions:
            out.write(f"v {x:.6f} {y:.6f} {z:.6f}\n")
    for a, b, c in mesh.indices + 1:
        out.write(f"f {a} {b} {c}\n")
    return out.getvalue().encode("utf-8")


@register_exporter("stl", ".stl", "model/stl")
def export_stl(mesh: MeshBuffer) -> bytes:
    return mesh.to_trimesh().export(file_type="stl")


@register_exporter("ply", ".ply", "application/octet-stream")
def export_ply(mesh: MeshBuffer) -> bytes:
    return mesh.to_trimesh().export(file_type="ply")


@register_exporter("glb", ".glb", "model/gltf-binary")
def export_glb(mesh: MeshBuffer) -> bytes:
    """glTF is Y-up: rotate the Z-up mesh by -90 degrees about X."""
    tm = mesh.to_trimesh()
    tm.apply_transform(trimesh.transformations.rotation_matrix(-np.pi / 2, [1, 0, 0]))
    return trimesh.Scene(tm).export(file_type="glb")


@register_exporter("3mf", ".3mf", "model/3mf")
def export_3mf(mesh: MeshBuffer) -> bytes:
    """One colored body per layer, for multi-material printing."""
    return generate_3mf(mesh)


def export_mesh(mesh: MeshBuffer, fmt: str = "obj") -> bytes:
    return get_exporter(fmt).write(mesh)


def write_mesh(mesh: MeshBuffer, path, fmt: Optional[str] = None) -> pathlib.Path:
    """Write ``mesh`` to ``path``; the format defaults to the file suffix."""
    path = pathlib.Path(path)
    fmt = fmt or path.suffix.lstrip(".") or "obj"
    data = export_mesh(mesh, fmt)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    size_mb = len(data) / 1024 / 1024
    logger.info(f"Wrote {fmt.upper()} file: {path} ({size_mb:.1f} MB)")
    return path
