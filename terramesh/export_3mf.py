"""3MF multi-body export for multi-color 3D printing.

Splits the merged mesh into one body per vector layer plus the terrain,
each with its own material color, so slicers such as PrusaSlicer or
Bambu Studio can assign a filament per body. Mesh units are written as
millimetres: the default 200-unit model prints 200 mm wide.
"""

import io
import logging
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass

import numpy as np

from . import constants
from .models import MeshBuffer

logger = logging.getLogger(__name__)

# 3MF namespace constants
NS_CORE = "http://schemas.microsoft.com/3dmanufacturing/core/2015/02"
NS_MAT = "http://schemas.microsoft.com/3dmanufacturing/material/2015/02"

CONTENT_TYPES = """<?xml version="1.0" encoding="UTF-8"?>
<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">
  <Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>
  <Default Extension="model" ContentType="application/vnd.ms-package.3dmanufacturing-3dmodel+xml"/>
</Types>"""

RELS = """<?xml version="1.0" encoding="UTF-8"?>
<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">
  <Relationship Target="/3D/3dmodel.model" Id="rel0"
    Type="http://schemas.microsoft.com/3dmanufacturing/2013/01/3dmodel"/>
</Relationships>"""

MODEL_PATH = "3D/3dmodel.model"
MATERIAL_ID_START = 100


@dataclass
class Body:
    name: str
    positions: np.ndarray
    indices: np.ndarray
    color: tuple[int, int, int]


def _rgb_to_hex(r, g, b) -> str:
    return f'#{r:02X}{g:02X}{b:02X}FF'


def _unpack(color: int) -> tuple[int, int, int]:
    return (color >> 16) & 0xFF, (color >> 8) & 0xFF, color & 0xFF


def _extract(mesh: MeshBuffer, faces: np.ndarray, name: str, color) -> Body:
    """Sub-mesh made of ``faces`` with its vertices renumbered from zero."""
    used, inverse = np.unique(faces, return_inverse=True)
    return Body(name, mesh.positions[used], inverse.reshape(-1, 3), color)


def split_bodies(mesh: MeshBuffer) -> list[Body]:
    """Group faces into bodies by color.

    A face whose color is exactly a vector layer's color belongs to that
    layer; everything else (the terrain ramp) forms the ``terrain`` body.
    Empty groups are left out.
    """
    terrain_color = tuple(int(round(c * 255)) for c in constants.TERRAIN_LOW_COLOR)
    if mesh.colors is None:
        return [_extract(mesh, mesh.indices, "terrain", terrain_color)] if mesh.face_count else []

    rgb = np.round(np.clip(mesh.colors[mesh.indices[:, 0]], 0, 1) * 255).astype(np.int64)
    face_keys = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
    remaining = np.ones(mesh.face_count, dtype=bool)

    bodies = []
    for name, config in constants.VECTOR_LAYERS.items():
        mask = remaining & (face_keys == config['color'])
        if mask.any():
            bodies.append(_extract(mesh, mesh.indices[mask], name, _unpack(config['color'])))
            remaining &= ~mask
    if remaining.any():
        bodies.insert(0, _extract(mesh, mesh.indices[remaining], "terrain", terrain_color))
    return bodies


def _body_to_3mf_object(body: Body, obj_id: int, mat_id: int) -> ET.Element:
    """Build a 3MF <object> element for a single mesh body."""
    obj = ET.Element('object', {
        'id': str(obj_id),
        'name': body.name,
        'type': 'model',
        'm:pid': str(mat_id),   # material group id
        'm:pindex': '0',        # index into that group
    })
    mesh_el = ET.SubElement(obj, 'mesh')

    verts_el = ET.SubElement(mesh_el, 'vertices')
    for v in body.positions:
        ET.SubElement(verts_el, 'vertex', {
            'x': f'{v[0]:.6f}',
            'y': f'{v[1]:.6f}',
            'z': f'{v[2]:.6f}',
        })

    tris_el = ET.SubElement(mesh_el, 'triangles')
    for f in body.indices:
        ET.SubElement(tris_el, 'triangle', {
            'v1': str(f[0]),
            'v2': str(f[1]),
            'v3': str(f[2]),
        })

    return obj


def build_model_xml(bodies: list[Body]) -> bytes:
    model = ET.Element('model', {
        'xmlns': NS_CORE,
        'xmlns:m': NS_MAT,
        'unit': 'millimeter',
        'xml:lang': 'en-US',
    })
    resources = ET.SubElement(model, 'resources')

    # One material color group per body, then the objects referencing them
    for i, body in enumerate(bodies):
        cg = ET.SubElement(resources, 'm:colorgroup', {'id': str(MATERIAL_ID_START + i)})
        ET.SubElement(cg, 'm:color', {'color': _rgb_to_hex(*body.color)})

    build = ET.SubElement(model, 'build')
    for i, body in enumerate(bodies):
        obj_id = i + 1
        resources.append(_body_to_3mf_object(body, obj_id, MATERIAL_ID_START + i))
        ET.SubElement(build, 'item', {
            'objectid': str(obj_id),
            'transform': '1 0 0 0 1 0 0 0 1 0 0 0',  # identity
        })

    return ET.tostring(model, encoding='utf-8', xml_declaration=True)


def generate_3mf(mesh: MeshBuffer) -> bytes:
    """Package ``mesh`` as a multi-body .3mf archive."""
    bodies = split_bodies(mesh)
    for body in bodies:
        logger.info(f"  {body.name}: {len(body.indices)} faces, "
                    f"color={_rgb_to_hex(*body.color)}")

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr('[Content_Types].xml', CONTENT_TYPES)
        zf.writestr('_rels/.rels', RELS)
        zf.writestr(MODEL_PATH, build_model_xml(bodies))
    return buf.getvalue()
