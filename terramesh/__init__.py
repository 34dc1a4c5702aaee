"""terramesh: 3D terrain and building meshes from map tiles.

Fuses terrain-RGB elevation tiles with vector (MVT) building and landuse
tiles into one closed, exportable mesh.
"""

from terramesh.builder import GenerationResult, MeshGenerator
from terramesh.context import CancellationToken
from terramesh.models import BoundingBox, MeshBuffer, MeshSettings
