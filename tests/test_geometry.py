"""Tests for building prisms, layer slabs and mesh assembly."""

import numpy as np
import pytest

from terramesh.features import normalize_polygons
from terramesh.geometry import (
    adaptive_scale_factor, build_building_meshes, build_layer_meshes,
    extrude_building, extrude_polygon, lng_lat_to_mesh, orient_clockwise,
    synthesize,
)
from terramesh.models import (
    BoundingBox, BuildingData, MeshSettings, PolygonFeature, VectorLayer,
)

BBOX = BoundingBox(0.0, 0.0, 0.03, 0.03)
SQUARE = [(0.01, 0.01), (0.02, 0.01), (0.02, 0.02), (0.01, 0.02)]
L_SHAPE = [(0.005, 0.005), (0.015, 0.005), (0.015, 0.01), (0.01, 0.01),
           (0.01, 0.015), (0.005, 0.015)]


@pytest.fixture
def flat_grid(make_grid):
    return make_grid(np.zeros((10, 10)), BBOX)


class TestOrientation:
    def test_ccw_is_reversed(self):
        ccw = [(0, 0), (1, 0), (1, 1), (0, 1)]
        assert orient_clockwise(ccw) == list(reversed(ccw))

    def test_cw_is_kept(self):
        cw = [(0, 0), (0, 1), (1, 1), (1, 0)]
        assert orient_clockwise(cw) == cw

    def test_mesh_mapping_corners(self):
        x, y = lng_lat_to_mesh(BBOX, [0.0, 0.03], [0.0, 0.03], 200.0)
        assert x.tolist() == pytest.approx([-100.0, 100.0])
        assert y.tolist() == pytest.approx([-100.0, 100.0])


class TestAdaptiveScale:
    def test_mid_size_area(self):
        assert adaptive_scale_factor(BBOX, 0.0, 400.0) == pytest.approx(0.1)

    def test_large_area_boost(self):
        big = BoundingBox(0.0, 0.0, 1.0, 1.0)
        assert adaptive_scale_factor(big, 0.0, 400.0) == pytest.approx(0.15)

    def test_small_area_reduction(self):
        small = BoundingBox(0.0, 0.0, 0.005, 0.005)
        assert adaptive_scale_factor(small, 0.0, 400.0) == pytest.approx(0.08)

    def test_clamped(self):
        assert adaptive_scale_factor(BBOX, 0.0, 1.0) == 0.5
        assert adaptive_scale_factor(BBOX, 0.0, 1e6) == 0.001

    def test_flat_terrain(self):
        assert adaptive_scale_factor(BBOX, 50.0, 50.0) == 0.5


class TestExtrudeBuilding:
    def test_prism_height_on_flat_terrain(self, flat_grid, settings):
        """10 m at scale 1 spans 10 units plus the submerge offset at both ends."""
        building = BuildingData(SQUARE, height=10.0, base_elevation=0.0)
        mesh = extrude_building(building, flat_grid, 1.0, settings)
        z = mesh.positions[:, 2]

        assert z.max() - z.min() == pytest.approx(10.0 + 2 * 0.5)
        assert z.min() == pytest.approx(settings.terrain_base_height - 0.5)

    def test_user_scale_multiplies(self, flat_grid):
        settings = MeshSettings(grid_width=10, grid_height=10, building_scale_factor=2.0)
        building = BuildingData(SQUARE, height=10.0, base_elevation=0.0)
        z = extrude_building(building, flat_grid, 1.0, settings).positions[:, 2]
        assert z.max() - z.min() == pytest.approx(20.0 + 1.0)

    def test_minimum_height(self, flat_grid, settings):
        building = BuildingData(SQUARE, height=0.5, base_elevation=0.0)
        z = extrude_building(building, flat_grid, 1.0, settings).positions[:, 2]
        assert z.max() - z.min() == pytest.approx(2.0 + 1.0)

    @pytest.mark.parametrize("ring", [SQUARE, list(reversed(SQUARE)), L_SHAPE])
    def test_closed_solid(self, flat_grid, settings, ring):
        building = BuildingData(ring, height=20.0, base_elevation=0.0)
        mesh = extrude_building(building, flat_grid, 0.5, settings)
        n = len(ring)

        assert mesh.vertex_count == 2 * n
        assert mesh.face_count == 2 * (n - 2) + 2 * n
        tm = mesh.to_trimesh()
        assert tm.is_watertight
        assert tm.volume > 0

    def test_anchored_at_lowest_point(self, make_grid, settings):
        """On a slope the prism starts under the lowest corner."""
        values = np.tile(np.linspace(0.0, 100.0, 10), (10, 1))
        grid = make_grid(values, BBOX)
        building = BuildingData(SQUARE, height=10.0, base_elevation=0.0)
        z_min = extrude_building(building, grid, 1.0, settings).positions[:, 2].min()

        # West edge of the square sits at lng 0.01 -> one third of the relief
        expected = settings.terrain_base_height + settings.vertical_span / 3 - 0.5
        assert z_min == pytest.approx(expected, abs=1e-6)

    def test_duplicates_skipped(self, flat_grid, settings):
        buildings = [BuildingData(SQUARE, 10.0, 0.0), BuildingData(list(SQUARE), 12.0, 0.0)]
        assert len(build_building_meshes(buildings, flat_grid, settings, (1, 1, 1))) == 1


class TestExtrudePolygon:
    def test_slab_sits_on_terrain(self, flat_grid, settings):
        water = VectorLayer.from_config("water")
        mesh = extrude_polygon(SQUARE, flat_grid, water, settings)
        z = mesh.positions[:, 2]

        base = settings.terrain_base_height + water.z_offset - settings.polygon_submerge_offset
        assert z.min() == pytest.approx(base)
        assert z.max() == pytest.approx(base + water.extrusion_depth)
        assert mesh.to_trimesh().is_watertight
        assert np.allclose(mesh.colors, water.rgb)

    def test_concave_ring(self, flat_grid, settings):
        mesh = extrude_polygon(L_SHAPE, flat_grid, VectorLayer.from_config("park"), settings)
        assert mesh.to_trimesh().volume > 0

    def test_degenerate_ring(self, flat_grid, settings):
        ring = [(0.01, 0.01), (0.02, 0.02), (0.015, 0.015)]
        assert extrude_polygon(ring, flat_grid, VectorLayer.from_config("water"), settings) is None

    def test_oversized_polygon_stays_within_terrain(self, flat_grid, settings):
        lake = PolygonFeature([(-0.06, 0.01), (0.09, 0.01), (0.09, 0.02), (-0.06, 0.02)],
                              "water")
        rings = normalize_polygons([lake], BBOX)
        (mesh,) = build_layer_meshes(rings, flat_grid, VectorLayer.from_config("water"),
                                     settings)

        half = settings.mesh_width / 2
        lo, hi = mesh.bounds
        assert lo[0] == pytest.approx(-half)
        assert hi[0] == pytest.approx(half)
        assert np.all(np.abs(mesh.positions[:, :2]) <= half + 1e-9)

    def test_layer_dedupe(self, flat_grid, settings):
        layer = VectorLayer.from_config("water")
        meshes = build_layer_meshes([SQUARE, list(SQUARE), L_SHAPE], flat_grid, layer, settings)
        assert len(meshes) == 2


class TestSynthesize:
    def test_centered_and_frozen(self, flat_grid, settings):
        buildings = [BuildingData(SQUARE, 25.0, 0.0)]
        mesh = synthesize(flat_grid, buildings, {"water": [L_SHAPE]}, settings)

        lo, hi = mesh.bounds
        assert np.allclose((lo + hi) / 2, 0.0)
        assert not mesh.positions.flags.writeable
        assert not mesh.indices.flags.writeable
        assert mesh.colors.shape == (mesh.vertex_count, 3)

    def test_terrain_only(self, flat_grid, settings):
        mesh = synthesize(flat_grid, [], {}, settings)
        assert mesh.vertex_count == 2 * 10 * 10
        assert mesh.to_trimesh().is_watertight

    def test_building_layer_rings_ignored(self, flat_grid, settings):
        """Buildings travel separately; a 'building' entry in layer_rings adds nothing."""
        with_entry = synthesize(flat_grid, [], {"building": [SQUARE]}, settings)
        assert with_entry.vertex_count == 2 * 10 * 10
