import io
import os
import struct
import tempfile
import unittest

import numpy as np
from stl import mesh as stl_mesh

from lidar2stl.utils.coordinates import UtmCoordinate
from lidar2stl.utils.errors import EmptyMeshError
from lidar2stl.utils.heightmap_store import HeightmapStore
from lidar2stl.utils.mesh_generator import build_mesh, export_stl, export_stl_file
from lidar2stl.utils.mesh_validator import MeshValidator

ORIGIN = UtmCoordinate(500000.0, 5000000.0, 33)


def make_store(cols, rows, elevation=lambda x, y: 0.0, cell_size=1.0):
    store = HeightmapStore.new(ORIGIN, ORIGIN.offset(cols * cell_size, rows * cell_size), cell_size)
    for y in range(rows):
        for x in range(cols):
            store.set((x, y), elevation(x, y))
    return store


def peak_store():
    """3x3 grid at elevation 0 with a 10 m centre cell."""
    return make_store(3, 3, lambda x, y: 10.0 if (x, y) == (1, 1) else 0.0)


class PeakScenarioTests(unittest.TestCase):
    def setUp(self):
        self.mesh = build_mesh(peak_store(), z_scale=1.0, base_height=0.0)

    def test_triangle_counts(self):
        # 4 quads: 8 top, 8 bottom, 2 walls on each of the 8 boundary edges
        self.assertEqual(self.mesh.triangle_count, 32)
        self.assertEqual(len(self.mesh.vertices), 18)

    def test_top_surface_heights_and_winding(self):
        top = self.mesh.vertices[:9]
        self.assertEqual(sorted(top[:, 2].tolist()), [0.0] * 8 + [10.0])
        normals = self.mesh.face_normals()
        self.assertTrue(np.all(normals[:8, 2] > 0))

    def test_flat_bottom_faces_down(self):
        bottom = self.mesh.vertices[9:]
        self.assertTrue(np.all(bottom[:, 2] == 0.0))
        normals = self.mesh.face_normals()
        np.testing.assert_allclose(normals[8:16], [[0.0, 0.0, -1.0]] * 8)

    def test_closed_and_consistently_wound(self):
        report = MeshValidator.edge_report(self.mesh.faces)
        self.assertEqual(report, {'open_edges': 0, 'non_manifold_edges': 0, 'inconsistent_edges': 0})

    def test_diagonal_runs_south_west_to_north_east(self):
        first_quad = self.mesh.faces[:2]
        v00 = 0
        v11 = 4
        for face in first_quad:
            self.assertIn(v00, face)
            self.assertIn(v11, face)

    def test_stl_triangle_count_field(self):
        buffer = io.BytesIO()
        export_stl(self.mesh, buffer)
        raw = buffer.getvalue()
        self.assertEqual(len(raw), 84 + 50 * 32)
        self.assertEqual(struct.unpack("<I", raw[80:84])[0], self.mesh.triangle_count)


class SolidTests(unittest.TestCase):
    def test_walls_face_outward(self):
        terrain = build_mesh(make_store(4, 3, lambda x, y: x + y), base_height=2.0)
        top_count = 2 * 3 * 2
        walls = terrain.faces[2 * top_count:]
        self.assertEqual(len(walls), 2 * (2 * 3 + 2 * 2))

        tri = terrain.vertices[walls]
        centroids = tri.mean(axis=1)
        center = terrain.vertices[:, :2].mean(axis=0)
        normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        outward = np.einsum('ij,ij->i', normals[:, :2], centroids[:, :2] - center)
        self.assertTrue(np.all(outward > 0))
        self.assertTrue(np.allclose(normals[:, 2], 0.0))

    def test_scaling_and_datum(self):
        terrain = build_mesh(make_store(3, 2, lambda x, y: 100.0 + y, cell_size=2.0),
                             z_scale=2.0, base_height=1.0, xy_scale=0.5, elevation_datum=100.0)
        top = terrain.vertices[:6]
        self.assertEqual(top[:, 0].max(), 2.0)
        self.assertEqual(top[:, 1].max(), 1.0)
        self.assertEqual(sorted(set(top[:, 2].tolist())), [1.0, 3.0])

    def test_unobserved_cells_leave_holes(self):
        store = make_store(4, 4, lambda x, y: 5.0)
        store.set((1, 1), None)
        terrain = build_mesh(store, base_height=1.0)

        # 9 quads minus the 4 touching the missing cell; the L-shaped outline has 12 edges
        self.assertEqual(terrain.triangle_count, 10 + 10 + 2 * 12)
        report = MeshValidator().validate(terrain)
        self.assertTrue(report['is_printable'])
        self.assertEqual(report['open_edges'], 0)
        self.assertEqual(report['inconsistent_edges'], 0)

    def test_separate_islands_each_closed(self):
        store = make_store(5, 2, lambda x, y: 3.0)
        store.set((2, 0), None)
        store.set((2, 1), None)
        terrain = build_mesh(store, base_height=1.0)
        self.assertEqual(terrain.triangle_count, 2 * (2 + 2 + 8))
        report = MeshValidator.edge_report(terrain.faces)
        self.assertEqual(report['open_edges'], 0)

    def test_quads_touching_at_a_corner_stay_manifold(self):
        # South-west and north-east quads share only the centre cell
        store = make_store(3, 3, lambda x, y: 4.0)
        store.set((2, 0), None)
        store.set((0, 2), None)
        terrain = build_mesh(store, base_height=1.0)

        self.assertEqual(terrain.triangle_count, 2 + 2 + 2 + 2 + 2 * 8)
        # 7 cells plus one copy of the shared cell, top and bottom
        self.assertEqual(len(terrain.vertices), 16)
        with self.assertLogs("lidar2stl.utils.mesh_validator", level="WARNING"):
            report = MeshValidator().validate(terrain)
        self.assertEqual(report['non_manifold_edges'], 0)
        self.assertEqual(report['inconsistent_edges'], 0)
        self.assertEqual(report['open_edges'], 0)
        self.assertTrue(report['is_printable'])
        self.assertIn("terrain: 2 duplicate vertices", report['warnings'])

    def test_other_diagonal_is_split_too(self):
        store = make_store(3, 3, lambda x, y: 4.0)
        store.set((0, 0), None)
        store.set((2, 2), None)
        terrain = build_mesh(store, base_height=1.0)
        self.assertEqual(len(terrain.vertices), 16)
        report = MeshValidator.edge_report(terrain.faces)
        self.assertEqual(report, {'open_edges': 0, 'non_manifold_edges': 0, 'inconsistent_edges': 0})

    def test_surface_only(self):
        terrain = build_mesh(peak_store(), include_base=False)
        self.assertEqual(terrain.triangle_count, 8)
        self.assertFalse(MeshValidator().validate(terrain)['is_printable'])

    def test_no_complete_block_gives_empty_mesh(self):
        store = make_store(3, 3)
        store.set((1, 1), None)
        store.set((0, 0), None)
        store.set((2, 2), None)
        store.set((2, 0), None)
        store.set((0, 2), None)
        terrain = build_mesh(store)
        self.assertEqual(terrain.triangle_count, 0)
        with self.assertRaises(EmptyMeshError):
            export_stl(terrain, io.BytesIO())


class ExportTests(unittest.TestCase):
    def test_file_export_reads_back_with_numpy_stl(self):
        terrain = build_mesh(peak_store(), base_height=2.0, name="peak")
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "peak.stl")
            result = export_stl_file(terrain, path)
            loaded = stl_mesh.Mesh.from_file(path, calculate_normals=False)

        self.assertTrue(result['success'])
        self.assertEqual(result['faces'], 32)
        self.assertEqual(loaded.vectors.shape, (32, 3, 3))
        np.testing.assert_allclose(loaded.vectors, terrain.vertices[terrain.faces], atol=1e-5)
        lengths = np.linalg.norm(loaded.normals, axis=1)
        np.testing.assert_allclose(lengths, 1.0, atol=1e-5)


if __name__ == "__main__":
    unittest.main()
