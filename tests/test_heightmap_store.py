import io
import itertools
import os
import random
import struct
import tempfile
import unittest

import numpy as np
from PIL import Image

from lidar2stl.utils.coordinates import UtmCoordinate
from lidar2stl.utils.errors import (
    CacheFormatError,
    CacheVersionMismatchError,
    CellIndexError,
    DegenerateBoundsError,
    InvalidResolutionError,
    IoFailureError,
    ZoneMismatchError,
)
from lidar2stl.utils.heightmap_store import HeightmapStore, cell_size_for_resolution

ORIGIN = UtmCoordinate(500000.0, 5000000.0, 33)


def make_store(cols=4, rows=3, cell_size=1.0):
    return HeightmapStore.new(ORIGIN, ORIGIN.offset(cols * cell_size, rows * cell_size), cell_size)


def mixed_store():
    store = make_store(5, 4, 2.5)
    store.set((0, 0), 12.25)
    store.set((4, 3), -3.5)
    store.accumulate((2, 1), 100.0)
    store.accumulate((2, 1), 101.0)
    store.set((1, 2), 0.0)
    return store


class ConstructionTests(unittest.TestCase):
    def test_dimensions_use_ceiling(self):
        store = HeightmapStore.new(ORIGIN, ORIGIN.offset(10.5, 4.0), 2.0)
        self.assertEqual((store.width, store.height), (6, 2))
        self.assertEqual(store.observed_count, 0)
        self.assertEqual(store.elevations.shape, (2, 6))

    def test_degenerate_bounds(self):
        with self.assertRaises(DegenerateBoundsError):
            HeightmapStore.new(ORIGIN, ORIGIN.offset(0.0, 10.0), 1.0)
        with self.assertRaises(DegenerateBoundsError):
            HeightmapStore.new(ORIGIN, ORIGIN.offset(10.0, -1.0), 1.0)

    def test_invalid_cell_size(self):
        for cell_size in [0.0, -1.0, float("nan"), float("inf")]:
            with self.assertRaises(InvalidResolutionError):
                HeightmapStore.new(ORIGIN, ORIGIN.offset(10.0, 10.0), cell_size)

    def test_corners_in_different_zones(self):
        other = UtmCoordinate(500010.0, 5000010.0, 34)
        with self.assertRaises(ZoneMismatchError):
            HeightmapStore.new(ORIGIN, other, 1.0)

    def test_cell_size_for_resolution(self):
        max_corner = ORIGIN.offset(200.0, 100.0)
        self.assertAlmostEqual(cell_size_for_resolution(ORIGIN, max_corner, resolution_x=100), 2.0)
        self.assertAlmostEqual(cell_size_for_resolution(ORIGIN, max_corner, resolution_y=100), 1.0)
        self.assertAlmostEqual(cell_size_for_resolution(ORIGIN, max_corner, 100, 100), 1.0)
        with self.assertRaises(InvalidResolutionError):
            cell_size_for_resolution(ORIGIN, max_corner)
        with self.assertRaises(InvalidResolutionError):
            cell_size_for_resolution(ORIGIN, max_corner, resolution_x=0)


class CellLookupTests(unittest.TestCase):
    def test_extent_is_half_open(self):
        store = make_store(4, 3)
        self.assertEqual(store.cell_of(ORIGIN), (0, 0))
        self.assertEqual(store.cell_of(ORIGIN.offset(3.999, 2.999)), (3, 2))
        self.assertIsNone(store.cell_of(ORIGIN.offset(4.0, 1.0)))
        self.assertIsNone(store.cell_of(ORIGIN.offset(1.0, 3.0)))
        self.assertIsNone(store.cell_of(ORIGIN.offset(-0.001, 1.0)))

    def test_row_zero_is_south(self):
        store = make_store(4, 3)
        self.assertEqual(store.cell_of(ORIGIN.offset(0.5, 2.5)), (0, 2))
        center = store.cell_center((0, 2))
        self.assertAlmostEqual(center.northing, ORIGIN.northing + 2.5)

    def test_other_zone_is_rejected(self):
        store = make_store()
        with self.assertRaises(ZoneMismatchError):
            store.cell_of(UtmCoordinate(500000.5, 5000000.5, 32))

    def test_cell_centers_grid(self):
        store = make_store(4, 3)
        eastings, northings = store.cell_centers()
        self.assertEqual(eastings.shape, (3, 4))
        self.assertEqual(eastings[0, 3], ORIGIN.easting + 3.5)
        self.assertEqual(northings[2, 0], ORIGIN.northing + 2.5)

    def test_vectorized_lookup(self):
        store = make_store(4, 3)
        xs, ys, inside = store.cells_of(
            [ORIGIN.easting + 0.5, ORIGIN.easting + 3.5, ORIGIN.easting + 4.5],
            [ORIGIN.northing + 0.5, ORIGIN.northing + 2.5, ORIGIN.northing + 0.5],
        )
        self.assertEqual(inside.tolist(), [True, True, False])
        self.assertEqual(xs[:2].tolist(), [0, 3])
        self.assertEqual(ys[:2].tolist(), [0, 2])


class SampleTests(unittest.TestCase):
    def test_running_average(self):
        store = make_store()
        for value in [1.0, 2.0, 6.0]:
            store.accumulate((1, 1), value)
        self.assertAlmostEqual(store.get((1, 1)), 3.0)
        self.assertEqual(int(store.counts[1, 1]), 3)

    def test_accumulate_order_independence(self):
        samples = [((0, 0), 1.5), ((0, 0), 2.25), ((1, 2), -4.0), ((0, 0), 9.0), ((1, 2), 3.5), ((3, 1), 0.1)]
        reference = make_store()
        for cell, value in samples:
            reference.accumulate(cell, value)

        for permutation in itertools.permutations(samples):
            store = make_store()
            for cell, value in permutation:
                store.accumulate(cell, value)
            np.testing.assert_array_equal(store.counts, reference.counts)
            np.testing.assert_allclose(store.elevations, reference.elevations, rtol=1e-12)

    def test_accumulate_many_matches_accumulate(self):
        rng = random.Random(7)
        samples = [((rng.randrange(4), rng.randrange(3)), rng.uniform(-50, 50)) for _ in range(200)]
        one_by_one = make_store()
        for cell, value in samples:
            one_by_one.accumulate(cell, value)

        batched = make_store()
        half = len(samples) // 2
        for chunk in (samples[:half], samples[half:]):
            batched.accumulate_many(
                [c[0] for c, _ in chunk], [c[1] for c, _ in chunk], [v for _, v in chunk]
            )
        np.testing.assert_array_equal(batched.counts, one_by_one.counts)
        np.testing.assert_allclose(batched.elevations, one_by_one.elevations, rtol=1e-9)

    def test_set_and_clear(self):
        store = make_store()
        self.assertIsNone(store.get((2, 2)))
        store.set((2, 2), 7.5)
        self.assertEqual(store.get((2, 2)), 7.5)
        self.assertEqual(int(store.counts[2, 2]), 1)
        store.set((2, 2), None)
        self.assertIsNone(store.get((2, 2)))
        self.assertEqual(int(store.counts[2, 2]), 0)

    def test_zero_elevation_is_observed(self):
        store = make_store()
        store.set((0, 0), 0.0)
        self.assertEqual(store.get((0, 0)), 0.0)
        self.assertEqual(store.observed_count, 1)

    def test_out_of_grid_indices(self):
        store = make_store(4, 3)
        for cell in [(4, 0), (0, 3), (-1, 0)]:
            with self.assertRaises(CellIndexError):
                store.get(cell)
            with self.assertRaises(IndexError):
                store.set(cell, 1.0)
            with self.assertRaises(CellIndexError):
                store.accumulate(cell, 1.0)

    def test_elevation_range(self):
        self.assertIsNone(make_store().elevation_range())
        self.assertEqual(mixed_store().elevation_range(), (-3.5, 100.5))


class PersistenceTests(unittest.TestCase):
    def test_round_trip(self):
        store = mixed_store()
        buffer = io.BytesIO()
        store.save(buffer)
        buffer.seek(0)
        loaded = HeightmapStore.load(buffer)
        self.assertEqual(loaded, store)
        self.assertEqual(loaded.origin, store.origin)
        self.assertEqual(loaded.cell_size, 2.5)
        self.assertEqual((loaded.width, loaded.height), (5, 4))
        self.assertEqual(loaded.get((2, 1)), 100.5)
        self.assertIsNone(loaded.get((3, 3)))

    def test_layout(self):
        store = make_store(2, 1)
        store.set((1, 0), 4.0)
        buffer = io.BytesIO()
        store.save(buffer)
        raw = buffer.getvalue()
        self.assertEqual(raw[:4], b"L2SH")
        self.assertEqual(struct.unpack("<H", raw[4:6])[0], 1)
        self.assertEqual(len(raw), 6 + 34 + 2 * 13)
        easting, northing, zone, hemisphere, cell_size, width, height = struct.unpack("<ddBBdII", raw[6:40])
        self.assertEqual((easting, northing, zone, hemisphere), (500000.0, 5000000.0, 33, 0))
        self.assertEqual((cell_size, width, height), (1.0, 2, 1))
        self.assertEqual(struct.unpack("<d?I", raw[53:66]), (4.0, True, 1))

    def test_south_hemisphere_round_trip(self):
        origin = UtmCoordinate(300000.0, 6200000.0, 19, "S")
        store = HeightmapStore.new(origin, origin.offset(3.0, 3.0), 1.0)
        store.set((1, 1), 2.0)
        buffer = io.BytesIO()
        store.save(buffer)
        buffer.seek(0)
        self.assertEqual(HeightmapStore.load(buffer).origin, origin)

    def test_wrong_magic(self):
        buffer = io.BytesIO()
        mixed_store().save(buffer)
        raw = bytearray(buffer.getvalue())
        raw[:4] = b"NOPE"
        with self.assertRaises(CacheVersionMismatchError):
            HeightmapStore.load(io.BytesIO(bytes(raw)))

    def test_wrong_version(self):
        buffer = io.BytesIO()
        mixed_store().save(buffer)
        raw = bytearray(buffer.getvalue())
        raw[4:6] = struct.pack("<H", 2)
        with self.assertRaises(CacheVersionMismatchError) as ctx:
            HeightmapStore.load(io.BytesIO(bytes(raw)))
        self.assertEqual(ctx.exception.found_version, 2)

    def test_truncated_payload(self):
        buffer = io.BytesIO()
        mixed_store().save(buffer)
        raw = buffer.getvalue()
        for cut in [3, 20, len(raw) - 1]:
            with self.assertRaises(CacheFormatError):
                HeightmapStore.load(io.BytesIO(raw[:cut]))

    def test_inconsistent_observed_flag(self):
        store = make_store(2, 1)
        buffer = io.BytesIO()
        store.save(buffer)
        raw = bytearray(buffer.getvalue())
        raw[40 + 8] = 1
        with self.assertRaises(CacheFormatError):
            HeightmapStore.load(io.BytesIO(bytes(raw)))

    def test_file_round_trip_and_missing_file(self):
        store = mixed_store()
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "map.l2sh")
            store.save_file(path)
            self.assertEqual(HeightmapStore.load_file(path), store)
            with self.assertRaises(IoFailureError) as ctx:
                HeightmapStore.load_file(os.path.join(tmp, "missing.l2sh"))
            self.assertIsInstance(ctx.exception, OSError)

    def test_preview_image(self):
        store = make_store(3, 2)
        store.set((0, 0), 10.0)
        store.set((2, 1), 20.0)
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "preview.png")
            store.save_to_image(path)
            with Image.open(path) as image:
                self.assertEqual(image.size, (3, 2))
                pixels = np.array(image)
        # North up: grid row 1 is the first image row
        self.assertEqual(pixels[1, 0], 1)
        self.assertEqual(pixels[0, 2], 255)
        self.assertEqual(pixels[0, 0], 0)

    def test_csv_export(self):
        store = make_store(3, 2)
        store.set((0, 0), 1.0)
        store.set((2, 0), 2.5)
        store.set((1, 1), 10.25)
        with tempfile.TemporaryDirectory() as tmp:
            path = store.save_to_csv(os.path.join(tmp, "heights.csv"))
            with open(path, encoding="utf-8") as f:
                text = f.read()
            with self.assertRaises(IoFailureError):
                store.save_to_csv(os.path.join(tmp, "missing", "heights.csv"))
        # North up, unobserved cells left empty
        self.assertEqual(text, ",10.250,\n1.000,,2.500\n")


if __name__ == "__main__":
    unittest.main()
