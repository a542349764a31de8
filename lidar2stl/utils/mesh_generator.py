"""3D mesh generation and STL export for heightmaps."""

import logging
import time
from dataclasses import dataclass

import numpy as np
from stl import Mode, mesh

from .errors import EmptyMeshError, IoFailureError

logger = logging.getLogger(__name__)

_NO_FACES = np.zeros((0, 3), dtype=np.int64)


@dataclass
class Mesh:
    """Indexed triangle mesh. Faces wind counter-clockwise seen from outside."""

    vertices: np.ndarray
    faces: np.ndarray
    name: str = "terrain"

    @property
    def triangle_count(self):
        return len(self.faces)

    def face_normals(self):
        """Unit outward normal per face (zero for degenerate faces)."""
        if len(self.faces) == 0:
            return np.zeros((0, 3), dtype=np.float64)
        tri = self.vertices[self.faces]
        normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        lengths = np.linalg.norm(normals, axis=1)
        safe = np.where(lengths > 0, lengths, 1.0)
        return normals / safe[:, None]


def build_mesh(store, z_scale=1.0, base_height=0.0, include_base=True, xy_scale=1.0, elevation_datum=None, name="terrain"):
    """
    Triangulate the observed part of a heightmap into a printable solid.

    Every observed cell centre is a grid vertex. Each 2x2 block of observed
    cells becomes a quad split along its south-west to north-east diagonal;
    a block with any unobserved corner is skipped and leaves a hole.
    Two quads that meet only at a corner use separate copies of that
    vertex, so every edge of the solid is shared by exactly two faces.

    Args:
        store: HeightmapStore to triangulate
        z_scale: Vertical exaggeration applied to elevations
        base_height: Added to every top vertex so the print has a solid floor
        include_base: Emit the bottom layer at z=0 and the side walls
        xy_scale: Horizontal scale (model units per metre)
        elevation_datum: Elevation mapped to `base_height` (default 0)
        name: Object name, used in the STL header

    Returns:
        Mesh: x east, y north, z up, in model units
    """
    t_start = time.time()
    rows, cols = store.height, store.width
    observed = store.observed_mask()

    if rows < 2 or cols < 2:
        quads = np.zeros((max(rows - 1, 0), max(cols - 1, 0)), dtype=bool)
    else:
        quads = observed[:-1, :-1] & observed[:-1, 1:] & observed[1:, :-1] & observed[1:, 1:]

    # Only cells that are a corner of at least one quad become vertices
    used = np.zeros((rows, cols), dtype=bool)
    if quads.size:
        used[:-1, :-1] |= quads
        used[:-1, 1:] |= quads
        used[1:, :-1] |= quads
        used[1:, 1:] |= quads

    vy, vx = np.nonzero(used)
    n = len(vy)
    top_index = np.full((rows, cols), -1, dtype=np.int64)
    top_index[vy, vx] = np.arange(n)

    # Corner vertex of every quad, keyed by (dy, dx)
    qy, qx = np.nonzero(quads)
    corners = {(dy, dx): top_index[qy + dy, qx + dx] for dy in (0, 1) for dx in (0, 1)}

    # Quads meeting only at a corner get separate copies of that vertex
    pinch_ne, pinch_nw = _pinch_vertices(quads, rows, cols)
    py, px = np.nonzero(pinch_ne | pinch_nw)
    if len(py):
        copy_index = np.full((rows, cols), -1, dtype=np.int64)
        copy_index[py, px] = n + np.arange(len(py))
        corners[(0, 0)] = np.where(pinch_ne[qy, qx], copy_index[qy, qx], corners[(0, 0)])
        corners[(0, 1)] = np.where(pinch_nw[qy, qx + 1], copy_index[qy, qx + 1], corners[(0, 1)])
        vy = np.concatenate([vy, py])
        vx = np.concatenate([vx, px])
        n = len(vy)

    step = store.cell_size * xy_scale
    datum = 0.0 if elevation_datum is None else elevation_datum
    top_vertices = np.column_stack([
        vx * step,
        vy * step,
        base_height + (store.elevations[vy, vx] - datum) * z_scale,
    ]).astype(np.float64)

    v00 = corners[(0, 0)]
    v10 = corners[(0, 1)]
    v01 = corners[(1, 0)]
    v11 = corners[(1, 1)]

    # Counter-clockwise seen from +z: (v00, v10, v11) and (v00, v11, v01)
    top_faces = _interleave(
        np.column_stack([v00, v10, v11]),
        np.column_stack([v00, v11, v01]),
    )

    if not include_base or n == 0:
        logger.info(f"Built {name} surface: {n} vertices, {len(top_faces)} faces in {time.time() - t_start:.3f}s")
        return Mesh(top_vertices.reshape(-1, 3), top_faces, name)

    bottom_vertices = top_vertices.copy()
    bottom_vertices[:, 2] = 0.0

    # Same quads seen from below
    bottom_faces = _interleave(
        np.column_stack([v00, v11, v10]),
        np.column_stack([v00, v01, v11]),
    ) + n

    wall_faces = _boundary_walls(quads, corners, n)

    vertices = np.vstack([top_vertices, bottom_vertices])
    faces = np.vstack([top_faces, bottom_faces, wall_faces])
    logger.info(
        f"Built {name} solid: {len(vertices)} vertices, {len(faces)} faces "
        f"({len(top_faces)} top, {len(bottom_faces)} bottom, {len(wall_faces)} wall) "
        f"in {time.time() - t_start:.3f}s"
    )
    return Mesh(vertices, faces, name)


def _interleave(first, second):
    """Pairs of triangles per quad, kept next to each other."""
    if len(first) == 0:
        return _NO_FACES.copy()
    return np.stack([first, second], axis=1).reshape(-1, 3).astype(np.int64)


def _pinch_vertices(quads, rows, cols):
    """
    Vertices where two quads meet only at a corner.

    Returns two (rows, cols) masks: `ne` where the pair is south-west and
    north-east of the vertex, `nw` where it is south-east and north-west.
    The north quad of the pair is the one that takes the vertex copy.
    """
    ne = np.zeros((rows, cols), dtype=bool)
    nw = np.zeros((rows, cols), dtype=bool)
    if quads.shape[0] < 2 or quads.shape[1] < 2:
        return ne, nw
    south_west, south_east = quads[:-1, :-1], quads[:-1, 1:]
    north_west, north_east = quads[1:, :-1], quads[1:, 1:]
    ne[1:-1, 1:-1] = south_west & north_east & ~south_east & ~north_west
    nw[1:-1, 1:-1] = south_east & north_west & ~south_west & ~north_east
    return ne, nw


def _boundary_walls(quads, corners, n):
    """
    Vertical walls along every quad edge without a quad on the other side.

    Each quad's edges are walked counter-clockwise from above (interior on
    the left), so for a boundary edge a->b the outward wall is
    (a_top, a_bot, b_bot) + (a_top, b_bot, b_top). `corners` holds the
    vertex index of each quad corner in np.nonzero(quads) order.
    """
    if quads.size == 0:
        return _NO_FACES.copy()

    qy, qx = np.nonzero(quads)
    padded = np.pad(quads, 1, constant_values=False)
    neighbours = {
        'south': padded[:-2, 1:-1],
        'east': padded[1:-1, 2:],
        'north': padded[2:, 1:-1],
        'west': padded[1:-1, :-2],
    }
    # Directed edge per side as (dy, dx) offsets of its start and end corner
    edges = {
        'south': ((0, 0), (0, 1)),
        'east': ((0, 1), (1, 1)),
        'north': ((1, 1), (1, 0)),
        'west': ((1, 0), (0, 0)),
    }

    walls = []
    for side, neighbour in neighbours.items():
        boundary = ~neighbour[qy, qx]
        if not boundary.any():
            continue
        start, end = edges[side]
        a_top = corners[start][boundary]
        b_top = corners[end][boundary]
        a_bot = a_top + n
        b_bot = b_top + n
        walls.append(_interleave(
            np.column_stack([a_top, a_bot, b_bot]),
            np.column_stack([a_top, b_bot, b_top]),
        ))

    if not walls:
        return _NO_FACES.copy()
    return np.vstack(walls)


def export_stl(terrain_mesh, writer):
    """
    Write a mesh to a binary stream as binary STL.

    Layout: 80-byte header, uint32 triangle count, then per triangle the unit
    normal and three vertices as float32 and a zero uint16 attribute.

    Args:
        terrain_mesh: Mesh to serialize
        writer: Writable binary file object
    """
    if terrain_mesh.triangle_count == 0:
        raise EmptyMeshError(f"No mesh data to export for {terrain_mesh.name}")

    stl_mesh = mesh.Mesh(np.zeros(terrain_mesh.triangle_count, dtype=mesh.Mesh.dtype), calculate_normals=False)
    stl_mesh.vectors[:] = terrain_mesh.vertices[terrain_mesh.faces].astype(np.float32)
    stl_mesh.normals[:] = terrain_mesh.face_normals().astype(np.float32)
    stl_mesh.attr[:] = 0
    stl_mesh.save(f"{terrain_mesh.name}.stl", fh=writer, mode=Mode.BINARY, update_normals=False)


def export_stl_file(terrain_mesh, filepath):
    """
    Export a mesh to an STL file for 3D printing.

    Args:
        terrain_mesh: Mesh to export
        filepath: Output STL file path

    Returns:
        dict: filepath and vertex/face counts
    """
    try:
        with open(filepath, "wb") as f:
            export_stl(terrain_mesh, f)
    except OSError as exc:
        raise IoFailureError(filepath, exc) from exc

    logger.info(f"Exported {terrain_mesh.name} ({terrain_mesh.triangle_count} triangles) to {filepath}")
    return {
        'success': True,
        'filepath': filepath,
        'vertices': len(terrain_mesh.vertices),
        'faces': terrain_mesh.triangle_count
    }
