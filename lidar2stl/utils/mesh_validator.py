"""Mesh validation for 3D printability."""

import logging

import numpy as np
from scipy.spatial import cKDTree

logger = logging.getLogger(__name__)


class MeshValidator:
    """
    Validate mesh geometry for 3D printing.

    Checks for common issues:
    - Degenerate faces (zero-area triangles)
    - Duplicate vertices
    - Non-manifold edges (edges not shared by exactly 2 faces)
    - Inconsistent face winding (a directed edge used by two faces)
    """

    def __init__(self, area_tolerance=1e-10, vertex_tolerance=1e-6):
        self.area_tolerance = area_tolerance
        self.vertex_tolerance = vertex_tolerance
        self.warnings = []
        self.fixes_applied = []
        self.is_printable = True

    def validate(self, terrain_mesh, fix=False):
        """
        Validate a mesh, optionally dropping degenerate faces.

        Removing degenerate faces can open seams in an otherwise closed
        solid (flat walls where top and bottom coincide), so it is opt-in.

        Args:
            terrain_mesh: Mesh to check (modified in place when fix=True)
            fix: Remove zero-area faces

        Returns:
            dict: {
                'is_printable': bool,
                'warnings': list of warning messages,
                'fixes_applied': list of fixes that were applied,
                'open_edges': int,
                'non_manifold_edges': int,
                'inconsistent_edges': int
            }
        """
        self.warnings = []
        self.fixes_applied = []
        self.is_printable = True
        name = terrain_mesh.name

        vertices = np.asarray(terrain_mesh.vertices, dtype=np.float64)
        faces = np.asarray(terrain_mesh.faces, dtype=np.int64)

        degenerate = self._degenerate_faces(vertices, faces)
        if degenerate.any():
            count = int(np.count_nonzero(degenerate))
            if fix:
                faces = faces[~degenerate]
                terrain_mesh.faces = faces
                self.fixes_applied.append(f"Removed {count} degenerate face(s) from {name}")
            else:
                self.warnings.append(f"{name}: {count} degenerate face(s)")

        duplicates = self._count_duplicate_vertices(vertices)
        if duplicates > 0:
            self.warnings.append(f"{name}: {duplicates} duplicate vertices")

        edge_report = self.edge_report(faces)
        if edge_report['open_edges'] > 0:
            self.is_printable = False
            self.warnings.append(f"{name}: {edge_report['open_edges']} open edge(s) (mesh is not closed)")
        if edge_report['non_manifold_edges'] > 0:
            self.warnings.append(
                f"{name}: {edge_report['non_manifold_edges']} non-manifold edge(s) detected (may cause print issues)"
            )
        if edge_report['inconsistent_edges'] > 0:
            self.is_printable = False
            self.warnings.append(f"{name}: {edge_report['inconsistent_edges']} edge(s) with inconsistent winding")

        for warning in self.warnings:
            logger.warning(warning)

        return {
            'is_printable': self.is_printable,
            'warnings': self.warnings,
            'fixes_applied': self.fixes_applied,
            **edge_report
        }

    def _degenerate_faces(self, vertices, faces):
        """Boolean mask of faces whose area is below `area_tolerance`."""
        if len(faces) == 0:
            return np.zeros(0, dtype=bool)
        tri = vertices[faces]
        cross = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        return np.linalg.norm(cross, axis=1) / 2.0 <= self.area_tolerance

    def _count_duplicate_vertices(self, vertices):
        """Number of vertices lying within tolerance of an earlier vertex (KD-tree)."""
        if len(vertices) < 2:
            return 0
        tree = cKDTree(vertices)
        pairs = tree.query_pairs(self.vertex_tolerance, output_type='ndarray')
        if len(pairs) == 0:
            return 0
        return int(len(np.unique(pairs.max(axis=1))))

    @staticmethod
    def edge_report(faces):
        """
        Count edge problems.

        open_edges: undirected edges used by exactly one face
        non_manifold_edges: undirected edges used by more than two faces
        inconsistent_edges: directed edges used by more than one face
        """
        faces = np.asarray(faces, dtype=np.int64)
        if len(faces) == 0:
            return {'open_edges': 0, 'non_manifold_edges': 0, 'inconsistent_edges': 0}

        directed = np.vstack([faces[:, [0, 1]], faces[:, [1, 2]], faces[:, [2, 0]]])
        undirected = np.sort(directed, axis=1)

        _, undirected_counts = np.unique(undirected, axis=0, return_counts=True)
        _, directed_counts = np.unique(directed, axis=0, return_counts=True)

        return {
            'open_edges': int(np.count_nonzero(undirected_counts == 1)),
            'non_manifold_edges': int(np.count_nonzero(undirected_counts > 2)),
            'inconsistent_edges': int(np.count_nonzero(directed_counts > 1)),
        }
