"""lidar2stl - LIDAR point clouds and vector overlays to 3D printable terrain."""

__version__ = "0.1.0"
