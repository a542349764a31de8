"""Geospatial pipeline building blocks."""
