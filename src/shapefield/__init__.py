"""Shapefield: symbolic CSG expression trees rendered to triangle meshes."""

__version__ = "0.3.0"
