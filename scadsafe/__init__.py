"""
scadsafe: crash-aware validation and sandboxed compilation for AI-generated
OpenSCAD model scripts.

Usage:
    pip install scadsafe
    scadsafe validate model.scad
    scadsafe compile model.scad -D radius=10 --description "a small vase"
"""

__version__ = "0.2.0"
