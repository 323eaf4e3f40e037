"""
Standalone entry points.
"""
