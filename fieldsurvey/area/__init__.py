"""
Area estimation over surveyed vertices.
"""
