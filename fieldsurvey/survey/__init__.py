"""
Field survey sessions and location capture.
"""
