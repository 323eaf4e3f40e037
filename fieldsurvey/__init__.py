"""
Offline field surveying: tile caching and dual-method area estimation.
"""
