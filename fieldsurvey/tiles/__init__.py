"""
Offline map tile caching.
"""
