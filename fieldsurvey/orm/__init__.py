"""
ORM mappings for the database tables.
"""

from .tiles import StoredTile

__all__ = (StoredTile,)
