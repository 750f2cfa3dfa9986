"""
Models package for Story Feed API
"""
from storyfeed.db.base import Base
from storyfeed.models.post import Post

__all__ = [
    'Base',
    'Post',
]
