"""Generic per-type entity repositories."""

from .base import DuplicateKeyError, NotFoundError, Repository, RepositoryError

__all__ = [
    "Repository",
    "RepositoryError",
    "NotFoundError",
    "DuplicateKeyError",
]
