"""Shared exceptions for service layer operations."""


class PersistenceError(Exception):
    """
    Raised when the persistence layer cannot complete a bookmark write or read.

    Wraps database driver errors so callers above the service layer (the dashboard
    reconciler, API routers) can report the failure without depending on SQLAlchemy.
    """
