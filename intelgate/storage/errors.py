from __future__ import annotations


class StorageUnavailable(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation."""

    def __init__(self, message: str, *, backend: str = "unknown"):
        super().__init__(message)
        self.message = message
        self.backend = backend


__all__ = ["StorageUnavailable"]
