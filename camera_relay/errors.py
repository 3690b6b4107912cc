"""
Exception types shared by the intake, broadcast and archive components.
"""


class RelayError(Exception):
    """Base class for all camera relay errors."""


class InvalidFrame(RelayError, ValueError):
    """A frame submission was malformed (empty image, blank camera, bad detection)."""


class ArchiveError(RelayError):
    """Base class for picture archive failures."""


class ArchiveFull(ArchiveError):
    """Eviction could not free enough space for a picture."""

    def __init__(self, size: int, max_size: int):
        self.size = size
        self.max_size = max_size
        super().__init__(f"Picture of {size} bytes exceeds archive quota of {max_size} bytes")


class PictureNotFound(ArchiveError, KeyError):
    """No picture with the requested filename exists in the archive."""

    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(filename)

    def __str__(self):
        return f"Picture not found: {self.filename}"


class StorageIOError(ArchiveError, OSError):
    """Writing or removing a picture file failed."""
