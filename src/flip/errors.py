"""Error taxonomy for the FLIP core."""


class FlipError(Exception):
    """Base class for simulation errors."""


class InvalidConfiguration(FlipError, ValueError):
    """Resolution or reference density rejected at construction time."""


class IndexOutOfBounds(FlipError, IndexError):
    """Direct cell access outside a grid's resolution."""


class DegenerateSurface(UserWarning):
    """Field has no zero crossing; projection or meshing was a no-op."""


__all__ = ["FlipError", "InvalidConfiguration", "IndexOutOfBounds", "DegenerateSurface"]
