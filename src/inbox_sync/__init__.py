"""Client-side synchronization for a multi-page social messaging inbox."""

__version__ = "0.1.0"
