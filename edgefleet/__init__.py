"""Services for building and tracking edge operating-system images, OSTree repositories and installers."""

__version__ = "0.1.0"