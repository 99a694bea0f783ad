"""InfraLens - lifecycle engine for infrastructure objects on floor plans."""

__version__ = "0.1.0"
