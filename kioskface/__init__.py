"""KioskFace: client-side face liveness and descriptor matching."""

__version__ = "0.1.0"
