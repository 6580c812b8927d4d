"""Magnetometer calibration, quality metrics, orientation fusion and sensor serial protocol."""

__version__ = "0.1.0"

__all__ = [
    "magcal",
    "mahony",
    "matrix",
    "portlist",
    "quality",
    "rawdata",
    "serialdata",
    "visualize",
]