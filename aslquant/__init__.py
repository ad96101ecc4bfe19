"""
aslquant: BIDS ASL perfusion quantification front-end

Resolves acquisition metadata, volume roles and calibration images for
each ASL run in a BIDS dataset and drives oxasl over the whole dataset.
"""

try:
    from ._version import __sha1__, __timestamp__, __version__
except ImportError:
    __version__ = "unknown"
    __timestamp__ = "unknown"
    __sha1__ = "unknown"

__all__ = ["__version__", "__timestamp__", "__sha1__"]
