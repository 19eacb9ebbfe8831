"""
Client identity derivation for the admission pipeline.
"""

from .extractor import ANONYMOUS, ClientKeyExtractor

__all__ = [
    "ANONYMOUS",
    "ClientKeyExtractor",
]
