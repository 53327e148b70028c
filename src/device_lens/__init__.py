"""
device-lens - Hardware ID lookup and device information caches.

Resolves USB and PCI vendor/product IDs, caches expensive device probes,
downloaded device images and enrichment data from external sources, and
exposes all of it to a GUI shell over a small HTTP API.
"""

__version__ = "0.1.0"
__all__ = ["run_server", "create_app"]

from .main import create_app, run_server
