"""Linkstore: content-addressed package store with hard-linked checkouts.

Objects (blobs, trees, packages, builders, mappings) are addressed by the
SHA-256 of their canonical bytes. Packages are realized as directories of
hard links into the object store; builders are run in scratch directories
and their relocated output is recorded as a builder -> package mapping.
"""

__version__ = "0.1.0"

from linkstore.config import StoreLayout, StoreSettings
from linkstore.store import Store

__all__ = ["Store", "StoreLayout", "StoreSettings", "__version__"]
