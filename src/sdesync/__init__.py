"""
sdesync - structured data element cache synchronization.

Keeps per-document caches of externally owned fact values in sync with
the mapping service, and merges author edits back into those caches.
"""

__version__ = "0.3.0"
