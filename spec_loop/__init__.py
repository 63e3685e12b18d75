"""
Spec Loop - autonomous build/review/fix development loop.

Drives an external coding agent through one task at a time from a spec
directory, reviews every result, retries fixes, and tracks progress durably
across process restarts.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
