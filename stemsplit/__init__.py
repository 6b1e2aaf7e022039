"""stemsplit package initializer.

Stem separation of long recordings by windowed neural inference.  The
windowing core and its collaborators live in :mod:`stemsplit.separation`;
:mod:`stemsplit.main` exposes the HTTP service.
"""

__version__ = "0.3.0"
