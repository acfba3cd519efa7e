"""Chat gateway: quota-guarded chat over ordered provider fallbacks with session memory.

This package provides a FastAPI application factory named ``create_app``
inside ``chat_gateway/server.py`` (see :func:`create_app`).

Typical usage
-------------
from chat_gateway import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`chat_gateway.server.create_app`; the import is
    deferred so ``import chat_gateway`` stays cheap for scripts that only
    need the ledger or the store.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
