"""
HTTP layer for shipwright: the push-event receiver.

Provides a FastAPI application factory. A push to the designated branch
starts a pipeline run in the background; archived runs can be read back.
All deployment logic lives in ``shipwright.deploy``.

Quick start::

    from shipwright.api import create_app

    app = create_app()  # ready for uvicorn
"""

from shipwright.api.app import create_app

__all__ = ["create_app"]
