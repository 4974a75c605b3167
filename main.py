"""Entry point: ``uvicorn main:app`` or ``python main.py``."""

from __future__ import annotations

import os

import uvicorn

from edgeorch.api import app

__all__ = ["app"]


if __name__ == "__main__":
    uvicorn.run(app, host=os.getenv("EDGE_API_HOST", "0.0.0.0"), port=int(os.getenv("EDGE_API_PORT", "8000")))
