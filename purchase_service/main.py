from __future__ import annotations

from .app import create_app

# uvicorn purchase_service.main:app
app = create_app()
