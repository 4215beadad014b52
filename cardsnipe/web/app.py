"""cardsnipe HTTP entry point

Run:

    uvicorn cardsnipe.web.app:app

The sniping service (scheduler loop + reconciliation sweep) runs inside the
app's lifespan.
"""

from __future__ import annotations

import os

from starlette.middleware.cors import CORSMiddleware

from cardsnipe.service import build_service
from cardsnipe.settings import configure_logging, load_settings

from .api import create_app

settings = load_settings()
configure_logging(settings.logging)

app = create_app(build_service(settings))
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
