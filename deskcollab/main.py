from __future__ import annotations

from fastapi import FastAPI

from deskcollab.api.routes import realtime
from deskcollab.core.config import get_settings
from deskcollab.core.logging import configure_logging

configure_logging()
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    description="Realtime hub for ticket conversations, viewer presence and message relay.",
)

app.include_router(realtime.router)


@app.get("/health", include_in_schema=False)
async def health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.environment}
