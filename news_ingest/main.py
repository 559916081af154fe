# news_ingest/main.py

from fastapi import FastAPI

from news_ingest.config import get_settings
from news_ingest.logging_config import configure_logging
from news_ingest.routers import admin_router

settings = get_settings()
configure_logging(json_format=settings.LOG_JSON, level=settings.LOG_LEVEL)

app = FastAPI(title="News Ingest")

app.include_router(admin_router)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "news-ingest"}


def run():
    """Serve the app (`news-serve`); PORT defaults to 8000."""
    import os

    import uvicorn

    uvicorn.run("news_ingest.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    run()
