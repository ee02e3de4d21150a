"""Cross-platform uvicorn launcher.

Usage:
    python run.py              # development (reload enabled)
    python run.py --no-reload  # production-like
"""

import sys

import uvicorn

from app.core.config import settings

if __name__ == "__main__":
    reload = "--no-reload" not in sys.argv and not settings.is_production
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=reload,
        log_level=settings.LOG_LEVEL.lower(),
    )
