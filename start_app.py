#!/usr/bin/env python
"""Start the sync service; PORT and LOG_LEVEL come from the environment."""
import os

import uvicorn

from cardsync.core.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    port = int(os.environ.get("PORT", 8000))

    print(f"Starting cardsync on port {port} ({settings.ENVIRONMENT})")

    uvicorn.run(
        "cardsync.main:app",
        host="0.0.0.0",
        port=port,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.DEBUG,
    )
