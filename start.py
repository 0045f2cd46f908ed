#!/usr/bin/env python3
"""
Startup script that reads host, port and log level from the environment.
"""
import uvicorn
from cardclash.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "cardclash.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )
