#!/usr/bin/env python3
"""Run the web server."""
import uvicorn

from aifactory.config import load_settings

if __name__ == "__main__":
    settings = load_settings()
    uvicorn.run("aifactory.server:app", host=settings.host, port=settings.port, reload=True)
