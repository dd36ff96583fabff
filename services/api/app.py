from __future__ import annotations

import os

from fastapi import FastAPI

VERSION = os.getenv("VERSION", "dev")
MODE = os.getenv("MODE", "production")

app = FastAPI(title="api")


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "healthy", "service": "api", "version": VERSION}


@app.get("/api/version")
def version() -> dict[str, str]:
    return {"version": VERSION, "mode": MODE}
