from __future__ import annotations

import os

from fastapi import FastAPI
from fastapi.responses import HTMLResponse

VERSION = os.getenv("VERSION", "dev")

app = FastAPI(title="web")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy", "service": "web", "version": VERSION}


@app.get("/", response_class=HTMLResponse)
def index() -> str:
    return f"<!DOCTYPE html><html><head><title>web {VERSION}</title></head><body><h1>web {VERSION}</h1></body></html>"
