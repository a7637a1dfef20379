"""Run the FastAPI app for the agentic runtime."""

from __future__ import annotations

import logging
import os

import uvicorn
from fastapi import FastAPI

from src.routers import chat_router, sessions_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Agentic Runtime", version="0.1.0")
app.include_router(chat_router)
app.include_router(sessions_router)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
    )
