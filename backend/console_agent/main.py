"""
Database Console Agent - FastAPI Application.

Main entry point for the backend API server.
Exposes the skill and tool catalogs and streams AI agent
turns for the database console.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from console_agent.config import settings
from console_agent.routes import chat

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(
    title="Database Console Agent API",
    description=(
        "AI assistant for a database console: plans each turn, "
        "calls server and client tools, and streams progress "
        "as Server-Sent Events."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware for frontend development server
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routes
app.include_router(chat.router)


@app.get("/api/health", tags=["health"])
def health_check():
    """Health check endpoint to verify the API is running."""
    return {"status": "ok"}
