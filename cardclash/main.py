from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
from cardclash.config import settings
from cardclash.routers import lobby_routes, ws_routes

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

app = FastAPI(
    title="Card Clash",
    description="Real-time multiplayer flashcard trivia",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(lobby_routes.router)
app.include_router(ws_routes.router)

@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "name": "Card Clash",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "docs": "/docs",
            "websocket": "/ws"
        }
    }

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "lobbies": ws_routes.directory.lobby_count,
        "connections": len(ws_routes.manager.connections)
    }
