"""
SlideCast Backend - Unified Application Entry Point
Mounts the generation service under a single FastAPI application
"""

from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from services.generation import app as generation_module
from services.generation.app import get_service
from services.generation.service import GenerationService
from services.storage import LocalObjectStorage
from services.websocket_progress import websocket_manager
from shared.utils import config, setup_logging

logger = setup_logging("slidecast-backend")

generation_app = generation_module.app


@asynccontextmanager
async def lifespan(gateway: FastAPI):
    async with generation_module.lifespan(gateway):
        try:
            yield
        finally:
            await websocket_manager.reset()


app = FastAPI(
    title="SlideCast Backend API",
    description="""
    Unified API for provider video generation, status monitoring and asset publishing.

    All endpoints are documented below. Service routes are organized by tag.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Health",
            "description": "Service health and status endpoints",
        },
        {
            "name": "Generation",
            "description": "Generation jobs, batches, assets and webhooks - mounted at /api/v1/generation",
        },
        {
            "name": "Media",
            "description": "Signed downloads of locally stored assets",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get("allowed_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes to exclude (internal FastAPI docs routes)
EXCLUDED_PATHS = {"/openapi.json", "/docs", "/docs/oauth2-redirect", "/redoc"}

# Include Generation routes with prefix
for route in generation_app.routes:
    if hasattr(route, "path") and hasattr(route, "endpoint"):
        # Skip internal documentation routes
        if route.path in EXCLUDED_PATHS:
            continue
        route_kwargs = {
            "path": f"/api/v1/generation{route.path}",
            "endpoint": route.endpoint,
            "methods": route.methods,
            "tags": ["Generation"],
        }
        if hasattr(route, "name"):
            route_kwargs["name"] = f"generation_{route.name}"
        if hasattr(route, "response_model"):
            route_kwargs["response_model"] = route.response_model
        if getattr(route, "status_code", None):
            route_kwargs["status_code"] = route.status_code
        app.add_api_route(**route_kwargs)


@app.websocket("/ws/progress")
async def websocket_progress_endpoint(websocket: WebSocket):
    """WebSocket endpoint for generation job updates."""
    client_id = websocket.query_params.get("client_id")
    assigned_client_id = await websocket_manager.connect(websocket, client_id)
    await websocket.send_json({"event": "connected", "client_id": assigned_client_id})

    try:
        while True:
            message = await websocket.receive_json()
            action = message.get("action")

            if action == "subscribe":
                job_id = message.get("job_id")
                if not job_id:
                    await websocket.send_json({"event": "error", "message": "Missing job_id for subscribe"})
                    continue
                await websocket_manager.subscribe(assigned_client_id, job_id)
                await websocket.send_json({"event": "subscribed", "job_id": job_id})
            elif action == "unsubscribe":
                job_id = message.get("job_id")
                await websocket_manager.unsubscribe(assigned_client_id, job_id)
                await websocket.send_json({"event": "unsubscribed", "job_id": job_id})
            elif action == "ping":
                await websocket.send_json({"event": "pong"})
            else:
                await websocket.send_json({"event": "error", "message": f"Unknown action: {action}"})
    except WebSocketDisconnect:
        await websocket_manager.disconnect(assigned_client_id)
    except Exception:
        await websocket_manager.disconnect(assigned_client_id)
        raise


@app.get("/media/{bucket}/{key:path}", tags=["Media"])
async def serve_media(
    bucket: str,
    key: str,
    request: Request,
    generation: GenerationService = Depends(get_service),
):
    """Serve locally stored objects to holders of a valid signed download URL."""
    storage = generation.storage
    if not isinstance(storage, LocalObjectStorage):
        raise HTTPException(status_code=404, detail="Media is served by the object store")

    signed_url = f"{storage.public_base_url}/{quote(bucket)}/{quote(key)}?{request.url.query}"
    if not storage.verify_url(signed_url, method="GET"):
        raise HTTPException(status_code=403, detail="Media URL is invalid or expired")
    try:
        path = storage.path_for(bucket, key)
    except ValueError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Media not found")
    return FileResponse(path)


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with service information and API navigation"""
    return {
        "service": "SlideCast Backend API",
        "version": "1.0.0",
        "services": {
            "generation": {
                "base_url": "/api/v1/generation",
                "docs": "/docs",
                "health": "/api/v1/generation/health",
            },
            "progress": {
                "websocket": "/ws/progress",
            },
            "media": {
                "base_url": "/media",
            },
        },
        "documentation": {
            "swagger_ui": "/docs",
            "redoc": "/redoc",
            "openapi_json": "/openapi.json",
        },
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for all services"""
    return {
        "status": "healthy",
        "services": {
            "api_gateway": "operational",
            "generation": "operational",
        },
    }


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting SlideCast Backend on http://0.0.0.0:8000")
    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
