"""
Node Generation API - Generate images and videos for nodes on a canvas
Each node resolves its generation mode from its connected inputs and runs one job at a time

This is the main entry point that initializes the FastAPI app and sets up routes.
The actual implementation is organized into the nodegen package.
"""

from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

# Import configuration
from nodegen.core.config import Settings, log_config_status

# Import models
from nodegen.models.models import ConnectRequest, MediaKind, NodeCreate, NodeUpdate

# Import route handlers
from nodegen.api import routes
from nodegen.api.websocket_manager import ConnectionManager

# Import engine
from nodegen.core.engine import GenerationEngine, build_engine


def create_app(settings: Optional[Settings] = None, engine: Optional[GenerationEngine] = None) -> FastAPI:
    settings = settings or (engine.settings if engine else Settings.from_env())
    log_config_status(settings)
    engine = engine or build_engine(settings)

    # Initialize FastAPI app
    app = FastAPI(title="Node Generation API")
    app.state.engine = engine

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    manager = ConnectionManager()
    app.state.manager = manager
    engine.graph.subscribe(manager.listener)

    @app.on_event("startup")
    async def startup_event():
        manager.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await engine.aclose()
        await manager.stop()

    # ========= API ENDPOINTS =========

    @app.get("/")
    async def root():
        return await routes.root(engine)

    @app.get("/health")
    async def health():
        return await routes.health(engine)

    @app.get("/models")
    async def list_models_endpoint(kind: Optional[MediaKind] = None):
        return await routes.list_models(engine, kind)

    @app.post("/nodes", status_code=201)
    async def create_node_endpoint(request: NodeCreate):
        return await routes.create_node(engine, request)

    @app.get("/nodes")
    async def list_nodes_endpoint():
        return await routes.list_nodes(engine)

    @app.get("/nodes/{node_id}")
    async def get_node_endpoint(node_id: str):
        return await routes.get_node(engine, node_id)

    @app.patch("/nodes/{node_id}")
    async def update_node_endpoint(node_id: str, update: NodeUpdate):
        return await routes.update_node(engine, node_id, update)

    @app.delete("/nodes/{node_id}")
    async def delete_node_endpoint(node_id: str):
        return await routes.delete_node(engine, node_id)

    @app.post("/nodes/{node_id}/parents")
    async def connect_node_endpoint(node_id: str, request: ConnectRequest):
        return await routes.connect_node(engine, node_id, request)

    @app.delete("/nodes/{node_id}/parents/{parent_id}")
    async def disconnect_node_endpoint(node_id: str, parent_id: str):
        return await routes.disconnect_node(engine, node_id, parent_id)

    @app.post("/nodes/{node_id}/frames/swap")
    async def swap_frames_endpoint(node_id: str):
        return await routes.swap_frames(engine, node_id)

    @app.get("/nodes/{node_id}/mode")
    async def get_mode_endpoint(node_id: str):
        return await routes.get_mode(engine, node_id)

    @app.post("/nodes/{node_id}/generate", status_code=202)
    async def generate_node_endpoint(node_id: str):
        return await routes.generate_node(engine, node_id)

    @app.post("/nodes/{node_id}/cancel")
    async def cancel_node_endpoint(node_id: str):
        return await routes.cancel_node(engine, node_id)

    @app.get("/generation-status/{node_id}")
    async def get_generation_status_endpoint(node_id: str):
        return await routes.get_generation_status(engine, node_id)

    # ========= WEBSOCKET ENDPOINTS =========

    @app.websocket("/ws/nodes/{node_id}")
    async def websocket_node_updates(websocket: WebSocket, node_id: str):
        """WebSocket endpoint for one node's updates."""
        await manager.connect(websocket, node_id)
        try:
            while True:
                # Keep connection alive; clients may send heartbeats
                data = await websocket.receive_text()
                await websocket.send_json({"event": "heartbeat", "node_id": node_id, "data": data})
        except WebSocketDisconnect:
            manager.disconnect(websocket, node_id)

    @app.websocket("/ws/nodes")
    async def websocket_all_nodes(websocket: WebSocket):
        """WebSocket endpoint for all node updates."""
        await manager.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                await websocket.send_json({"event": "heartbeat", "data": data})
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8002)
