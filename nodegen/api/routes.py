"""
FastAPI route handlers for the node generation API
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Optional

from fastapi import HTTPException

from nodegen.core.engine import GenerationEngine
from nodegen.core.errors import NodeBusyError, NodeNotFoundError, ValidationError
from nodegen.core.modes import effective_frame_inputs, swap_frame_roles
from nodegen.models.models import (
    GENERATION_FIELDS,
    IMAGE_PRODUCING_TYPES,
    ConnectRequest,
    GenerateResponse,
    GenerationStatus,
    MediaKind,
    ModeResponse,
    Node,
    NodeCreate,
    NodeStatus,
    NodeUpdate,
)

logger = logging.getLogger(__name__)


@contextmanager
def http_errors():
    """Translate engine errors into HTTP errors."""
    try:
        yield
    except NodeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NodeBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


async def root(engine: GenerationEngine):
    return {
        "service": "Node Generation API",
        "providers": sorted(engine.adapters),
        "nodes": len(engine.graph.all()),
        "endpoints": [
            "/models",
            "/nodes",
            "/nodes/{node_id}/generate",
            "/nodes/{node_id}/cancel",
            "/generation-status/{node_id}",
            "/ws/nodes",
        ],
    }


async def health(engine: GenerationEngine):
    return {
        "status": "healthy",
        "providers": {name: True for name in sorted(engine.adapters)},
        "active_jobs": sum(1 for n in engine.graph.all() if engine.dispatcher.active_job(n.id)),
    }


async def list_models(engine: GenerationEngine, kind: Optional[MediaKind] = None):
    models = engine.catalog.all(kind)
    return {
        "models": [
            {**m.model_dump(mode="json"), "available": m.provider in engine.adapters}
            for m in models
        ],
        "count": len(models),
    }


async def create_node(engine: GenerationEngine, request: NodeCreate) -> Node:
    data = request.model_dump()
    data["id"] = data.get("id") or uuid.uuid4().hex
    if request.result_url:
        data["status"] = NodeStatus.SUCCESS
    with http_errors():
        return engine.graph.add(Node.model_validate(data))


async def list_nodes(engine: GenerationEngine):
    # Parents before children, so the canvas can render inputs first
    nodes = [engine.graph.get(node_id) for node_id in engine.graph.topological_order()]
    return {"nodes": nodes, "count": len(nodes)}


async def get_node(engine: GenerationEngine, node_id: str) -> Node:
    with http_errors():
        return engine.graph.get(node_id)


async def update_node(engine: GenerationEngine, node_id: str, update: NodeUpdate) -> Node:
    fields = update.model_dump(exclude_unset=True)

    with http_errors():
        node = engine.graph.get(node_id)

        if node.status == NodeStatus.LOADING:
            locked = sorted(GENERATION_FIELDS & fields.keys())
            if locked:
                raise HTTPException(
                    status_code=409,
                    detail=f"Node {node_id} is generating; cannot change {', '.join(locked)}",
                )
        if fields.get("status") == NodeStatus.LOADING:
            raise HTTPException(status_code=422, detail="Loading is set by the generation service only")
        if "frame_inputs" in fields:
            unknown = set(fields["frame_inputs"]) - set(node.parent_ids)
            if unknown:
                raise HTTPException(
                    status_code=422,
                    detail=f"frame_inputs references unconnected nodes: {', '.join(sorted(unknown))}",
                )

        return engine.graph.update_node(node_id, **fields)


async def delete_node(engine: GenerationEngine, node_id: str):
    with http_errors():
        engine.dispatcher.cancel(node_id)
        engine.graph.remove(node_id)
    return {"success": True, "node_id": node_id}


async def connect_node(engine: GenerationEngine, node_id: str, request: ConnectRequest) -> Node:
    with http_errors():
        return engine.graph.connect(request.parent_id, node_id)


async def disconnect_node(engine: GenerationEngine, node_id: str, parent_id: str) -> Node:
    with http_errors():
        return engine.graph.disconnect(parent_id, node_id)


async def swap_frames(engine: GenerationEngine, node_id: str) -> Node:
    """Swap start and end frames of a node fed by two images."""
    with http_errors():
        node = engine.graph.get(node_id)
        images = [p for p in engine.graph.parents(node_id) if p.type in IMAGE_PRODUCING_TYPES]
        if len(images) != 2:
            raise ValidationError("Frame swap needs exactly two connected image inputs")
        swapped = swap_frame_roles(effective_frame_inputs(node, images))
        logger.info(f"🔀 Swapped frames on node {node_id}")
        return engine.graph.update_node(node_id, frame_inputs=swapped)


async def get_mode(engine: GenerationEngine, node_id: str) -> ModeResponse:
    with http_errors():
        resolution, model, changed, available = engine.dispatcher.preview(node_id)
    return ModeResponse(
        node_id=node_id,
        mode=resolution.mode.value,
        model_id=model.id,
        model_changed=changed,
        available_models=[m.id for m in available],
    )


async def generate_node(engine: GenerationEngine, node_id: str) -> GenerateResponse:
    """Start generation in the background; progress arrives over the WebSocket."""
    with http_errors():
        engine.dispatcher.start(node_id)
        node = engine.graph.get(node_id)

    logger.info(f"📝 Generation started for node {node_id}")
    return GenerateResponse(
        success=True,
        node_id=node_id,
        status=node.status,
        message="Generation started",
    )


async def cancel_node(engine: GenerationEngine, node_id: str):
    with http_errors():
        cancelled = engine.dispatcher.cancel(node_id)
    return {
        "success": cancelled,
        "node_id": node_id,
        "message": "Cancellation requested" if cancelled else "No active generation",
    }


async def get_generation_status(engine: GenerationEngine, node_id: str) -> GenerationStatus:
    record = engine.tracker.get(node_id)
    if not record:
        raise HTTPException(status_code=404, detail=f"No generation status for node {node_id}")
    return GenerationStatus(**record)
