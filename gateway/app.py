from __future__ import annotations

import itertools
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger

from config import config
from gateway.client_gateway import ClientGateway
from gateway.connection import Connection
from gateway.edge_gateway import EdgeGateway
from gateway.runtime import GatewayRuntime
from gateway_integration import GatewayIntegration, initialize_gateway
from utils.logger import connection_context

gateway_integration: Optional[GatewayIntegration] = None
started_at: Optional[datetime] = None
_connection_ids = itertools.count(1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global gateway_integration, started_at
    logger.info("Initializing gateway runtime...")
    gateway_integration = await initialize_gateway(config_path="gateway_config.json")
    started_at = datetime.now()
    try:
        yield
    finally:
        logger.info("Cleaning up resources...")
        try:
            await gateway_integration.shutdown()
        except Exception as e:
            logger.warning(f"Gateway cleanup failed: {e}")


app = FastAPI(
    title="Ejunz Realtime Gateway",
    description="Client/edge WebSocket gateway for ASR, TTS, tools and agent chat",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "error": {"code": "http_error", "message": str(exc.detail)}},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.gateway.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_runtime() -> GatewayRuntime:
    if gateway_integration is None or gateway_integration.runtime is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")
    return gateway_integration.runtime


async def _accept(websocket: WebSocket, kind: str) -> Connection:
    await websocket.accept()
    return Connection(websocket, f"{kind}_{next(_connection_ids)}_{datetime.now().timestamp()}")

@app.websocket("/client/ws")
async def client_websocket_endpoint(websocket: WebSocket):
    if gateway_integration is None or gateway_integration.runtime is None:
        await websocket.close(code=1011, reason="Gateway not initialized")
        return
    connection = await _accept(websocket, "client")
    with connection_context(connection.connection_id):
        handler = ClientGateway(connection, gateway_integration.runtime)
        if not await handler.prepare(websocket.query_params.get("token")):
            return
        await handler.run()


@app.websocket("/mcp/ws")
async def edge_websocket_endpoint(websocket: WebSocket):
    if gateway_integration is None or gateway_integration.runtime is None:
        await websocket.close(code=1011, reason="Gateway not initialized")
        return
    connection = await _accept(websocket, "edge")
    with connection_context(connection.connection_id):
        handler = EdgeGateway(connection, gateway_integration.runtime)
        if not await handler.prepare(websocket.query_params.get("token")):
            return
        await handler.run()


@app.get("/")
async def root():
    return {
        "message": "Ejunz gateway is running",
        "version": "1.0.0",
        "client_websocket": "/client/ws",
        "edge_websocket": "/mcp/ws",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "ready": gateway_integration is not None}


@app.get("/gateway/status")
async def get_gateway_status():
    runtime = get_runtime()
    return {
        "status": "running",
        "uptime": (datetime.now() - started_at).total_seconds() if started_at else 0,
        "clients": runtime.registry.active_count("client"),
        "edges": runtime.registry.active_count("edge"),
        "connections": runtime.registry.get_connections_info(),
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def get_metrics():
    return get_runtime().metrics.to_prometheus_text()


@app.get("/tools")
async def list_tools():
    tools = get_runtime().bridge.list_tools()
    return {"tools": tools, "total": len(tools)}
