# Web backend for the cloud cost assistant.
# cloud-cost-web  (or: uvicorn cloud_cost_web.fast_api_server:create_app --factory --port 3001)
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from cloud_cost_shared.conversation import ConversationEngine, LanguageModel
from cloud_cost_shared.github_installer import GitHubInstaller
from cloud_cost_shared.mcp_lifecycle import ToolServerManager
from cloud_cost_shared.openai_gpt_manager import OpenAIChat

from cloud_cost_web import __version__
from cloud_cost_web.app.config import WebSettings, get_settings
from cloud_cost_web.app.main import logger, process
from cloud_cost_web.services.chat_handler import ChatSession
from cloud_cost_web.services.connection_service import ConnectionService
from cloud_cost_web.services.renderer_service import render_prompt


def _process_response(http_resp: dict[str, Any]) -> Response | JSONResponse:
    """Convert a proxy-style response dict into a FastAPI Response."""
    status_code = http_resp.get("statusCode", 200)
    content_type = http_resp.get("headers", {}).get("Content-Type", "text/plain")
    body = http_resp.get("body", "")

    # Handle JSON content
    if content_type == "application/json" and isinstance(body, str):
        return JSONResponse(content=json.loads(body), status_code=status_code)

    return Response(content=body, status_code=status_code, media_type=content_type)


async def _process_request(body: bytes, request: Request, service: ConnectionService) -> Response:
    """Convert a FastAPI request to an event and dispatch it."""
    event = {
        "body": body,
        "headers": dict(request.headers),
        "queryStringParameters": dict(request.query_params),
        "requestContext": {"http": {"method": request.method, "path": request.url.path}},
    }
    return _process_response(await process(event, service))


def create_app(
    settings: WebSettings | None = None,
    *,
    llm: LanguageModel | None = None,
    installer: GitHubInstaller | None = None,
    manager: ToolServerManager | None = None,
) -> FastAPI:
    """
    Build the web backend.

    The model, installer and manager can be injected; by default they are built from settings.
    """
    settings = settings or get_settings()
    logger.setLevel(settings.log_level)

    installer = installer or GitHubInstaller(settings.mcp_install_dir)
    manager = manager or ToolServerManager(
        client_name="cloud-cost-web", client_version=__version__, logger=logger
    )
    service = ConnectionService(installer, manager, logger)
    system_prompt = render_prompt()

    def engine_factory() -> ConversationEngine:
        model = llm or OpenAIChat(model=settings.openai_model, api_key=settings.openai_api_key)
        return ConversationEngine(
            model,
            manager,
            system_prompt,
            max_tool_iterations=settings.max_tool_iterations,
            logger=logger,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Cloud cost web backend started")
        yield
        logger.info("Shutting down, stopping MCP server")
        await service.close()

    app = FastAPI(title="Cloud Cost Assistant", version=__version__, lifespan=lifespan)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- administrative routes ---
    @app.post("/api/mcp/connect")
    @app.post("/api/mcp/disconnect")
    @app.get("/api/mcp/status")
    @app.get("/api/mcp/tools")
    async def mcp_routes(request: Request) -> Response:
        body = await request.body()
        return await _process_request(body, request, service)

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {
            "ok": True,
            "mcp_connected": manager.is_connected(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/")
    def index() -> dict[str, Any]:
        return {
            "name": "Cloud Cost Assistant",
            "version": __version__,
            "endpoints": {
                "health": "/healthz",
                "chat": "/ws/chat",
                "connect": "/api/mcp/connect",
                "disconnect": "/api/mcp/disconnect",
                "status": "/api/mcp/status",
                "tools": "/api/mcp/tools",
            },
        }

    # --- chat ---
    @app.websocket("/ws/chat")
    async def chat(websocket: WebSocket) -> None:
        await websocket.accept()
        session = ChatSession(websocket, manager, engine_factory, logger)
        await session.run()

    return app


def main() -> int:
    """
    Run the web backend with uvicorn.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    load_dotenv()
    try:
        settings = get_settings()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    app = create_app(settings)
    logger.info(f"Listening on http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
