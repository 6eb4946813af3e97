"""
FastAPI Web Application - Chip Maturer API
===========================================

JSON API behind the operator dashboard: chips, pairs, prompts and the
maturation engine. Services are built in the lifespan and live on app.state.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..application import (
    ConnectionRegistry,
    ConversationScheduler,
    PairRegistry,
    PromptLibrary,
    TurnRecorded,
)
from ..domain.exceptions import (
    ConfigurationError,
    NotFoundError,
    RemoteCallError,
    ValidationError,
)
from ..infrastructure.config import get_settings
from ..infrastructure.llm import ChatService
from ..infrastructure.persistence import Database, init_database
from ..infrastructure.whatsapp import EvolutionGateway

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: Database
    scheduler: ConversationScheduler
    connections: ConnectionRegistry
    pairs: PairRegistry
    prompts: PromptLibrary


def build_services() -> Services:
    """Wire the production services from settings."""
    settings = get_settings()
    for issue in settings.validate():
        logger.warning(issue)

    db = init_database(str(settings.database_file))
    gateway = EvolutionGateway(settings.gateway)
    scheduler = ConversationScheduler(db, ChatService(settings.llm), gateway, settings.scheduler)
    pairs = PairRegistry(db, scheduler)
    return Services(
        db=db,
        scheduler=scheduler,
        connections=ConnectionRegistry(db, gateway, pairs),
        pairs=pairs,
        prompts=PromptLibrary(db),
    )


# ── Request bodies ─────────────────────────────────────────────────

class ConnectionCreate(BaseModel):
    name: str
    phone: Optional[str] = None


class ConnectionUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    instance_name: Optional[str] = None


class PairCreate(BaseModel):
    first_connection_id: str = ""
    second_connection_id: str = ""


class PromptText(BaseModel):
    text: str = ""


class PromptCreate(BaseModel):
    name: str
    content: str
    category: str = "general"
    is_global: bool = False


class PromptUpdate(BaseModel):
    name: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(services_factory: Callable[[], Services] = build_services) -> FastAPI:
    """Build the API. Tests pass a factory wired with fake collaborators."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services_factory()
        logger.info("Services ready")
        yield
        await app.state.services.scheduler.stop()
        logger.info("Maturation engine shut down")

    app = FastAPI(
        title="Chip Maturer",
        description="Automated conversations between paired WhatsApp chips",
        lifespan=lifespan,
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(400, exc)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error(f"Configuration error: {exc}")
        return _error(503, exc)

    @app.exception_handler(RemoteCallError)
    async def remote_error_handler(request: Request, exc: RemoteCallError):
        return _error(502, exc)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ── Connections ────────────────────────────────────────────────

    @app.get("/api/connections")
    async def list_connections(services: Services = Depends(get_services)):
        return {
            "connections": [asdict(c) for c in services.connections.list()],
            "active_count": services.connections.active_count(),
        }

    @app.post("/api/connections", status_code=201)
    async def create_connection(body: ConnectionCreate, services: Services = Depends(get_services)):
        connection = await asyncio.to_thread(services.connections.create, body.name, body.phone)
        return asdict(connection)

    @app.get("/api/connections/{connection_id}")
    async def get_connection(connection_id: str, services: Services = Depends(get_services)):
        return asdict(services.connections.get(connection_id))

    @app.patch("/api/connections/{connection_id}")
    async def update_connection(connection_id: str, body: ConnectionUpdate,
                                services: Services = Depends(get_services)):
        fields = body.model_dump(exclude_unset=True, exclude_none=True)
        return asdict(services.connections.update(connection_id, **fields))

    @app.delete("/api/connections/{connection_id}")
    async def delete_connection(connection_id: str, services: Services = Depends(get_services)):
        services.connections.delete(connection_id)
        return {"success": True}

    @app.post("/api/connections/{connection_id}/sync")
    async def sync_connection(connection_id: str, services: Services = Depends(get_services)):
        connection = await asyncio.to_thread(services.connections.synchronize, connection_id)
        return asdict(connection)

    @app.get("/api/connections/{connection_id}/qr")
    async def connection_qr(connection_id: str, services: Services = Depends(get_services)):
        connection = services.connections.get(connection_id)
        return {
            "name": connection.name,
            "instance_name": connection.instance_name,
            "status": connection.status,
            "qr_code": connection.qr_code or None,
        }

    # ── Pairs ──────────────────────────────────────────────────────

    @app.get("/api/pairs")
    async def list_pairs(services: Services = Depends(get_services)):
        return {"pairs": [asdict(p) for p in services.pairs.list()]}

    @app.post("/api/pairs", status_code=201)
    async def add_pair(body: PairCreate, services: Services = Depends(get_services)):
        pair = services.pairs.add(body.first_connection_id, body.second_connection_id)
        return asdict(pair)

    @app.delete("/api/pairs/{pair_id}")
    async def remove_pair(pair_id: str, services: Services = Depends(get_services)):
        services.pairs.remove(pair_id)
        return {"success": True}

    @app.post("/api/pairs/{pair_id}/toggle")
    async def toggle_pair(pair_id: str, services: Services = Depends(get_services)):
        return asdict(services.pairs.toggle_active(pair_id))

    @app.post("/api/pairs/{pair_id}/prompt-override/toggle")
    async def toggle_prompt_override(pair_id: str, services: Services = Depends(get_services)):
        return asdict(services.pairs.toggle_prompt_override(pair_id))

    @app.put("/api/pairs/{pair_id}/prompt")
    async def set_pair_prompt(pair_id: str, body: PromptText,
                              services: Services = Depends(get_services)):
        return asdict(services.pairs.set_override_text(pair_id, body.text))

    @app.get("/api/pairs/{pair_id}/messages")
    async def pair_messages(pair_id: str, services: Services = Depends(get_services)):
        return {"messages": [asdict(m) for m in services.pairs.messages(pair_id)]}

    @app.post("/api/pairs/{pair_id}/turn")
    async def run_pair_turn(pair_id: str, services: Services = Depends(get_services)):
        result = await services.scheduler.run_turn(pair_id)
        if isinstance(result, TurnRecorded):
            return {"success": True, "message": asdict(result.message)}
        return JSONResponse(status_code=502, content={"success": False, "error": result.reason})

    # ── Prompts ────────────────────────────────────────────────────

    @app.get("/api/prompts")
    async def list_prompts(services: Services = Depends(get_services)):
        return {"prompts": [asdict(p) for p in services.prompts.list()]}

    @app.post("/api/prompts", status_code=201)
    async def add_prompt(body: PromptCreate, services: Services = Depends(get_services)):
        prompt = services.prompts.add(body.name, body.content, body.category, body.is_global)
        return asdict(prompt)

    @app.patch("/api/prompts/{prompt_id}")
    async def update_prompt(prompt_id: str, body: PromptUpdate,
                            services: Services = Depends(get_services)):
        fields = body.model_dump(exclude_unset=True, exclude_none=True)
        return asdict(services.prompts.update(prompt_id, **fields))

    @app.delete("/api/prompts/{prompt_id}")
    async def delete_prompt(prompt_id: str, services: Services = Depends(get_services)):
        services.prompts.delete(prompt_id)
        return {"success": True}

    @app.post("/api/prompts/{prompt_id}/global")
    async def set_global_prompt(prompt_id: str, services: Services = Depends(get_services)):
        return asdict(services.prompts.set_global(prompt_id))

    # ── Maturation engine ──────────────────────────────────────────

    @app.post("/api/maturador/start")
    async def start_engine(services: Services = Depends(get_services)):
        notice = await services.scheduler.start()
        return {"notice": asdict(notice), "stats": services.scheduler.stats()}

    @app.post("/api/maturador/stop")
    async def stop_engine(services: Services = Depends(get_services)):
        notice = await services.scheduler.stop()
        return {"notice": asdict(notice), "stats": services.scheduler.stats()}

    @app.get("/api/stats")
    async def stats(services: Services = Depends(get_services)):
        return services.scheduler.stats()

    @app.get("/api/notices")
    async def notices(services: Services = Depends(get_services)):
        return {"notices": [asdict(n) for n in services.scheduler.notices]}

    return app


app = create_app()
