from __future__ import annotations
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import GatewaySettings, configure_logging, load_env_file, load_settings
from .dispatcher import FailureKind, GenerationDispatcher, GenerationRequest, GenerationResult, Subject, build_dispatcher
from .providers.types import IMAGE
from .quota import PlanTier

APP_VERSION = "0.1.0"

logger = logging.getLogger(__name__)

STATUS_BY_FAILURE = {
    FailureKind.VALIDATION: 400,
    FailureKind.QUOTA_DENIED: 429,
}


class Health(BaseModel):
    status: str


class VersionInfo(BaseModel):
    version: str
    providers: Dict[str, List[str]]
    tier_limits: Dict[str, Optional[int]]


class ChatBody(BaseModel):
    message: str = ""
    mode: Optional[Literal["text", "image"]] = None


class ImageBody(BaseModel):
    prompt: str = ""


class UsageInfo(BaseModel):
    subject_id: str
    tier: str
    period: str
    used: int
    limit: Optional[int]
    remaining: Optional[int]


def get_subject(
    request: Request,
    x_subject_id: Optional[str] = Header(default=None),
    x_subject_tier: Optional[str] = Header(default=None),
) -> Subject:
    """Session collaborator stand-in; deployments override this dependency.

    Callers are on the free tier. `X-Subject-Tier` is honoured only when
    `trust_subject_headers` is set, i.e. behind a proxy that sets it.
    Anonymous callers are keyed by client address.
    """
    settings: GatewaySettings = request.app.state.settings
    tier = x_subject_tier if settings.trust_subject_headers and x_subject_tier else PlanTier.FREE
    if x_subject_id:
        return Subject(x_subject_id, tier)
    host = request.client.host if request.client else "unknown"
    return Subject(f"ip:{host}")


def _respond(result: GenerationResult) -> JSONResponse:
    status = 200
    if result.failure is not None:
        status = STATUS_BY_FAILURE.get(result.failure.kind, 200)
    return JSONResponse(status_code=status, content=result.to_response())


def create_app(
    settings: GatewaySettings | None = None,
    dispatcher: GenerationDispatcher | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    dispatcher = dispatcher or build_dispatcher(settings)

    app = FastAPI(title="GenAI Gateway", version=APP_VERSION)
    app.state.settings = settings
    app.state.dispatcher = dispatcher

    @app.get("/health", response_model=Health)
    async def health() -> Health:
        return Health(status="ok")

    @app.get("/version", response_model=VersionInfo)
    async def version() -> VersionInfo:
        return VersionInfo(
            version=APP_VERSION,
            providers=dispatcher.registry.describe(),
            tier_limits={t.value: dispatcher.quota.limit_for(t) for t in dispatcher.quota.tier_limits},
        )

    @app.post("/api/chat")
    async def chat(body: ChatBody, subject: Subject = Depends(get_subject)) -> JSONResponse:
        result = await dispatcher.handle(GenerationRequest(body.message, body.mode), subject)
        return _respond(result)

    @app.post("/api/image")
    async def image(body: ImageBody, subject: Subject = Depends(get_subject)) -> JSONResponse:
        result = await dispatcher.handle(GenerationRequest(body.prompt, IMAGE), subject)
        return _respond(result)

    @app.get("/api/usage", response_model=UsageInfo)
    async def usage(subject: Subject = Depends(get_subject)) -> Any:
        snap = await dispatcher.quota.usage(subject.id, subject.tier)
        return UsageInfo(
            subject_id=snap.subject_id,
            tier=snap.tier.value,
            period=snap.period_key,
            used=snap.used,
            limit=snap.limit,
            remaining=snap.remaining,
        )

    return app


def main_app() -> FastAPI:
    """ASGI factory: `uvicorn gateway.app:main_app --factory`."""
    load_env_file()
    settings = load_settings()
    configure_logging(settings.log_level)
    return create_app(settings)
