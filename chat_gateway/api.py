"""FastAPI entry point for the chat gateway."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, validator

from .config import GatewayConfig, ProviderConfig
from .service import GatewayService
from .utils import setup_logging
from .writer import EventStreamResponse

logger = logging.getLogger(__name__)


class ProviderConfigRequest(BaseModel):
    endpoint: str = Field(..., description="Streaming completion endpoint URL.")
    credential: str = Field(..., description="Bearer credential for the endpoint.", repr=False)
    provider: Optional[str] = Field(
        None, description="Provider family (openai, anthropic, ollama); inferred from the endpoint when omitted."
    )
    model: Optional[str] = Field(None, description="Model override for this request.")

    @validator("endpoint")
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return value

    def to_config(self) -> ProviderConfig:
        return ProviderConfig(
            endpoint=self.endpoint,
            credential=self.credential,
            provider=self.provider,
            model=self.model,
        )


class ChatRequest(BaseModel):
    message: str = Field(..., description="User message to relay to the model.")
    provider_config: ProviderConfigRequest = Field(..., alias="providerConfig")

    @validator("message")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool


class SessionInfo(BaseModel):
    session_id: str
    state: str
    created_at: float
    last_activity_at: float
    deltas_forwarded: int = 0


def create_app(
    gateway_config: Optional[GatewayConfig] = None,
    *,
    log_dir: Optional[str] = None,
    service: Optional[GatewayService] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    app = FastAPI(title="Streaming Chat Gateway", version="0.1.0")
    app.state.service = service or GatewayService(gateway_config)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        app.state.service.close()

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/chat")
    async def chat(request: ChatRequest):
        try:
            controller = app.state.service.create_session(
                request.message,
                request.provider_config.to_config(),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Chat request failed")
            raise HTTPException(status_code=500, detail="Chat request failed") from exc

        return EventStreamResponse(controller, headers={"X-Session-Id": controller.id})

    @app.post("/chat/{session_id}/cancel", response_model=CancelResponse)
    async def cancel(session_id: str):
        try:
            cancelled = app.state.service.cancel(session_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"session_id": session_id, "cancelled": cancelled}

    @app.get("/sessions", response_model=list[SessionInfo])
    async def sessions():
        return app.state.service.list_sessions()

    return app
