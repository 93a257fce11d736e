"""High level orchestration for relay sessions."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .config import GatewayConfig, ProviderConfig
from .models import ChatRequest
from .normalizers import select_normalizer
from .provider_client import ProviderClient
from .session import SessionController

logger = logging.getLogger(__name__)


class GatewayService:
    """Creates relay sessions and keeps track of the ones still running.

    Sessions share nothing but the provider client's connection pool and
    reader threads. The registry only exists so a caller can cancel a session
    by id; a session removes itself once it reaches ``Closed``.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        provider: Optional[ProviderClient] = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self.provider = provider or ProviderClient(self.config)
        self.sessions: Dict[str, SessionController] = {}

    def create_session(self, message: str, provider_config: ProviderConfig) -> SessionController:
        """Accept a chat turn; raises ValueError for an unusable request."""
        if not message or not message.strip():
            raise ValueError("message is required")
        if not provider_config.endpoint:
            raise ValueError("providerConfig.endpoint is required")

        normalizer = select_normalizer(provider_config, default=self.config.default_provider)
        controller = SessionController(
            ChatRequest(message=message, provider_config=provider_config),
            self.provider,
            normalizer,
            config=self.config,
            on_closed=self._forget,
        )
        self.sessions[controller.id] = controller
        logger.info(
            "Accepted session %s for %s (%d active)",
            controller.id,
            provider_config.endpoint,
            len(self.sessions),
        )
        return controller

    def cancel(self, session_id: str, reason: str = "cancelled by caller") -> bool:
        controller = self.sessions.get(session_id)
        if controller is None:
            raise ValueError(f"No active session found for id '{session_id}'")
        return controller.cancel(reason)

    def list_sessions(self) -> List[Dict[str, object]]:
        """Return lightweight metadata for active sessions, newest first."""
        payload = [controller.info() for controller in self.sessions.values()]
        return sorted(payload, key=lambda item: item.get("created_at", 0), reverse=True)

    def cancel_all(self, reason: str = "gateway shutting down") -> int:
        cancelled = 0
        for controller in list(self.sessions.values()):
            if controller.cancel(reason):
                cancelled += 1
        return cancelled

    def close(self) -> None:
        self.cancel_all()
        self.provider.close()

    def _forget(self, controller: SessionController) -> None:
        self.sessions.pop(controller.id, None)
        logger.debug("Session %s discarded (%d active)", controller.id, len(self.sessions))
