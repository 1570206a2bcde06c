from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from orderflow.core.config import Settings, get_settings
from orderflow.domain.email.client import EmailClient
from orderflow.persistence.pg import SessionFactory


@dataclass
class PipelineContext:
    """Collaborators for one webhook delivery, passed explicitly to every handler."""

    settings: Settings = field(default_factory=get_settings)
    session_factory: SessionFactory | None = None
    email_client: EmailClient | None = None


@dataclass
class HandlerResult:
    order_id: str | None = None
    actions: list[str] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"actions": list(self.actions)}
        if self.order_id:
            body["order_id"] = self.order_id
        if self.warnings:
            body["warnings"] = list(self.warnings)
        return body


@dataclass
class PipelineResult:
    status_code: int
    body: dict[str, Any]
