"""
Webhook Models: WebhookEvent.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow


class WebhookEvent(Base):
    """
    A gateway callback that has already been handled.

    gateway_event_id is unique, so a redelivered webhook is recognised and
    acknowledged without being processed twice.
    """

    __tablename__ = "webhook_event"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    gateway_event_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # PROCESSED, IGNORED
    payment_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(gateway={self.gateway}, event={self.gateway_event_id}, status={self.status})>"
