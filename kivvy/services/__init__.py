"""
Kivvy Services

External capabilities the task processors depend on: message delivery,
payments, persistence and media hosting.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from kivvy.core.config import KivvyConfig
from kivvy.services.delivery import (
    EmailSender,
    HttpPushSender,
    HttpSmsSender,
    PushSender,
    SmsSender,
    SmtpEmailSender,
)
from kivvy.services.media import HttpImageHost, ImageHost
from kivvy.services.payments import PaymentGateway, StripeGateway
from kivvy.services.repository import InMemoryRepository, Repository


@dataclass
class Services:
    """Bundle handed to every processor through the task context."""
    email: EmailSender
    sms: SmsSender
    push: PushSender
    payments: PaymentGateway
    repository: Repository
    media: ImageHost


def build_services(config: KivvyConfig, repository: Optional[Repository] = None) -> Services:
    return Services(
        email=SmtpEmailSender(config.delivery),
        sms=HttpSmsSender(config.delivery),
        push=HttpPushSender(config.delivery),
        payments=StripeGateway(config.payments),
        repository=repository if repository is not None else InMemoryRepository(),
        media=HttpImageHost(config.media),
    )


__all__ = [
    "Services",
    "build_services",
    "EmailSender",
    "SmsSender",
    "PushSender",
    "PaymentGateway",
    "Repository",
    "InMemoryRepository",
    "ImageHost",
]
