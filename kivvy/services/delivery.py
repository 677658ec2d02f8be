"""
Kivvy Message Delivery

Email, SMS and push transports used by the notification processors:
- SMTP email (aiosmtplib) with the transactional HTML templates
- HTTP SMS provider (httpx)
- HTTP push gateway (httpx)

Each transport logs the message instead of sending it when its provider is
not configured, so development environments work without credentials.
Provider refusals (4xx, rejected recipients) raise DeliveryRejected; network
errors and 5xx propagate and are retried by the queue.
"""

from __future__ import annotations

import html
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import aiosmtplib
import httpx
import structlog

from kivvy.core.config import DeliveryConfig
from kivvy.jobs.errors import DeliveryRejected

logger = structlog.get_logger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    template: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SmsMessage:
    to: str
    message: str


@dataclass
class PushMessage:
    user_id: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


class EmailSender(ABC):
    @abstractmethod
    async def send_email(self, message: EmailMessage) -> None:
        ...


class SmsSender(ABC):
    @abstractmethod
    async def send_sms(self, message: SmsMessage) -> None:
        ...


class PushSender(ABC):
    @abstractmethod
    async def send_push(self, message: PushMessage) -> None:
        ...


_BOX = 'style="background-color: #f3f4f6; padding: 20px; border-radius: 8px; margin: 20px 0;"'
_WRAP = '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">{body}</div>'

TEMPLATES: Dict[str, str] = {
    "booking-confirmation": (
        '<h2 style="color: #2563eb;">Reserva Confirmada!</h2>'
        "<p>Olá {userName},</p>"
        "<p>A sua reserva para <strong>{activityTitle}</strong> foi confirmada com sucesso.</p>"
        f"<div {_BOX}>"
        '<h3 style="margin-top: 0;">Detalhes da Reserva</h3>'
        "<p><strong>Atividade:</strong> {activityTitle}</p>"
        "<p><strong>Data:</strong> {sessionDate}</p>"
        "<p><strong>Local:</strong> {location}</p>"
        "<p><strong>Participantes:</strong> {participants}</p>"
        "<p><strong>Total:</strong> {totalAmount}</p>"
        "</div>"
        "<p>Obrigado por escolher o Kivvy!</p>"
    ),
    "booking-reminder": (
        '<h2 style="color: #2563eb;">Lembrete: Atividade Amanhã</h2>'
        "<p>Olá {userName},</p>"
        "<p>Este é um lembrete de que tem uma atividade marcada para amanhã:</p>"
        f"<div {_BOX}>"
        '<h3 style="margin-top: 0;">{activityTitle}</h3>'
        "<p><strong>Data:</strong> {sessionDate}</p>"
        "<p><strong>Local:</strong> {location}</p>"
        "</div>"
        "<p>Esperamos vê-lo em breve!</p>"
    ),
    "booking-cancellation": (
        '<h2 style="color: #dc2626;">Reserva Cancelada</h2>'
        "<p>Olá {userName},</p>"
        "<p>A sua reserva para <strong>{activityTitle}</strong> foi cancelada.</p>"
        f"<div {_BOX}>"
        "<p><strong>Atividade:</strong> {activityTitle}</p>"
        "<p><strong>Data:</strong> {sessionDate}</p>"
        "<p><strong>Motivo:</strong> {reason}</p>"
        "</div>"
        "<p>O reembolso será processado em 3-5 dias úteis.</p>"
    ),
    "payment-failed": (
        '<h2 style="color: #dc2626;">Falha no Pagamento</h2>'
        "<p>Olá {userName},</p>"
        "<p>Não foi possível processar o pagamento para a sua reserva de <strong>{activityTitle}</strong>.</p>"
        f"<div {_BOX}>"
        "<p><strong>Erro:</strong> {error}</p>"
        "<p><strong>Valor:</strong> {amount}</p>"
        "</div>"
        "<p>Por favor, tente novamente ou contacte-nos para assistência.</p>"
    ),
    "welcome": (
        '<h2 style="color: #F43F5E;">Bem-vindo ao Kivvy!</h2>'
        "<p>Olá {userName},</p>"
        "<p>Bem-vindo à plataforma Kivvy! Estamos entusiasmados por ter você connosco.</p>"
        f"<div {_BOX}>"
        "<ul>"
        "<li>Explorar atividades para crianças na sua área</li>"
        "<li>Fazer reservas de forma rápida e segura</li>"
        "<li>Gerir as suas reservas no painel de controlo</li>"
        "<li>Avaliar e comentar as atividades</li>"
        "</ul>"
        "</div>"
        "<p>Comece a explorar e encontre a atividade perfeita para os seus filhos!</p>"
    ),
}

_DEFAULTS = {"reason": "Não especificado"}


class _EscapedContext(dict):
    """format_map source: HTML-escaped values, blanks for missing keys."""

    def __missing__(self, key: str) -> str:
        return html.escape(_DEFAULTS.get(key, ""))

    def __getitem__(self, key: str) -> str:
        if key not in self.keys():
            return self.__missing__(key)
        value = dict.__getitem__(self, key)
        return html.escape("" if value is None else str(value))


def render_template(template: str, context: Optional[Dict[str, Any]] = None) -> str:
    """Render one of the transactional templates (or the generic fallback) to HTML."""
    context = context or {}
    body = TEMPLATES.get(template)
    if body is None:
        dump = html.escape(json.dumps(context, indent=2, default=str, ensure_ascii=False))
        body = (
            "<h2>Notificação Kivvy</h2><p>Olá,</p>"
            "<p>Tem uma nova notificação da plataforma Kivvy.</p>"
            f"<pre>{dump}</pre>"
        )
        return _WRAP.format(body=body)
    return _WRAP.format(body=body.format_map(_EscapedContext(context)))


class SmtpEmailSender(EmailSender):
    """SMTP email transport."""

    def __init__(self, config: DeliveryConfig):
        self.config = config
        if not config.smtp_host:
            logger.warning("SMTP not configured, emails will only be logged")

    def _build(self, message: EmailMessage, body: str) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["From"] = self.config.smtp_from
        mime["To"] = message.to
        mime["Subject"] = message.subject
        mime.attach(MIMEText(body, "html", "utf-8"))
        return mime

    async def send_email(self, message: EmailMessage) -> None:
        body = render_template(message.template, message.context)

        if not self.config.smtp_host:
            logger.info(
                "Email would be sent (SMTP not configured)",
                to=message.to,
                subject=message.subject,
                template=message.template,
            )
            return

        try:
            await aiosmtplib.send(
                self._build(message, body),
                hostname=self.config.smtp_host,
                port=self.config.smtp_port,
                username=self.config.smtp_user,
                password=self.config.smtp_password,
                use_tls=self.config.smtp_port == 465,
                start_tls=self.config.smtp_port == 587,
                timeout=self.config.timeout,
            )
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise DeliveryRejected(f"Recipient refused: {message.to}") from e
        except aiosmtplib.SMTPResponseException as e:
            if 500 <= e.code < 600:
                raise DeliveryRejected(f"SMTP rejected message: {e.code} {e.message}") from e
            raise

        logger.info("Email sent", to=message.to, subject=message.subject, template=message.template)


def format_phone_number(phone_number: str, country_code: str = "351") -> str:
    """
    Normalise to E.164 for Portuguese numbers.

    9-digit mobile numbers get the country code; numbers already carrying it
    get a leading ``+``; anything else is returned unchanged.
    """
    digits = re.sub(r"\D", "", phone_number)
    if len(digits) == 9 and digits.startswith("9"):
        return f"+{country_code}{digits}"
    if digits.startswith(country_code) and len(digits) in (12, 13):
        return f"+{digits}"
    return phone_number


def _raise_for_provider(response: httpx.Response, what: str) -> None:
    if 400 <= response.status_code < 500 and response.status_code != 429:
        raise DeliveryRejected(f"{what} rejected: {response.status_code} {response.text[:200]}")
    response.raise_for_status()


class HttpSmsSender(SmsSender):
    """SMS provider over HTTP (bearer token, JSON body)."""

    def __init__(self, config: DeliveryConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        if not (config.sms_api_url and config.sms_api_key):
            logger.warning("SMS provider not configured, SMS will only be logged")

    async def send_sms(self, message: SmsMessage) -> None:
        phone = format_phone_number(message.to, self.config.sms_default_country_code)

        if not (self.config.sms_api_url and self.config.sms_api_key):
            logger.info("SMS would be sent (provider not configured)", to=phone, length=len(message.message))
            return

        body = {"to": phone, "message": message.message, "from": self.config.sms_from}
        headers = {"Authorization": f"Bearer {self.config.sms_api_key}"}
        if self._client is not None:
            response = await self._client.post(self.config.sms_api_url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(self.config.sms_api_url, json=body, headers=headers)

        _raise_for_provider(response, "SMS")
        result = response.json() if response.content else {}
        logger.info("SMS sent", to=phone, message_id=result.get("messageId"), cost=result.get("cost"))


class HttpPushSender(PushSender):
    """Push notifications through an HTTP push gateway that owns device subscriptions."""

    def __init__(self, config: DeliveryConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        if not config.push_api_url:
            logger.warning("Push gateway not configured, notifications will only be logged")

    def _build(self, message: PushMessage) -> Dict[str, Any]:
        return {
            "userId": message.user_id,
            "notification": {
                "title": message.title,
                "body": message.message,
                "icon": "/icon-192x192.png",
                "badge": "/badge-72x72.png",
                "data": {"url": "/", **message.data},
                "actions": [
                    {"action": "open", "title": "Abrir"},
                    {"action": "close", "title": "Fechar"},
                ],
                "requireInteraction": True,
            },
        }

    async def send_push(self, message: PushMessage) -> None:
        if not self.config.push_api_url:
            logger.info("Push notification would be sent (gateway not configured)", user_id=message.user_id, title=message.title)
            return

        headers = {"Authorization": f"Bearer {self.config.push_api_key}"} if self.config.push_api_key else {}
        if self._client is not None:
            response = await self._client.post(self.config.push_api_url, json=self._build(message), headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(self.config.push_api_url, json=self._build(message), headers=headers)

        _raise_for_provider(response, "Push")
        logger.info("Push notification sent", user_id=message.user_id, title=message.title)
