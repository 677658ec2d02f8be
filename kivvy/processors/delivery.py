"""
Notification processors: email, SMS and push.

Each is a single delivery call; the transport decides what is terminal.
"""

from __future__ import annotations

from kivvy.jobs.payloads import SendEmailPayload, SendPushPayload, SendSmsPayload
from kivvy.jobs.worker import TaskContext
from kivvy.services.delivery import EmailMessage, PushMessage, SmsMessage


async def send_email(payload: SendEmailPayload, ctx: TaskContext) -> None:
    await ctx.services.email.send_email(
        EmailMessage(
            to=payload.to,
            subject=payload.subject,
            template=payload.template,
            context=dict(payload.context),
        )
    )
    ctx.log.info("Email delivered", to=payload.to, template=payload.template)


async def send_sms(payload: SendSmsPayload, ctx: TaskContext) -> None:
    await ctx.services.sms.send_sms(SmsMessage(to=payload.to, message=payload.message))
    ctx.log.info("SMS delivered", to=payload.to)


async def send_push_notification(payload: SendPushPayload, ctx: TaskContext) -> None:
    await ctx.services.push.send_push(
        PushMessage(
            user_id=payload.user_id,
            title=payload.title,
            message=payload.message,
            data=dict(payload.data),
        )
    )
    ctx.log.info("Push notification delivered", user_id=payload.user_id)
