"""
Kivvy Task Processors

One async function per task kind, ``processor(payload, ctx)``.
"""

from __future__ import annotations

from typing import Dict

from kivvy.jobs.envelope import TaskKind
from kivvy.jobs.worker import Processor
from kivvy.processors.delivery import send_email, send_push_notification, send_sms
from kivvy.processors.maintenance import (
    cleanup_expired_sessions,
    process_image_upload,
    send_booking_reminder,
    sync_external_data,
    update_activity_stats,
)
from kivvy.processors.payments import process_payment
from kivvy.processors.reports import generate_report


def build_processors() -> Dict[TaskKind, Processor]:
    """The default kind -> processor registry."""
    return {
        TaskKind.SEND_EMAIL: send_email,
        TaskKind.SEND_SMS: send_sms,
        TaskKind.SEND_PUSH_NOTIFICATION: send_push_notification,
        TaskKind.PROCESS_PAYMENT: process_payment,
        TaskKind.GENERATE_REPORT: generate_report,
        TaskKind.CLEANUP_EXPIRED_SESSIONS: cleanup_expired_sessions,
        TaskKind.SYNC_EXTERNAL_DATA: sync_external_data,
        TaskKind.UPDATE_ACTIVITY_STATS: update_activity_stats,
        TaskKind.SEND_BOOKING_REMINDER: send_booking_reminder,
        TaskKind.PROCESS_IMAGE_UPLOAD: process_image_upload,
    }


__all__ = ["build_processors"]
