from __future__ import annotations

import logging
import smtplib
import ssl
import traceback
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any

from strongteams.models import Artifact, EmailConfig, EventRecord, LeadInfo, serialize_datetime

logger = logging.getLogger(__name__)

PAY_LATER_AMOUNT = "$500.00"
PAY_LATER_TERM_DAYS = 30
SIGNATURE = "---\nStrong Teams Automation\n"


def _long_date(value: datetime) -> str:
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def success_body(lead: LeadInfo, artifact: Artifact) -> str:
    return (
        "Strong Teams Phase 1 automation completed successfully.\n\n"
        "LEADER INFORMATION:\n"
        f"- Name: {lead.full_name}\n"
        f"- Email: {lead.email}\n"
        f"- Company: {lead.company_name}\n\n"
        "PHASE 1 SESSION:\n"
        f"- Date: {lead.formatted_date}\n"
        f"- Time: {lead.formatted_time}\n"
        f"- Zoom Link: {lead.zoom_link}\n\n"
        "BUILD FILE:\n"
        f"- File Name: {artifact.name}\n"
        f"- File URL: {artifact.url}\n\n"
        "All data has been populated in Phase 1 Settings sheet.\n\n" + SIGNATURE
    )


def failure_body(event: EventRecord, lead: LeadInfo | None, error: BaseException) -> str:
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__)).strip()
    if lead is not None:
        extracted = (
            "EXTRACTED DATA:\n"
            f"- Leader: {lead.full_name or 'N/A'}\n"
            f"- Email: {lead.email or 'N/A'}\n"
            f"- Company: {lead.company_name or 'N/A'}\n"
        )
    else:
        extracted = "No data was extracted\n"
    return (
        "Strong Teams automation encountered an error.\n\n"
        "ERROR DETAILS:\n"
        f"{error}\n\n"
        "STACK TRACE:\n"
        f"{stack or 'No stack trace available'}\n\n"
        "EVENT INFORMATION:\n"
        f"- Title: {event.summary}\n"
        f"- Start: {serialize_datetime(event.start) or 'N/A'}\n"
        f"- Event ID: {event.event_id}\n\n"
        f"{extracted}\n"
        "Please check the logs and fix the issue.\n\n" + SIGNATURE
    )


def pay_later_body(session: dict[str, Any]) -> tuple[str, str]:
    details = session.get("customer_details") or {}
    customer_name = details.get("name") or "Unknown"
    customer_email = details.get("email") or session.get("customer_email") or "No email provided"
    booked = datetime.fromtimestamp(int(session.get("created") or 0), tz=timezone.utc)
    due = _long_date(booked + timedelta(days=PAY_LATER_TERM_DAYS))
    rule = "─" * 38
    subject = f"Corporate Booking - Invoice Required (NET 30) - {customer_name}"
    body = (
        "CORPORATE BOOKING ALERT\n\n"
        "A corporate client has completed booking with a pay-later arrangement.\n\n"
        f"CLIENT DETAILS:\n{rule}\n"
        f"Name: {customer_name}\n"
        f"Email: {customer_email}\n"
        f"Booking Date: {booked.strftime('%m/%d/%Y')}\n\n"
        f"PAYMENT DETAILS:\n{rule}\n"
        f"Amount: {PAY_LATER_AMOUNT}\n"
        "Terms: NET 30\n"
        f"Due Date: {due}\n\n"
        f"REQUIRED ACTION:\n{rule}\n"
        "1. Create an invoice in Stripe Dashboard\n"
        f"2. Set due date to: {due}\n"
        f"3. Send invoice to: {customer_email}\n\n"
        "CREATE INVOICE:\n"
        "https://dashboard.stripe.com/invoices/create\n\n"
        f"{rule}\n"
        f"Stripe Session ID: {session.get('id', '')}\n"
        f"{rule}\n\n"
        "This is an automated notification from your Stripe webhook.\n"
    )
    return subject, body


class EmailNotifier:
    """Admin notifications over SMTP. Sending never raises into the caller."""

    def __init__(self, config: EmailConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.smtp_host and self.config.sender and self.config.admin_email)

    def _send(self, subject: str, body: str) -> bool:
        if not self.is_configured():
            logger.warning("Email not configured, dropping notification: %s", subject)
            return False
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.sender
        message["To"] = self.config.admin_email
        message.set_content(body)
        try:
            if self.config.smtp_port == 465:
                server = smtplib.SMTP_SSL(
                    self.config.smtp_host, self.config.smtp_port, context=ssl.create_default_context(), timeout=30
                )
            else:
                server = smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30)
                if self.config.use_tls:
                    server.starttls(context=ssl.create_default_context())
            with server:
                if self.config.username:
                    server.login(self.config.username, self.config.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send notification %r: %s", subject, exc)
            return False
        logger.info("Notification sent to %s: %s", self.config.admin_email, subject)
        return True

    def notify_success(self, lead: LeadInfo, artifact: Artifact) -> bool:
        if not self.config.notify_on_success:
            return False
        return self._send(f"✓ Phase 1 Setup Complete - {lead.full_name}", success_body(lead, artifact))

    def notify_failure(self, event: EventRecord, lead: LeadInfo | None, error: BaseException) -> bool:
        if not self.config.notify_on_error:
            return False
        name = lead.full_name if lead is not None else "Unknown"
        return self._send(f"✗ Automation Error - {name}", failure_body(event, lead, error))

    def notify_pay_later(self, session: dict[str, Any]) -> bool:
        if not self.config.notify_on_pay_later:
            return False
        subject, body = pay_later_body(session)
        return self._send(subject, body)
