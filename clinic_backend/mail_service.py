"""
Email delivery.

`MailService` builds template parameter bags and hands the rendered message to
an `EmailSender`. Delivery is best effort: a failing sender is logged and
reported as False, never raised into the authentication flow.
"""
from __future__ import annotations

import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Callable, Protocol

from sqlalchemy import select, update

from clinic_backend.config import Settings, get_settings
from clinic_backend.db import db_session, utcnow
from clinic_backend.mail_models import OutboundEmail
from clinic_backend.mail_templates import (
    BackupCodeUsedTemplate,
    CommonEmailParams,
    ConfirmationTemplate,
    PasswordResetTemplate,
    RenderedEmail,
    StaffDeactivationTemplate,
    StaffInvitationTemplate,
    TwoFactorAuthTemplate,
    render,
)

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, recipient: str, email: RenderedEmail) -> None: ...


class OutboxEmailSender:
    """Stores the message in email_outbox; the CLI (or a worker) delivers it."""

    def send(self, recipient: str, email: RenderedEmail) -> None:
        with db_session() as s:
            s.add(
                OutboundEmail(
                    recipient=recipient,
                    template=email.template,
                    subject=email.subject,
                    body=email.body,
                )
            )


class SmtpEmailSender:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def send(self, recipient: str, email: RenderedEmail) -> None:
        msg = EmailMessage()
        msg["From"] = self.settings.default_email
        msg["To"] = recipient
        msg["Subject"] = email.subject
        msg.set_content(email.body)

        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
            if self.settings.smtp_user:
                smtp.starttls()
                smtp.login(self.settings.smtp_user, self.settings.smtp_password)
            smtp.send_message(msg)


def build_sender(settings: Settings) -> EmailSender:
    if settings.mail_backend == "smtp":
        return SmtpEmailSender(settings)
    if settings.mail_backend != "outbox":
        raise ValueError(f"Unknown MAIL_BACKEND: {settings.mail_backend}")
    return OutboxEmailSender()


class MailService:
    def __init__(
        self,
        sender: EmailSender | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.sender = sender or build_sender(self.settings)
        self.clock = clock

    def _common(self) -> dict[str, str | None]:
        return {
            "company_name": self.settings.company_name,
            "company_address": self.settings.company_address,
            "company_logo": self.settings.company_logo or None,
            "unsubscribe_link": self.settings.unsubscribe_link or None,
            "current_year": str(self.clock().year),
        }

    def _link(self, path: str, token: str) -> str:
        return f"{self.settings.app_base_url}{path}?token={token}"

    def deliver(self, recipient: str, params: CommonEmailParams) -> bool:
        email = render(params)
        try:
            self.sender.send(recipient, email)
        except Exception:
            logger.exception("Email delivery failed (template=%s)", email.template)
            return False
        logger.info("Email queued (template=%s)", email.template)
        return True

    def send_two_factor_code(self, recipient: str, user_name: str, code: str) -> bool:
        params = TwoFactorAuthTemplate(
            **self._common(),
            user_name=user_name,
            code=code,
            expiry_time=str(self.settings.email_code_ttl_minutes),
        )
        return self.deliver(recipient, params)

    def send_user_confirmation(self, recipient: str, user_name: str, token: str) -> bool:
        params = ConfirmationTemplate(
            **self._common(),
            user_name=user_name,
            confirmation_link=self._link("/confirm-email", token),
            expiry_time="24 hours",
        )
        return self.deliver(recipient, params)

    def send_password_reset(self, recipient: str, user_name: str, token: str) -> bool:
        params = PasswordResetTemplate(
            **self._common(),
            user_name=user_name,
            reset_link=self._link("/reset-password", token),
            expiry_time="1 hour",
        )
        return self.deliver(recipient, params)

    def send_backup_code_used(self, recipient: str, user_name: str, ip_address: str = "unknown") -> bool:
        params = BackupCodeUsedTemplate(
            **self._common(),
            user_name=user_name,
            current_time=self.clock().strftime("%Y-%m-%d %H:%M UTC"),
            ip_address=ip_address,
        )
        return self.deliver(recipient, params)

    def send_staff_invitation(
        self,
        recipient: str,
        user_name: str,
        clinic_name: str,
        role: str,
        invited_by: str,
        token: str,
    ) -> bool:
        params = StaffInvitationTemplate(
            **self._common(),
            user_name=user_name,
            clinic_name=clinic_name,
            role=role,
            invited_by=invited_by,
            invitation_date=self.clock().strftime("%d/%m/%Y"),
            activation_link=self._link("/accept-invitation", token),
            expiry_time="24 hours",
        )
        return self.deliver(recipient, params)

    def send_staff_deactivation(
        self,
        recipient: str,
        user_name: str,
        clinic_name: str,
        role: str,
        deactivated_by: str,
        contact_email: str | None = None,
        contact_phone: str | None = None,
    ) -> bool:
        params = StaffDeactivationTemplate(
            **self._common(),
            user_name=user_name,
            clinic_name=clinic_name,
            role=role,
            deactivation_date=self.clock().strftime("%d/%m/%Y"),
            deactivated_by=deactivated_by,
            contact_email=contact_email,
            contact_phone=contact_phone,
        )
        return self.deliver(recipient, params)


# =========================
# Outbox (simulated external delivery system)
# =========================
def pending_emails(limit: int = 50) -> list[OutboundEmail]:
    """Emails not yet delivered (sent_at is NULL), oldest first."""
    with db_session() as s:
        q = (
            select(OutboundEmail)
            .where(OutboundEmail.sent_at.is_(None))
            .order_by(OutboundEmail.created_at.asc(), OutboundEmail.id.asc())
            .limit(limit)
        )
        return list(s.scalars(q))


def mark_email_sent(email_id: int) -> bool:
    with db_session() as s:
        res = s.execute(
            update(OutboundEmail)
            .where(OutboundEmail.id == email_id, OutboundEmail.sent_at.is_(None))
            .values(sent_at=utcnow())
        )
        return res.rowcount == 1
