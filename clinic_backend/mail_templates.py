"""
Parameter bags for outbound notification emails.

Pure value objects: built, rendered to plain text and sent. The bodies are
intentionally minimal ($placeholder substitution, no markup).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from string import Template


@dataclass(frozen=True, kw_only=True)
class CommonEmailParams:
    company_name: str
    current_year: str
    company_address: str = ""
    company_logo: str | None = None
    unsubscribe_link: str | None = None

    def as_params(self) -> dict[str, str]:
        return {k: "" if v is None else str(v) for k, v in asdict(self).items()}


@dataclass(frozen=True, kw_only=True)
class TwoFactorAuthTemplate(CommonEmailParams):
    user_name: str
    code: str
    expiry_time: str  # minutes


@dataclass(frozen=True, kw_only=True)
class ConfirmationTemplate(CommonEmailParams):
    user_name: str
    confirmation_link: str
    expiry_time: str


@dataclass(frozen=True, kw_only=True)
class PasswordResetTemplate(CommonEmailParams):
    user_name: str
    reset_link: str
    expiry_time: str


@dataclass(frozen=True, kw_only=True)
class BackupCodeUsedTemplate(CommonEmailParams):
    user_name: str
    current_time: str
    ip_address: str


@dataclass(frozen=True, kw_only=True)
class StaffInvitationTemplate(CommonEmailParams):
    user_name: str
    clinic_name: str
    role: str
    invited_by: str
    invitation_date: str
    activation_link: str
    expiry_time: str


@dataclass(frozen=True, kw_only=True)
class StaffDeactivationTemplate(CommonEmailParams):
    user_name: str
    clinic_name: str
    role: str
    deactivation_date: str
    deactivated_by: str
    contact_email: str | None = None
    contact_phone: str | None = None


_FOOTER = "\n\n--\n$company_name\n$company_address\n(c) $current_year"

_BODIES: dict[type, tuple[str, str, str]] = {
    # template class: (name, subject, body)
    TwoFactorAuthTemplate: (
        "2fa-code",
        "Your $company_name verification code",
        "Hello $user_name,\n\nyour verification code is: $code\n"
        "It expires in $expiry_time minutes. If you did not try to sign in, change your password.",
    ),
    ConfirmationTemplate: (
        "confirmation",
        "Welcome to $company_name! Confirm your email",
        "Hello $user_name,\n\nconfirm your email address by opening this link:\n$confirmation_link\n"
        "The link expires in $expiry_time.",
    ),
    PasswordResetTemplate: (
        "password-reset",
        "Reset your $company_name password",
        "Hello $user_name,\n\nreset your password here:\n$reset_link\n"
        "The link expires in $expiry_time. If you did not ask for it, ignore this email.",
    ),
    BackupCodeUsedTemplate: (
        "backup-code-used",
        "Security alert: backup code used - $company_name",
        "Hello $user_name,\n\na backup code was used to sign in to your account on $current_time "
        "(IP address: $ip_address).\nIf this was not you, reset your password and regenerate your backup codes.",
    ),
    StaffInvitationTemplate: (
        "staff-invitation",
        "You're invited to join $clinic_name on $company_name",
        "Hello $user_name,\n\n$invited_by invited you to join $clinic_name as $role on $invitation_date.\n"
        "Activate your account here:\n$activation_link\nThe invitation expires in $expiry_time.",
    ),
    StaffDeactivationTemplate: (
        "staff-deactivation",
        "Account deactivation notice - $clinic_name",
        "Hello $user_name,\n\nyour $role account at $clinic_name was deactivated on $deactivation_date "
        "by $deactivated_by.\nQuestions: $contact_email $contact_phone",
    ),
}


@dataclass(frozen=True)
class RenderedEmail:
    template: str
    subject: str
    body: str


def render(params: CommonEmailParams) -> RenderedEmail:
    try:
        name, subject, body = _BODIES[type(params)]
    except KeyError:
        raise ValueError(f"No email template for {type(params).__name__}") from None
    values = params.as_params()
    return RenderedEmail(
        template=name,
        subject=Template(subject).safe_substitute(values),
        body=Template(body + _FOOTER).safe_substitute(values),
    )
