"""
Email Service using Resend

Out-of-band channel for the authentication flow:
- MFA verification codes
- Login notifications (best effort)
- Account invitations and password reset links
"""

import asyncio
import logging
from datetime import datetime
from html import escape

import resend

from app.core.config import settings

logger = logging.getLogger(__name__)

# Initialize Resend with API key
resend.api_key = settings.resend_api_key

EMAIL_FROM = settings.email_from
FRONTEND_URL = settings.frontend_url

_BASE_STYLE = """
    body { font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; color: #1f2937; }
    .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
    .header { color: #1d4ed8; margin-bottom: 24px; }
    .code { display: inline-block; font-family: monospace; font-size: 36px; font-weight: 700; letter-spacing: 8px; color: #1d4ed8; background-color: #f0f9ff; border: 2px dashed #3b82f6; border-radius: 12px; padding: 16px 24px; margin: 24px 0; }
    .button { display: inline-block; background-color: #1d4ed8; color: white; padding: 14px 28px; text-decoration: none; border-radius: 8px; margin: 24px 0; }
    .info-box { background-color: #f3f4f6; padding: 16px; border-radius: 8px; margin: 16px 0; }
    .footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px; }
"""


def _render(title: str, body: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="utf-8">
        <style>{_BASE_STYLE}</style>
    </head>
    <body>
        <div class="container">
            <h1 class="header">{title}</h1>
            {body}
            <div class="footer">
                <p>EduVate - School Management Platform</p>
            </div>
        </div>
    </body>
    </html>
    """


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
) -> bool:
    """
    Send an email using Resend.

    Args:
        to_email: Recipient email address
        subject: Email subject line
        html_content: HTML content of the email

    Returns:
        True if email was sent successfully
    """
    if not resend.api_key:
        logger.warning("RESEND_API_KEY not set - logging email instead of sending")
        logger.info(f"EMAIL TO: {to_email} | SUBJECT: {subject}")
        return True

    try:
        params: resend.Emails.SendParams = {
            "from": EMAIL_FROM,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }

        # Run sync Resend call in thread pool to avoid blocking event loop
        email = await asyncio.to_thread(resend.Emails.send, params)
        logger.info(f"Email sent successfully to {to_email}, id: {email['id']}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


async def send_mfa_code(
    to_email: str,
    first_name: str,
    code: str,
    expires_in_minutes: int,
) -> bool:
    """Send a one-time verification code for a pending login."""
    safe_first_name = escape(first_name)

    body = f"""
            <p>Hello {safe_first_name},</p>

            <p>Use the following code to finish signing in:</p>

            <div class="code">{escape(code)}</div>

            <p><strong>This code expires in {expires_in_minutes} minutes.</strong></p>

            <div class="info-box">
                <p>If you did not try to sign in, you can ignore this email. Your password is still required to access your account.</p>
            </div>
    """
    return await send_email(
        to_email=to_email,
        subject="Your EduVate verification code",
        html_content=_render("Sign-in Verification", body),
    )


async def send_login_notification(
    to_email: str,
    first_name: str,
    last_name: str,
    ip_address: str | None,
    logged_in_at: datetime,
) -> bool:
    """Tell a user that their account was just signed in to."""
    safe_name = escape(f"{first_name} {last_name}".strip())
    safe_ip = escape(ip_address or "Unknown")

    body = f"""
            <p>Hello {safe_name},</p>

            <p>A new sign-in to your EduVate account was detected.</p>

            <div class="info-box">
                <p><strong>Date:</strong> {logged_in_at.strftime("%Y-%m-%d %H:%M UTC")}</p>
                <p><strong>IP address:</strong> {safe_ip}</p>
            </div>

            <p>If this wasn't you, change your password immediately and contact your school administrator.</p>
    """
    return await send_email(
        to_email=to_email,
        subject="New sign-in to your EduVate account",
        html_content=_render("New Sign-in Detected", body),
    )


async def send_account_invitation(
    to_email: str,
    first_name: str,
    token: str,
    expires_in_hours: int,
) -> bool:
    """Invite a newly created user to choose their password."""
    safe_first_name = escape(first_name)

    invitation_url = f"{FRONTEND_URL}/setup-password?token={token}"
    body = f"""
            <p>Hello {safe_first_name},</p>

            <p>An EduVate account has been created for you. Choose your password to activate it:</p>

            <a href="{invitation_url}" class="button">Set My Password</a>

            <p>Or copy and paste this link into your browser:</p>
            <p style="word-break: break-all; color: #3b82f6;">{invitation_url}</p>

            <p><strong>This link expires in {expires_in_hours} hours.</strong></p>
    """
    return await send_email(
        to_email=to_email,
        subject="You're invited to EduVate",
        html_content=_render("Welcome to EduVate", body),
    )


async def send_password_reset(
    to_email: str,
    first_name: str,
    token: str,
    expires_in_hours: int,
    school_name: str | None = None,
) -> bool:
    """Send a self-service password reset link."""
    safe_first_name = escape(first_name)

    reset_url = f"{FRONTEND_URL}/setup-password?token={token}"
    school_line = f"<p><strong>School:</strong> {escape(school_name)}</p>" if school_name else ""
    body = f"""
            <p>Hello {safe_first_name},</p>

            <p>We received a request to reset the password of your EduVate account.</p>
            {school_line}

            <a href="{reset_url}" class="button">Reset My Password</a>

            <p>Or copy and paste this link into your browser:</p>
            <p style="word-break: break-all; color: #3b82f6;">{reset_url}</p>

            <p><strong>This link expires in {expires_in_hours} hours.</strong></p>

            <p>If you did not request this, you can ignore this email. Your password will not change.</p>
    """
    return await send_email(
        to_email=to_email,
        subject="Reset your EduVate password",
        html_content=_render("Password Reset", body),
    )
