import logging
import re
import smtplib
from email.message import EmailMessage
from socket import gaierror, timeout

from jinja2.sandbox import SandboxedEnvironment

from config_models import EmailConfig

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Exception raised for email sending errors."""

    pass


_TEMPLATES = {
    "verify_email": (
        "Verify your email address",
        """<h1>Welcome, {{ first_name }}!</h1>
<p>Please verify your email address by clicking the link below:</p>
<p><a href="{{ link }}">Verify Email</a></p>
<p>This link expires in 24 hours.</p>""",
    ),
    "password_reset": (
        "Password reset request",
        """<h1>Password reset</h1>
<p>Hi {{ first_name }}, we received a request to reset your password.</p>
<p><a href="{{ link }}">Reset Password</a></p>
<p>This link expires in 1 hour. If you did not request a reset you can ignore this email.</p>""",
    ),
}

_env = SandboxedEnvironment(autoescape=True)


def render_email(template: str, **context) -> tuple[str, str]:
    """Return ``(subject, html)`` for one of the built-in templates."""
    subject, source = _TEMPLATES[template]
    return subject, _env.from_string(source).render(**context)


def send_email(config: EmailConfig, subject: str, recipient: str, html: str) -> bool:
    """Send an HTML email with a plain-text alternative.

    Args:
        config: Email configuration.
        subject: Email subject.
        recipient: Email recipient address.
        html: Rendered HTML body.

    Returns:
        True if the email was handed to the SMTP server, False when email
        delivery is disabled.

    Raises:
        MailerError: If email sending fails.
    """
    if not config.enabled:
        logger.info("Email disabled, not sending %r to %s", subject, recipient)
        return False

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.sender
    message["To"] = recipient
    message.set_content(re.sub(r"<[^>]*>", "", html))
    message.add_alternative(html, subtype="html")

    try:
        logger.info("Sending email to %s with subject: %s", recipient, subject)
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(message)
        logger.info("Email sent successfully to %s", recipient)
        return True

    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        raise MailerError(f"Email authentication failed: {e}")

    except smtplib.SMTPRecipientsRefused as e:
        logger.error("Recipients refused: %s", e)
        raise MailerError(f"Email recipients refused: {e}")

    except smtplib.SMTPException as e:
        logger.error("SMTP error: %s", e)
        raise MailerError(f"Failed to send email: {e}")

    except (gaierror, timeout) as e:
        logger.error("Network error while sending email: %s", e)
        raise MailerError(f"Network error: could not connect to mail server: {e}")

    except OSError as e:
        logger.error("OS error while sending email: %s", e)
        raise MailerError(f"Failed to send email: {e}")


def send_template(config: EmailConfig, template: str, recipient: str, **context) -> bool:
    subject, html = render_email(template, **context)
    return send_email(config, subject, recipient, html)
