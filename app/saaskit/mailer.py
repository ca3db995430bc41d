from __future__ import annotations

import logging
import smtplib
from collections.abc import Mapping
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

logger = logging.getLogger(__name__)


def send_email(config: Mapping[str, Any], to: str, subject: str, body: str, *, html: str | None = None) -> tuple[bool, str]:
    """
    Send an email using the SMTP settings in `config`.

    Without SMTP_SERVER the message is only logged (local development).

    Returns:
        Tuple of (success, detail)
    """
    smtp_server = (config.get("SMTP_SERVER") or "").strip()
    email_from = (config.get("EMAIL_FROM") or "").strip()

    if not smtp_server:
        logger.info("[email:dev] to=%s subject=%s\n%s", to, subject, body)
        return True, "logged"

    if not email_from:
        logger.error("EMAIL_FROM not configured; cannot send to %s", to)
        return False, "Email from address not configured"

    if html:
        msg: MIMEMultipart | MIMEText = MIMEMultipart("alternative")
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(html, "html"))
    else:
        msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = email_from
    msg["To"] = to

    smtp_port = config.get("SMTP_PORT")
    username = (config.get("SMTP_USERNAME") or "").strip()
    password = (config.get("SMTP_PASSWORD") or "").strip()
    try:
        with smtplib.SMTP(smtp_server, int(smtp_port) if smtp_port else 0, timeout=30) as server:
            if config.get("SMTP_USE_TLS", True):
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed sending to %s: %s", to, e)
        return False, f"SMTP authentication failed: {e}"
    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP error sending to %s: %s", to, e)
        return False, f"SMTP error: {e}"

    logger.info("Sent email to %s (subject=%s)", to, subject)
    return True, "sent"


_WELCOME_FOLLOW_UP = {
    "en": (
        "How is it going, {name}?",
        "Hi {name},\n\nYou joined us yesterday. Your workspace is ready at {app_url}/dashboard.\n"
        "Create your first project or invite your team when you are ready.\n\nThe team",
    ),
    "fr": (
        "Comment ça se passe, {name} ?",
        "Bonjour {name},\n\nVous nous avez rejoints hier. Votre espace est prêt : {app_url}/dashboard.\n"
        "Créez votre premier projet ou invitez votre équipe.\n\nL'équipe",
    ),
    "es": (
        "¿Qué tal, {name}?",
        "Hola {name},\n\nTe uniste ayer. Tu espacio está listo en {app_url}/dashboard.\n"
        "Crea tu primer proyecto o invita a tu equipo.\n\nEl equipo",
    ),
}


def welcome_follow_up_message(name: str, app_url: str, language: str = "fr") -> tuple[str, str]:
    subject_tpl, body_tpl = _WELCOME_FOLLOW_UP.get(language, _WELCOME_FOLLOW_UP["fr"])
    return subject_tpl.format(name=name), body_tpl.format(name=name, app_url=app_url)
