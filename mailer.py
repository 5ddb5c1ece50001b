import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid

from config import Config

logger = logging.getLogger(__name__)


class MailerError(Exception):
    pass


def _masked(user):
    if not user or "@" not in user:
        return user
    name, domain = user.split("@", 1)
    return f"{name[:2]}***@{domain}"


def send_mail(to, subject, text=None, html=None, from_addr=None):
    """
    Send one email through the configured SMTP server.

    Port 465 uses implicit TLS, any other port upgrades with STARTTLS when
    the server offers it. Returns the Message-ID of the sent email.
    """
    if not Config.SMTP_HOST:
        raise MailerError("SMTP is not configured (SMTP_HOST missing)")
    if not text and not html:
        raise MailerError("Either text or html content is required")

    em = EmailMessage()
    em["From"] = from_addr or Config.MAIL_FROM
    em["To"] = to
    em["Subject"] = subject
    em["Message-ID"] = make_msgid()
    if text:
        em.set_content(text)
        if html:
            em.add_alternative(html, subtype="html")
    else:
        em.set_content(html, subtype="html")

    context = ssl.create_default_context()
    logger.debug("Sending mail via %s:%s as %s to=%s",
                 Config.SMTP_HOST, Config.SMTP_PORT, _masked(Config.SMTP_USER), to)

    if Config.SMTP_PORT == 465:
        with smtplib.SMTP_SSL(Config.SMTP_HOST, Config.SMTP_PORT, context=context) as smtp:
            if Config.SMTP_USER and Config.SMTP_PASS:
                smtp.login(Config.SMTP_USER, Config.SMTP_PASS)
            smtp.send_message(em)
    else:
        with smtplib.SMTP(Config.SMTP_HOST, Config.SMTP_PORT) as smtp:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls(context=context)
                smtp.ehlo()
            if Config.SMTP_USER and Config.SMTP_PASS:
                smtp.login(Config.SMTP_USER, Config.SMTP_PASS)
            smtp.send_message(em)

    logger.info("Mail sent to %s (subject=%r)", to, subject)
    return em["Message-ID"]


def invite_email(event_title, team_name, accept_url):
    team_part = f" <b>{team_name}</b>" if team_name else ""
    html = f"""
    <p>You have been invited to join a team{team_part} for the event <b>{event_title}</b>.</p>
    <p>Click the button below to accept and complete your registration:</p>
    <p><a href="{accept_url}" style="background:#0ea5e9;color:#fff;padding:10px 16px;border-radius:6px;text-decoration:none">Accept Invite</a></p>
    <p>If the button does not work, copy and paste this link into your browser:<br>{accept_url}</p>
    """
    text = f"Accept invite: {accept_url}"
    return text, html


def reset_link_email(reset_url, ttl_minutes):
    html = f"""
    <html>
    <body style="font-family: Arial, sans-serif; text-align: center;">
        <h2>Reset your HackHost password</h2>
        <p><a href="{reset_url}" style="background:#0ea5e9;color:#fff;padding:10px 16px;border-radius:6px;text-decoration:none">Choose a new password</a></p>
        <p style="color: gray; font-size: 12px;">The link expires in {ttl_minutes} minutes. If you did not ask for it, ignore this email.</p>
    </body>
    </html>
    """
    text = f"Reset your HackHost password: {reset_url} (expires in {ttl_minutes} minutes)"
    return text, html
