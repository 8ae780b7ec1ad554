"""
SMTP mail sender.
smtplib is blocking, so each send runs in a worker thread.
"""

import asyncio
import smtplib
import ssl
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import Sequence

import structlog

from regflow.core.collaborators import MailSender
from regflow.core.errors import DependencyError

logger = structlog.get_logger()


class SmtpMailSender(MailSender):
    """Sends plain text mail through an SMTP server."""

    async def send(
        self,
        address: str,
        identity: str,
        username: str,
        password: str,
        timeout: float,
        use_ssl: bool,
        insecure: bool,
        sender: str,
        recipients: Sequence[str],
        subject: str,
        body: str,
    ):
        if not recipients:
            logger.debug("mail_without_recipients_skipped", subject=subject)
            return

        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = sender
        message["To"] = ", ".join(recipients)
        message["Date"] = formatdate(localtime=True)

        try:
            await asyncio.to_thread(
                self._deliver,
                address,
                username,
                password,
                timeout,
                use_ssl,
                insecure,
                sender,
                list(recipients),
                message,
            )
        except (smtplib.SMTPException, OSError) as e:
            logger.error("mail_send_failed", host=address, to=list(recipients), error=str(e))
            raise DependencyError(f"failed to send mail to {', '.join(recipients)}: {e}", cause=e)

        logger.info("mail_sent", host=address, identity=identity, to=list(recipients), subject=subject)

    @staticmethod
    def _deliver(address, username, password, timeout, use_ssl, insecure, sender, recipients, message):
        host, _, port = address.rpartition(":")
        context = ssl.create_default_context()
        if insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if use_ssl:
            client = smtplib.SMTP_SSL(host, int(port), timeout=timeout, context=context)
        else:
            client = smtplib.SMTP(host, int(port), timeout=timeout)

        with client:
            if not use_ssl:
                client.ehlo()
                if client.has_extn("starttls"):
                    client.starttls(context=context)
                    client.ehlo()
            if username:
                client.login(username, password)
            client.sendmail(sender, recipients, message.as_string())
