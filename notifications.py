"""
Customer notifications.

Sending is best effort: `dispatch` logs a failed send and never raises, so an
order or cancellation that is already saved stays saved.
"""
import asyncio
import logging
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Optional

import aiosmtplib
from fastapi import BackgroundTasks

logger = logging.getLogger(__name__)


def dispatch(send, email: Optional[str], data: dict) -> bool:
    if not email:
        logger.info("No email address for %s, skipping", getattr(send, "__name__", "notification"))
        return False
    try:
        send(email, data)
        return True
    except Exception:
        logger.exception("Sending %s to %s failed", getattr(send, "__name__", "notification"), email)
        return False


def _lines(items):
    return "\n".join(f"  - {i['name']} x {i['quantity']}  {i['price']}" for i in items)


class Notifier:
    def send_order_confirmation(self, email: str, data: dict) -> None:
        body = (
            f"Hi {data.get('customer_name', 'Customer')},\n\n"
            f"Thank you for your order {data['order_id']}.\n\n"
            f"{_lines(data.get('items', []))}\n\n"
            f"Total: {data['total_amount']}\n"
        )
        self._deliver(email, f"Order Confirmation - {data['order_id']}", body)

    def send_order_status_update(self, email: str, data: dict) -> None:
        body = (
            f"Hi {data.get('customer_name', 'Customer')},\n\n"
            f"Your order {data['order_id']} is now: {data['new_status']}.\n"
            f"Updated on {data.get('date', '')}\n"
        )
        self._deliver(email, f"Order {data['order_id']} - {data['new_status']}", body)

    def send_refund_status(self, email: str, data: dict) -> None:
        body = (
            f"Hi {data.get('customer_name', 'Customer')},\n\n"
            f"A refund of {data['amount']} for order {data['order_id']} is {data['status']}.\n"
            f"Refund reference: {data['refund_id']}\n"
        )
        self._deliver(email, f"Refund {data['status']} - {data['order_id']}", body)

    def _deliver(self, to: str, subject: str, body: str) -> None:
        raise NotImplementedError


class ConsoleNotifier(Notifier):
    """Logs messages instead of sending them (development)."""

    def _deliver(self, to: str, subject: str, body: str) -> None:
        logger.info("Mail to %s: %s\n%s", to, subject, body)


class SmtpNotifier(Notifier):
    """Sends over SMTP with aiosmtplib.

    Inside a request the send is queued on the request's BackgroundTasks and
    runs after the response went out; without one it runs to completion here.
    """

    def __init__(self, host: str, port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, sender: Optional[str] = None, timeout: float = 10.0,
                 tasks: Optional[BackgroundTasks] = None):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.timeout = timeout
        self.tasks = tasks

    def build_message(self, to: str, subject: str, body: str) -> MIMEText:
        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = formataddr(("Store", self.sender))
        message["To"] = to
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid()
        return message

    def _deliver(self, to: str, subject: str, body: str) -> None:
        message = self.build_message(to, subject, body)
        if self.tasks is not None:
            self.tasks.add_task(self.send, message)
        else:
            asyncio.run(self.send(message))

    async def send(self, message: MIMEText) -> bool:
        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=(self.password or "") if self.username else None,
                start_tls=True,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPException, OSError):
            logger.exception("SMTP send of '%s' to %s failed", message["Subject"], message["To"])
            return False
        logger.debug("Sent '%s' to %s", message["Subject"], message["To"])
        return True
