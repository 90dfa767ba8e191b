from __future__ import annotations
from abc import ABC, abstractmethod
import asyncio
import logging
import smtplib
import uuid
from collections import deque
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Deque, List, Optional

from .errors import NotificationError
from .helpers import now_ts
from .infra.timings import timeit
from .model.order import OrderRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingMail:
    kind: str  # admin | customer
    to: str
    subject: str
    body: str
    from_name: str = ""


@dataclass(frozen=True)
class DispatchOutcome:
    payment_id: str
    kind: str
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    at: float = 0.0


def order_summary_text(order: OrderRecord, heading: str = "NEW ORDER") -> str:
    lines = [
        heading,
        "",
        f"Payment: {order.payment_id}",
        f"Customer: {order.shipping.name}",
        f"Email: {order.shipping.email}",
        f"Phone: {order.shipping.phone}",
        f"Address: {order.shipping.address} - {order.shipping.pincode}",
        "Items:",
    ]
    for item in order.items:
        try:
            total = float(item.get("price", 0)) * int(item.get("qty", 0))
        except (TypeError, ValueError, OverflowError):
            total = 0.0
        lines.append(
            f"- {item.get('name', '?')} x{item.get('qty', '?')} "
            f"= ₹{total:.2f}"
        )
    if order.coupon is not None:
        lines.append(f"Coupon: {order.coupon.code}")
    if order.discount:
        lines.append(f"Discount: -₹{order.discount:.2f}")
    lines.append(f"Total: ₹{order.grand_total:.2f}")
    return "\n".join(lines)


# ----------------------------
# Senders
# ----------------------------
class NotificationSender(ABC):
    @abstractmethod
    async def send(self, mail: OutgoingMail) -> str:
        """Deliver one message and return its message id."""


class LogSender(NotificationSender):
    """Logs mail instead of sending it (no SMTP configured)."""

    async def send(self, mail: OutgoingMail) -> str:
        msg_id = f"<log-{uuid.uuid4().hex}@localbasket>"
        logger.info("mail (%s) to %s: %s", mail.kind, mail.to, mail.subject)
        return msg_id


class SmtpSender(NotificationSender):

    def __init__(self, host: str, port: int = 587, user: str = "",
                 password: str = "", timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    def _build(self, mail: OutgoingMail) -> EmailMessage:
        m = EmailMessage()
        sender = self.user or "noreply@localhost"
        m["From"] = f'"{mail.from_name}" <{sender}>' if mail.from_name \
            else sender
        m["To"] = mail.to
        m["Subject"] = mail.subject
        m["Message-ID"] = make_msgid(domain="localbasket")
        m.set_content(mail.body)
        return m

    def _send_sync(self, mail: OutgoingMail) -> str:
        m = self._build(mail)
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port,
                                    timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp:
            if self.port != 465:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(m)
        return m["Message-ID"]

    async def send(self, mail: OutgoingMail) -> str:
        try:
            return await asyncio.to_thread(self._send_sync, mail)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"smtp send failed: {e}") from e


# ----------------------------
# Dispatcher
# ----------------------------
class NotificationDispatcher:
    """Background mail worker.

    ``submit`` only enqueues; a single worker task drains the queue and
    records every send as a DispatchOutcome. Failures are logged and kept
    in ``outcomes``; nothing is retried.
    """

    def __init__(self, sender: NotificationSender,
                 admin_email: Optional[str] = None,
                 store_name: str = "The Local Basket",
                 max_outcomes: int = 500) -> None:
        self.sender = sender
        self.admin_email = admin_email
        self.store_name = store_name
        self.queue: asyncio.Queue = asyncio.Queue()
        self.outcomes: Deque[DispatchOutcome] = deque(maxlen=max_outcomes)
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="mail-worker")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("mail queue not drained on shutdown (%d left)",
                           self.queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def join(self) -> None:
        await self.queue.join()

    def submit(self, order: OrderRecord) -> None:
        if not self.running:
            logger.warning("mail worker not running; order %s queued",
                           order.payment_id)
        self.queue.put_nowait(order)

    def messages_for(self, order: OrderRecord) -> List[OutgoingMail]:
        total = f"₹{order.grand_total:,.2f}"
        mails = []
        if self.admin_email:
            mails.append(OutgoingMail(
                kind="admin",
                to=self.admin_email,
                subject=f"New Order Received - {total}",
                body=order_summary_text(order),
                from_name="New Order Notification",
            ))
        else:
            logger.warning("ADMIN_EMAIL not set; skipping admin mail for %s",
                           order.payment_id)
        if order.shipping.email:
            mails.append(OutgoingMail(
                kind="customer",
                to=order.shipping.email,
                subject=f"Your Order Confirmation - {total}",
                body=order_summary_text(
                    order,
                    heading=f"Thank you for shopping with "
                            f"{self.store_name}!",
                ),
                from_name=self.store_name,
            ))
        return mails

    def _record(self, outcome: DispatchOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.ok:
            logger.info("mail %s for %s sent: %s", outcome.kind,
                        outcome.payment_id, outcome.message_id)
        else:
            logger.error("mail %s for %s failed: %s", outcome.kind,
                         outcome.payment_id, outcome.error)

    async def _deliver(self, order: OrderRecord) -> None:
        for mail in self.messages_for(order):
            try:
                async with timeit(f"mail.{mail.kind}"):
                    msg_id = await self.sender.send(mail)
            except Exception as e:
                # isolation boundary: a mail outage never reaches the webhook
                err = e if isinstance(e, NotificationError) \
                    else NotificationError(str(e))
                self._record(DispatchOutcome(
                    order.payment_id, mail.kind, False,
                    error=str(err), at=now_ts(),
                ))
                continue
            self._record(DispatchOutcome(
                order.payment_id, mail.kind, True,
                message_id=msg_id, at=now_ts(),
            ))

    async def _run(self) -> None:
        while True:
            order = await self.queue.get()
            try:
                await self._deliver(order)
            except Exception as e:
                # one bad order must not stop the worker
                logger.exception("mail worker failed on order %s",
                                 order.payment_id)
                self._record(DispatchOutcome(
                    order.payment_id, "order", False,
                    error=str(e), at=now_ts(),
                ))
            finally:
                self.queue.task_done()

    async def send_now(self, order: OrderRecord) -> List[str]:
        """Send synchronously; raises NotificationError on first failure."""
        ids = []
        for mail in self.messages_for(order):
            try:
                ids.append(await self.sender.send(mail))
            except NotificationError:
                raise
            except Exception as e:
                raise NotificationError(str(e)) from e
        return ids
