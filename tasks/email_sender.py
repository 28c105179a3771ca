# tasks/email_sender.py
"""
In-process outbound email queue
Keeps the public submission path off the SMTP critical path:
- Bounded buffer; a full buffer rejects immediately
- One consumer thread sending at a fixed tick rate
- Linear backoff retries that shutdown cancels
- Content-free drop records (recipient and subject only)
- Synchronous best-effort drain on shutdown
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional

from core.errors import FirewatchError, QueueFullError
from services.mailer import (
    INVITE_BODY, INVITE_SUBJECT, RESET_BODY, RESET_SUBJECT, Mailer, MailerConfig, Message
)

# Configure task logger
logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100
DEFAULT_RATE_SECONDS = 1.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 5.0


@dataclass
class QueuedMessage:
    """A message waiting for delivery and how many retries it has used"""
    message: Message
    retries: int = 0


class EmailQueue:
    """
    Rate-limited, retrying delivery in front of a Mailer.

    Exposes the Mailer's send and verification interface so callers do not
    care whether a queue is present.
    """

    def __init__(self, mailer: Mailer,
                 size: int = DEFAULT_QUEUE_SIZE,
                 rate: float = DEFAULT_RATE_SECONDS,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 backoff: float = DEFAULT_BACKOFF_SECONDS):
        self.mailer = mailer
        self.rate = rate
        self.max_retries = max_retries
        self.backoff = backoff
        self._queue: "queue.Queue[QueuedMessage]" = queue.Queue(maxsize=size)
        self._stop = threading.Event()
        self._consumer: Optional[threading.Thread] = None

    # Lifecycle

    def start(self) -> None:
        if self._consumer is not None:
            return
        self._consumer = threading.Thread(target=self._run, name='email-queue', daemon=True)
        self._consumer.start()
        logger.info(f"Email queue started (rate={self.rate}s, max_retries={self.max_retries})")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the consumer, cancel pending backoffs and drain what is left"""
        self._stop.set()
        if self._consumer is not None:
            self._consumer.join(timeout)
        self._drain()
        logger.info("Email queue stopped")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # Producer side

    def enqueue(self, message: Message, retries: int = 0) -> None:
        try:
            self._queue.put_nowait(QueuedMessage(message=message, retries=retries))
        except queue.Full:
            raise QueueFullError("mailer: queue full, message not queued") from None

    def send_report(self, body: str) -> None:
        """Encrypt now, deliver later"""
        self.enqueue(self.mailer.build_report(body))

    def send_invite(self, to: str, url: str) -> None:
        self.enqueue(self.mailer.build_plain(to, INVITE_SUBJECT, INVITE_BODY.format(url=url)))

    def send_password_reset(self, to: str, url: str) -> None:
        self.enqueue(self.mailer.build_plain(to, RESET_SUBJECT, RESET_BODY.format(url=url)))

    # Delegated verification and configuration

    def send_test(self) -> None:
        self.mailer.send_test()

    def ping(self) -> None:
        self.mailer.ping()

    def can_encrypt(self) -> None:
        self.mailer.can_encrypt()

    def reconfigure(self, config: MailerConfig) -> None:
        self.mailer.reconfigure(config)

    def snapshot(self) -> MailerConfig:
        return self.mailer.snapshot()

    # Consumer side

    def _run(self) -> None:
        while not self._stop.wait(self.rate):
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                continue
            self._attempt(item)

    def _attempt(self, item: QueuedMessage) -> None:
        try:
            self.mailer.deliver(item.message)
        except FirewatchError as e:
            self._handle_failure(item, str(e))
        except Exception as e:
            # Anything else must not end the single consumer thread
            logger.error(f"Unexpected error delivering to {item.message.to}: {e}", exc_info=True)
            self._handle_failure(item, str(e))

    def _handle_failure(self, item: QueuedMessage, reason: str) -> None:
        if item.retries < self.max_retries and not self._stop.is_set():
            item.retries += 1
            logger.warning(f"Delivery to {item.message.to} failed, retry {item.retries}/{self.max_retries}: {reason}")
            self._schedule_retry(item)
        else:
            self._drop(item, reason)

    def _schedule_retry(self, item: QueuedMessage) -> None:
        delay = item.retries * self.backoff

        def requeue():
            # wait() returns True when shutdown interrupts the backoff
            if self._stop.wait(delay):
                self._drop(item, 'shutdown during retry backoff')
                return
            try:
                self.enqueue(item.message, item.retries)
            except QueueFullError as e:
                self._drop(item, str(e))

        threading.Thread(target=requeue, name='email-queue-retry', daemon=True).start()

    def _drain(self) -> None:
        drained = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                self.mailer.deliver(item.message)
                drained += 1
            except FirewatchError as e:
                self._drop(item, str(e))
            except Exception as e:
                logger.error(f"Unexpected error draining message to {item.message.to}: {e}", exc_info=True)
                self._drop(item, str(e))
        if drained:
            logger.info(f"Drained {drained} queued message(s) on shutdown")

    @staticmethod
    def _drop(item: QueuedMessage, reason: str) -> None:
        logger.error(f"Dropping message to={item.message.to} subject={item.message.subject!r} "
                     f"after {item.retries} retr{'y' if item.retries == 1 else 'ies'}: {reason}")
