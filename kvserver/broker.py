"""
Subject broker.

Every published message is appended to a persisted stream and fanned out to
live subscribers on its subject. Live subscriptions are fire-and-forget and
only see messages published while they are open. Durable consumers read the
stream from the start, track acknowledgements by name and redeliver anything
left unacknowledged after ack_wait.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Set

from common.constants import (
    DEFAULT_ACK_WAIT_SECONDS,
    DEFAULT_MAX_MESSAGES_PER_SUBJECT,
    SUBSCRIPTION_QUEUE_SIZE,
)
from common.exceptions import TransportError
from common.protocol import DeliveredMessage
from kvserver.database import Database

logger = logging.getLogger(__name__)

ACK = "ack"
TERM = "term"


class LiveSubscription:
    """
    Fire-and-forget subscription.

    Messages are buffered in a bounded queue; when it is full new messages
    are dropped for this subscriber.
    """

    def __init__(self, broker: 'Broker', subject: str, queue_size: int = SUBSCRIPTION_QUEUE_SIZE):
        self.broker = broker
        self.subject = subject
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def push(self, message: DeliveredMessage) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    async def next_message(self) -> Optional[DeliveredMessage]:
        """Wait for the next message; None once closed."""
        if self.closed:
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broker._remove_live(self)

        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


class DurableSubscription:
    """The currently bound reader of a DurableConsumer."""

    def __init__(self, consumer: 'DurableConsumer'):
        self.consumer = consumer
        self.subject = consumer.subject
        self.durable_name = consumer.durable_name
        self.closed = False

    async def next_message(self) -> Optional[DeliveredMessage]:
        """Wait for the next message or redelivery; None once closed or replaced."""
        if self.closed:
            return None
        return await self.consumer.next_message(self)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.consumer.unbind(self)


class DurableConsumer:
    """
    Named, acknowledged reader of one subject's stream.

    Acknowledged and terminated positions are stored in consumer_acks, so they
    survive reconnects and broker restarts. Dispatched but unacknowledged
    positions are redelivered once their ack_wait deadline passes, or at once
    when a new subscription binds to the consumer.
    """

    def __init__(self, broker: 'Broker', durable_name: str, subject: str, ack_wait: float):
        self.broker = broker
        self.durable_name = durable_name
        self.subject = subject
        self.ack_wait = ack_wait

        self.pending: Dict[int, float] = {}
        self.delivery_counts: Dict[int, int] = {}
        self.last_dispatched = 0
        self.binding: Optional[DurableSubscription] = None
        self._wakeup = asyncio.Event()

    def bind(self) -> DurableSubscription:
        """
        Attach a new reader, replacing any previous one.

        Outstanding messages become due immediately for the new reader.
        """
        if self.binding is not None:
            previous = self.binding
            self.binding = None
            previous.close()

        now = time.monotonic()
        for seq in self.pending:
            self.pending[seq] = now

        self.binding = DurableSubscription(self)
        self.notify()
        return self.binding

    def unbind(self, subscription: DurableSubscription) -> None:
        if self.binding is subscription:
            self.binding = None
        self.notify()

    def notify(self) -> None:
        self._wakeup.set()

    def complete(self, seq: int) -> None:
        self.pending.pop(seq, None)
        self.delivery_counts.pop(seq, None)

    async def next_message(self, subscription: DurableSubscription) -> Optional[DeliveredMessage]:
        while self.binding is subscription and not self.broker.closed:
            message = self._next_ready()
            if message is not None:
                return message

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_deadline_delay())
            except asyncio.TimeoutError:
                pass

        return None

    def _next_ready(self) -> Optional[DeliveredMessage]:
        now = time.monotonic()

        for seq in sorted(s for s, deadline in self.pending.items() if deadline <= now):
            data = self.broker._load_message(seq)
            if data is None:
                # trimmed by retention while outstanding
                self.complete(seq)
                continue
            return self._dispatch(seq, data, now)

        row = self.broker._next_unacked(self.subject, self.durable_name, self.last_dispatched)
        if row is None:
            return None
        seq, data = row
        return self._dispatch(seq, data, now)

    def _dispatch(self, seq: int, data: bytes, now: float) -> DeliveredMessage:
        count = self.delivery_counts.get(seq, 0) + 1
        self.delivery_counts[seq] = count
        self.pending[seq] = now + self.ack_wait
        self.last_dispatched = max(self.last_dispatched, seq)

        if count > 1:
            logger.debug(f"Redelivering seq={seq} to {self.durable_name} (delivery {count})")

        return DeliveredMessage(subject=self.subject, data=data, seq=seq, delivery_count=count)

    def _next_deadline_delay(self) -> Optional[float]:
        if not self.pending:
            return None
        return max(0.0, min(self.pending.values()) - time.monotonic())


class Broker:
    """
    Subject broker backed by the transport database.

    Structure:
        _live[subject] = {LiveSubscription, ...}
        _consumers[durable_name] = DurableConsumer
    """

    def __init__(
        self,
        database: Database,
        ack_wait: float = DEFAULT_ACK_WAIT_SECONDS,
        max_messages_per_subject: int = DEFAULT_MAX_MESSAGES_PER_SUBJECT,
        queue_size: int = SUBSCRIPTION_QUEUE_SIZE
    ):
        """
        Initialize the broker.

        Args:
            database: Shared transport database
            ack_wait: Seconds before an unacknowledged durable delivery is redelivered
            max_messages_per_subject: Retention limit of the stream per subject
            queue_size: Buffer size of each live subscription
        """
        self.database = database
        self.ack_wait = ack_wait
        self.max_messages_per_subject = max_messages_per_subject
        self.queue_size = queue_size
        self.closed = False

        self._live: Dict[str, Set[LiveSubscription]] = {}
        self._consumers: Dict[str, DurableConsumer] = {}

    async def publish(self, subject: str, data: bytes) -> int:
        """
        Append a message to the stream and fan it out.

        Args:
            subject: Subject name
            data: Payload

        Returns:
            Stream sequence number of the message

        Raises:
            TransportError: If the broker is closed
        """
        if self.closed:
            raise TransportError("Broker is closed")

        seq = self._append(subject, data)

        dropped = 0
        for subscription in list(self._live.get(subject, ())):
            if not subscription.push(DeliveredMessage(subject=subject, data=data)):
                dropped += 1
        if dropped:
            logger.warning(f"Dropped message seq={seq} for {dropped} slow subscriber(s) on {subject}")

        for consumer in self._consumers.values():
            if consumer.subject == subject:
                consumer.notify()

        logger.debug(f"Published seq={seq} on {subject} ({len(data)} bytes)")
        return seq

    def subscribe(self, subject: str) -> LiveSubscription:
        """Open a fire-and-forget subscription on a subject."""
        if self.closed:
            raise TransportError("Broker is closed")

        subscription = LiveSubscription(self, subject, self.queue_size)
        self._live.setdefault(subject, set()).add(subscription)
        logger.info(f"Live subscription opened on {subject}")
        return subscription

    def subscribe_durable(self, subject: str, durable_name: str) -> DurableSubscription:
        """
        Bind to a durable consumer, creating it on first use.

        Raises:
            TransportError: If the broker is closed or the name is bound to another subject
        """
        if self.closed:
            raise TransportError("Broker is closed")

        consumer = self._consumers.get(durable_name)
        if consumer is None:
            consumer = DurableConsumer(self, durable_name, subject, self.ack_wait)
            self._consumers[durable_name] = consumer
            logger.info(f"Created durable consumer {durable_name} on {subject}")
        elif consumer.subject != subject:
            raise TransportError(
                f"Durable consumer {durable_name} is bound to {consumer.subject}, not {subject}"
            )

        subscription = consumer.bind()
        logger.info(f"Durable subscription bound [durable={durable_name}, subject={subject}]")
        return subscription

    async def ack(self, durable_name: str, seq: int) -> None:
        """Acknowledge a durable delivery; it is never delivered again."""
        self._complete(durable_name, seq, ACK)

    async def terminate(self, durable_name: str, seq: int) -> None:
        """Terminate a durable delivery without processing; it is never delivered again."""
        self._complete(durable_name, seq, TERM)
        logger.info(f"Terminated seq={seq} for {durable_name}")

    def close(self) -> None:
        """Close every subscription; later calls raise TransportError."""
        if self.closed:
            return
        self.closed = True

        for subscriptions in list(self._live.values()):
            for subscription in list(subscriptions):
                subscription.close()
        self._live.clear()

        for consumer in self._consumers.values():
            if consumer.binding is not None:
                consumer.binding.close()
            consumer.notify()

        logger.info("Broker closed")

    def _complete(self, durable_name: str, seq: int, action: str) -> None:
        consumer = self._consumers.get(durable_name)
        if consumer is None:
            logger.warning(f"Ignoring {action} for unknown durable consumer {durable_name} (seq={seq})")
            return

        with self.database.transaction() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO consumer_acks (durable_name, subject, seq, action)
                VALUES (?, ?, ?, ?)
                """,
                (durable_name, consumer.subject, seq, action)
            )

        consumer.complete(seq)

    def _remove_live(self, subscription: LiveSubscription) -> None:
        subscriptions = self._live.get(subscription.subject)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._live[subscription.subject]

    def _append(self, subject: str, data: bytes) -> int:
        with self.database.transaction() as cursor:
            cursor.execute(
                "INSERT INTO stream_messages (subject, data, published_at) VALUES (?, ?, ?)",
                (subject, data, int(time.time() * 1000))
            )
            seq = cursor.lastrowid

            cursor.execute(
                """
                SELECT seq FROM stream_messages WHERE subject = ?
                ORDER BY seq DESC LIMIT 1 OFFSET ?
                """,
                (subject, self.max_messages_per_subject)
            )
            cutoff = cursor.fetchone()
            if cutoff is not None:
                cursor.execute(
                    "DELETE FROM stream_messages WHERE subject = ? AND seq <= ?",
                    (subject, cutoff["seq"])
                )
                cursor.execute(
                    "DELETE FROM consumer_acks WHERE subject = ? AND seq <= ?",
                    (subject, cutoff["seq"])
                )

        return seq

    def _load_message(self, seq: int) -> Optional[bytes]:
        with self.database.transaction() as cursor:
            cursor.execute("SELECT data FROM stream_messages WHERE seq = ?", (seq,))
            row = cursor.fetchone()
        return bytes(row["data"]) if row is not None else None

    def _next_unacked(self, subject: str, durable_name: str, after: int):
        with self.database.transaction() as cursor:
            cursor.execute(
                """
                SELECT seq, data FROM stream_messages
                WHERE subject = ? AND seq > ? AND seq NOT IN (
                    SELECT seq FROM consumer_acks WHERE durable_name = ?
                )
                ORDER BY seq LIMIT 1
                """,
                (subject, after, durable_name)
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return row["seq"], bytes(row["data"])
