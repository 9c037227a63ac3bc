"""In-process replication channel over a Broker."""

from typing import Optional, Union

from common.protocol import DeliveredMessage
from common.types import Delivery, ReplicationChannel, Subscription
from kvserver.broker import Broker, DurableSubscription, LiveSubscription


class LocalDelivery(Delivery):
    """Delivery whose ack/reject go straight to the broker; no-ops for live subscriptions."""

    def __init__(self, broker: Broker, message: DeliveredMessage, durable_name: Optional[str]):
        self.broker = broker
        self.message = message
        self.data = message.data
        self.durable_name = durable_name

    async def ack(self) -> None:
        if self.durable_name is not None and self.message.seq is not None:
            await self.broker.ack(self.durable_name, self.message.seq)

    async def reject(self) -> None:
        if self.durable_name is not None and self.message.seq is not None:
            await self.broker.terminate(self.durable_name, self.message.seq)


class LocalSubscription(Subscription):

    def __init__(
        self,
        broker: Broker,
        subscription: Union[LiveSubscription, DurableSubscription],
        durable_name: Optional[str]
    ):
        self.broker = broker
        self.subscription = subscription
        self.durable_name = durable_name

    async def next_delivery(self) -> Optional[Delivery]:
        message = await self.subscription.next_message()
        if message is None:
            return None
        return LocalDelivery(self.broker, message, self.durable_name)

    async def close(self) -> None:
        self.subscription.close()


class LocalChannel(ReplicationChannel):
    """
    ReplicationChannel bound directly to a Broker in the same process.

    Several sites sharing one broker behave like sites connected to one
    transport cluster.
    """

    def __init__(self, broker: Broker):
        self.broker = broker

    async def publish(self, subject: str, data: bytes) -> None:
        await self.broker.publish(subject, data)

    async def subscribe(self, subject: str, durable_name: Optional[str] = None) -> Subscription:
        if durable_name:
            subscription = self.broker.subscribe_durable(subject, durable_name)
        else:
            subscription = self.broker.subscribe(subject)
        return LocalSubscription(self.broker, subscription, durable_name or None)
