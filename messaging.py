import logging
from typing import Callable, Optional, Protocol

import pika
from pika.adapters.blocking_connection import BlockingChannel
from pika.exceptions import AMQPError

from errors import TransientQueueError


logger = logging.getLogger(__name__)

PERSISTENT_DELIVERY = 2
TRANSIENT_DELIVERY = 1


class MessagePublisher(Protocol):
    def publish(self, body: bytes, *, persistent: bool = True) -> None:
        ...


class RabbitMQPublisher:
    """Publishes to one durable queue over a connection owned by this object.

    ``open()`` on start and ``close()`` on shutdown. A publish on a dropped
    connection reconnects once before giving up with ``TransientQueueError``.
    """

    def __init__(self, url: str, queue: str) -> None:
        self.url = url
        self.queue = queue
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[BlockingChannel] = None

    def open(self) -> None:
        if self._channel is not None and self._channel.is_open:
            return
        try:
            self._connection = pika.BlockingConnection(pika.URLParameters(self.url))
            self._channel = self._connection.channel()
            self._channel.queue_declare(queue=self.queue, durable=True)
            self._channel.confirm_delivery()
        except AMQPError as exc:
            self._connection = None
            self._channel = None
            raise TransientQueueError(
                f"Could not connect to RabbitMQ for queue {self.queue}"
            ) from exc
        logger.info(f"rabbitmq_connected: queue={self.queue}")

    def publish(self, body: bytes, *, persistent: bool = True) -> None:
        self.open()
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=PERSISTENT_DELIVERY if persistent else TRANSIENT_DELIVERY,
        )
        try:
            self._channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=body,
                properties=properties,
            )
        except AMQPError as exc:
            self.close()
            raise TransientQueueError(
                f"Could not publish message to queue {self.queue}"
            ) from exc
        logger.debug(f"rabbitmq_published: queue={self.queue} bytes={len(body)}")

    def close(self) -> None:
        try:
            if self._connection is not None and self._connection.is_open:
                self._connection.close()
        except AMQPError:
            logger.warning(f"rabbitmq_close_failed: queue={self.queue}", exc_info=True)
        finally:
            self._connection = None
            self._channel = None

    def __enter__(self) -> "RabbitMQPublisher":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class RabbitMQConsumer:
    """Blocking consumer with manual acks; failed messages are dropped, not requeued."""

    def __init__(self, url: str, queue: str) -> None:
        self.url = url
        self.queue = queue

    def run(self, handler: Callable[[bytes], object]) -> None:
        connection = pika.BlockingConnection(pika.URLParameters(self.url))
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue, durable=True)
            channel.basic_qos(prefetch_count=1)

            def on_message(ch, method, _properties, body: bytes) -> None:
                try:
                    handler(body)
                except Exception:
                    logger.exception(
                        f"rabbitmq_message_failed: queue={self.queue} "
                        f"delivery_tag={method.delivery_tag}"
                    )
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                    return
                ch.basic_ack(delivery_tag=method.delivery_tag)

            channel.basic_consume(queue=self.queue, on_message_callback=on_message)
            logger.info(f"rabbitmq_consuming: queue={self.queue}")
            channel.start_consuming()
        finally:
            if connection.is_open:
                connection.close()
