import json
import logging

import pika

logger = logging.getLogger(__name__)

EXCHANGE = "ums_events"


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    """
    Publish a domain event after the state change it describes has committed.
    Delivery failures are logged; they never undo the committed change.
    """
    if not rabbitmq_url:
        logger.debug("RABBITMQ_URL not set, skipping %s", routing_key)
        return
    connection = None
    try:
        params = pika.URLParameters(rabbitmq_url)
        connection = pika.BlockingConnection(params)
        channel = connection.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(event)
        channel.basic_publish(exchange=EXCHANGE, routing_key=routing_key, body=body)
        logger.info("Published %s to %s", event.get("type"), routing_key)
    except pika.exceptions.AMQPError:
        logger.exception("Error publishing event %s", routing_key)
    finally:
        if connection is not None and connection.is_open:
            connection.close()


def make_publisher(rabbitmq_url: str, schedule=None):
    """
    Build the publish callable handed to the services. With ``schedule``
    (``BackgroundTasks.add_task``) delivery runs after the response is sent.
    """
    def publish(routing_key: str, event: dict):
        if schedule is None:
            publish_event(rabbitmq_url, routing_key, event)
        else:
            schedule(publish_event, rabbitmq_url, routing_key, event)
    return publish
