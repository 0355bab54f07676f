"""
WhatsApp Session Worker

Consumes accepted webhook events from Redis Streams and applies them.

This worker uses ONLY:
- basecore (DB, settings, logging, redis)
- whatsapp_sessions (dispatcher, contracts, streams)

Features:
- XREADGROUP consumer for horizontal scaling
- PEL reclaim for events left by dead workers
- Bounded retries with backoff, then dead letter stream
- Graceful shutdown
"""

import logging
import os
import signal
import socket
import threading
import time

from basecore.db import get_sessionmaker
from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import get_settings
from whatsapp_sessions.service.dispatcher import IngestionProcessor
from whatsapp_sessions.streams.consumer import WhatsAppStreamConsumer
from whatsapp_sessions.streams.groups import ensure_whatsapp_streams
from whatsapp_sessions.streams.producer import WhatsAppStreamProducer

logger = logging.getLogger(__name__)

# Configuration
CONSUMER_NAME = os.getenv(
    "WHATSAPP_CONSUMER_NAME",
    f"whatsapp-worker-{socket.gethostname()}-{os.getpid()}",
)
BATCH_SIZE = int(os.getenv("WHATSAPP_BATCH_SIZE", "10"))
BLOCK_MS = int(os.getenv("WHATSAPP_BLOCK_MS", "5000"))
RECLAIM_INTERVAL_SEC = int(os.getenv("WHATSAPP_RECLAIM_INTERVAL", "60"))
RECLAIM_IDLE_MS = int(os.getenv("WHATSAPP_RECLAIM_IDLE_MS", "60000"))

# Graceful shutdown
shutdown_event = threading.Event()


def signal_handler(signum, frame):
    logger.info(f"Received signal {signum}, requesting shutdown...")
    shutdown_event.set()


def handle_messages(messages, consumer: WhatsAppStreamConsumer, processor: IngestionProcessor) -> int:
    """
    Apply stream entries and acknowledge them.

    Entries are acknowledged once applied or dead-lettered; an entry whose
    processing raised stays pending for reclaim.
    """
    processed = 0
    for msg_id, envelope in messages:
        try:
            result = processor.process(envelope)
        except Exception as e:
            logger.error(f"Failed to process event {msg_id}: {e}", exc_info=True)
            # Don't ACK - will be reclaimed
            continue

        consumer.ack(msg_id)
        processed += 1
        logger.debug(
            f"Processed {envelope.event_type} event",
            extra={"msg_id": msg_id, "result_status": result.get("status")},
        )
    return processed


def process_inbound_batch(
    consumer: WhatsAppStreamConsumer,
    processor: IngestionProcessor,
    count: int = BATCH_SIZE,
    block_ms: int | None = BLOCK_MS,
) -> int:
    """Read and apply one batch from the inbound stream."""
    messages = consumer.read_messages(count=count, block_ms=block_ms)
    if not messages:
        return 0
    return handle_messages(messages, consumer, processor)


def reclaim_and_process(
    consumer: WhatsAppStreamConsumer,
    processor: IngestionProcessor,
    min_idle_ms: int = RECLAIM_IDLE_MS,
) -> int:
    """Take over events other consumers left pending and apply them."""
    reclaimed = consumer.reclaim_pending(min_idle_ms=min_idle_ms, count=100)
    if not reclaimed:
        return 0
    logger.info(f"Reclaimed {len(reclaimed)} inbound events")
    return handle_messages(reclaimed, consumer, processor)


def run_reclaim_loop(redis_client, processor: IngestionProcessor):
    """Background thread for reclaiming pending messages."""
    logger.info(
        f"Starting PEL reclaim loop "
        f"(interval={RECLAIM_INTERVAL_SEC}s, idle_threshold={RECLAIM_IDLE_MS}ms)"
    )

    consumer = WhatsAppStreamConsumer(redis_client, CONSUMER_NAME)

    while not shutdown_event.wait(RECLAIM_INTERVAL_SEC):
        try:
            reclaim_and_process(consumer, processor)
        except Exception as e:
            logger.error(f"Error in reclaim loop: {e}", exc_info=True)


def main_loop():
    """Main worker loop."""
    settings = get_settings()
    redis_client = get_redis_client()

    # Ensure streams exist
    ensure_whatsapp_streams(redis_client)

    consumer = WhatsAppStreamConsumer(redis_client, CONSUMER_NAME)
    processor = IngestionProcessor.from_settings(
        get_sessionmaker(),
        WhatsAppStreamProducer(redis_client),
        settings,
    )

    logger.info(
        f"Starting WhatsApp session worker "
        f"(consumer={CONSUMER_NAME}, batch={BATCH_SIZE}, max_attempts={processor.max_attempts})"
    )

    # Start reclaim background thread
    reclaim_thread = threading.Thread(
        target=run_reclaim_loop,
        args=(redis_client, processor),
        daemon=True,
    )
    reclaim_thread.start()

    while not shutdown_event.is_set():
        try:
            count = process_inbound_batch(consumer, processor)
            if count > 0:
                logger.info(f"Processed {count} inbound events")
        except KeyboardInterrupt:
            break
        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            time.sleep(1)

    logger.info("WhatsApp session worker shutting down gracefully")


def main():
    """Entry point."""
    setup_logging(service_name="whatsapp-worker")
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    logger.info("WhatsApp session worker starting...")
    main_loop()


if __name__ == "__main__":
    main()
