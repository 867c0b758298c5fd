"""
Demo entry point: runs a broker with a few producers, consumers and subscribers
and prints statistics until interrupted or the duration elapses.
"""
import argparse
import json
import logging
import random
import signal
import sys
import time

from .broker import MessageBroker
from .config import initialize_config
from .consumer import QueueConsumer


logger = logging.getLogger("msgbroker")


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def flaky_handler(failure_rate: float):
    def handle(envelope):
        if random.random() < failure_rate:
            raise RuntimeError(f"simulated failure for {envelope.id}")
    return handle


def main(argv=None):
    parser = argparse.ArgumentParser(description='In-process message broker demo')
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--duration', type=float, default=5.0, help='Seconds to run')
    parser.add_argument('--rate', type=float, default=20.0, help='Messages per second to enqueue and publish')
    parser.add_argument('--consumers', type=int, default=2, help='Number of work queue consumers')
    parser.add_argument('--failure-rate', type=float, default=0.2, help='Chance a handler fails')
    args = parser.parse_args(argv)

    config = initialize_config(args.config)

    logging.basicConfig(level=logging.INFO, format=config.get('logging.format'))
    log_level = getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    broker = MessageBroker(config)
    consumers = [
        QueueConsumer(broker, flaky_handler(args.failure_rate), name=f"consumer-{i}")
        for i in range(args.consumers)
    ]

    def subscriber(body):
        return random.random() >= args.failure_rate

    broker.subscribe('events', subscriber, owner='demo')
    broker.subscribe('events', lambda body: None, filter_predicate=lambda body: body.get('priority', 0) > 0,
                     owner='demo')

    try:
        broker.start()
        for consumer in consumers:
            consumer.start()

        deadline = time.monotonic() + args.duration
        sequence = 0
        while time.monotonic() < deadline:
            priority = random.choice([0, 0, 0, 5])
            body = {'sequence': sequence, 'priority': priority}
            broker.enqueue(body, priority=priority)
            broker.publish('events', body)
            sequence += 1
            time.sleep(1.0 / args.rate)

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    finally:
        for consumer in consumers:
            consumer.stop()
        broker.wait_for_deliveries(timeout=10)
        broker.stop()
        print(json.dumps(broker.get_stats(), indent=2))


if __name__ == '__main__':
    main()
