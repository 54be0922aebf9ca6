"""
Main entry point for the AIoT MQTT demo device.

This module is responsible for:
- Parsing the command line and loading the configuration.
- Configuring logging, with the device secret redacted.
- Starting the MQTTManager and sending the greeting message.
- Publishing console lines and printing received messages.
- Managing the overall application lifecycle (start, stop).
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Iterable, Optional

from aiot_mqtt.config_loader import apply_env_overrides, identity_from_config, load_config
from aiot_mqtt.errors import AiotError
from aiot_mqtt.models import greeting_payload
from aiot_mqtt.mqtt import MQTTManager

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
REDACTED = "******"


class SecretRedactingFilter(logging.Filter):
    """Replaces any of the given secrets in a log record's rendered message."""

    def __init__(self, secrets: Iterable[str]):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging():
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )


def install_secret_redaction(secrets: Iterable[str]):
    """Masks the given secrets in everything the root handlers emit."""
    redactor = SecretRedactingFilter(secrets)
    for handler in logging.getLogger().handlers:
        handler.addFilter(redactor)


logger = logging.getLogger(__name__)


def display_message(topic: str, text: str):
    print(f"[{topic}] {text}", flush=True)


def attach_console(loop: asyncio.AbstractEventLoop, mqtt_manager: MQTTManager, stream=None) -> bool:
    """
    Publishes every line typed on the console. Returns False when the
    stream cannot be watched (e.g. not a selectable file).
    """
    stream = stream or sys.stdin

    def on_readable():
        line = stream.readline()
        if not line:
            loop.remove_reader(stream)
            logger.info("Console closed, no more messages will be read.")
            return
        text = line.rstrip("\n")
        if text:
            mqtt_manager.publish_message(text)

    try:
        loop.add_reader(stream, on_readable)
    except (NotImplementedError, ValueError, OSError) as e:
        logger.warning(f"Console input unavailable: {e}")
        return False
    return True


def detach_console(loop: asyncio.AbstractEventLoop, stream=None):
    stream = stream or sys.stdin
    try:
        loop.remove_reader(stream)
    except (NotImplementedError, ValueError, OSError):
        pass


async def shutdown(signal_name: str, loop: asyncio.AbstractEventLoop, mqtt_manager: MQTTManager):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")
    detach_console(loop)

    # Give queued messages a moment to go out before we tear down the connection
    await asyncio.sleep(0.1)

    await mqtt_manager.stop()

    # Cancelling the runner lets asyncio.run() return normally
    tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def main_application_runner(config_path: Optional[str] = None):
    setup_logging()
    config = apply_env_overrides(load_config(config_path or DEFAULT_CONFIG_PATH))
    install_secret_redaction([identity_from_config(config).device_secret])
    logger.info("Starting AIoT MQTT demo device...")

    loop = asyncio.get_running_loop()

    outbound_queue = asyncio.Queue()
    mqtt_manager = MQTTManager(config=config, outbound_queue=outbound_queue, on_message=display_message)

    # Sent as soon as the first connection is up
    mqtt_manager.publish_message(greeting_payload())
    await mqtt_manager.start()

    attach_console(loop, mqtt_manager)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, loop, mqtt_manager))
        )

    logger.info("Device is running. Type a line to publish it, Ctrl+C to exit.")

    # Only returns on a fatal error such as an unusable identity
    try:
        await mqtt_manager.wait_closed()
    except asyncio.CancelledError:
        pass


def run(argv=None):
    parser = argparse.ArgumentParser(description="AIoT MQTT demo device")
    parser.add_argument("--config", default=None, help="path to config.yaml")
    args = parser.parse_args(argv)
    try:
        asyncio.run(main_application_runner(args.config))
    except KeyboardInterrupt:
        pass
    except AiotError as e:
        logger.error(f"Fatal: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
