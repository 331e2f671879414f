"""
Main entry point for the long-running publish/subscribe probe.

This module is responsible for:
- Parsing the command line (exactly one argument: the authentication key).
- Setting up logging and loading configuration (config.yaml next to this file).
- Wiring the MQTT Session connector, retry policies and correlation strategy
  into a ProbeLoop.
- Installing signal handlers so Ctrl+C / SIGTERM stop the probe promptly.
- Mapping the loop's outcome to the process exit status.
"""

import asyncio
import functools
import logging
import random
import signal
import time

from pathlib import Path
from typing import Annotated, Any, Dict, Optional

import typer
import yaml

from pubsub_probe import __version__
from pubsub_probe.client.session import MQTTSession
from pubsub_probe.errors import ConfigError
from pubsub_probe.probe.config_loader import load_config
from pubsub_probe.probe.correlation import strategy_by_name
from pubsub_probe.probe.loop import ProbeLoop
from pubsub_probe.probe.models import ExitStatus, ProbeOutcome, choose_identity
from pubsub_probe.probe.retry import RetryPolicy, default_handshake_policy, default_read_policy

CONFIG_PATH = Path(__file__).parent / "config.yaml"


def setup_logging(level: str = "INFO"):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)

app = typer.Typer(help="Long-running liveness probe for a publish/subscribe broker.",
                  add_completion=False)


def _section(conf: Dict[str, Any], key: str, name: Optional[str] = None) -> Dict[str, Any]:
    """Returns the nested mapping under `key`; a missing section means no overrides."""
    section = conf.get(key, {})
    if not isinstance(section, dict):
        raise ConfigError(name or key, f"must be a mapping, got {type(section).__name__}")
    return section


def load_settings(path: Path) -> Dict[str, Any]:
    """Loads the config file and applies its log level; any unusable file is a ConfigError."""
    try:
        config = load_config(path)
        logging.getLogger().setLevel(str(config.get('log_level', 'INFO')).upper())
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(str(path), str(e)) from e
    return config


def build_probe(authentication_key: str,
                config: Dict[str, Any],
                *,
                rng: Optional[random.Random] = None,
                stop_event: Optional[asyncio.Event] = None) -> ProbeLoop:
    """
    Builds a ProbeLoop from a merged configuration dictionary.

    `rng` drives both the identity choice and the retry jitter; leave it out
    in production to get a wall-clock seeded generator.
    """
    if rng is None:
        rng = random.Random(time.time_ns())
    identity = choose_identity(rng)

    mqtt_conf = _section(config, 'mqtt')
    retry_conf = _section(config, 'retry')
    handshake_conf = _section(retry_conf, 'handshake', 'retry.handshake')
    read_conf = _section(retry_conf, 'read', 'retry.read')
    try:
        read_timeout = float(config.get('read_timeout', 30.0))
        pacing_interval = float(config.get('pacing_interval', 120.0))
        max_cycles = config.get('max_cycles')
        max_cycles = int(max_cycles) if max_cycles is not None else None
        port = int(mqtt_conf.get('port', 1883))  # Must be int
        keepalive = int(mqtt_conf.get('keepalive', 60))
    except (TypeError, ValueError) as e:
        raise ConfigError("probe", str(e)) from e

    connector = functools.partial(
        MQTTSession.connect,
        host=mqtt_conf.get('host', 'localhost'),
        port=port,
        client_id=f"{mqtt_conf.get('client_id_prefix', 'longrunningclient')}-{identity:03d}",
        username=mqtt_conf.get('username'),
        keepalive=keepalive,
        read_timeout=read_timeout,
    )

    return ProbeLoop(
        connector,
        authentication_key,
        identity=identity,
        topic=config.get('topic', 'longrunningclient'),
        pacing_interval=pacing_interval,
        max_cycles=max_cycles,
        handshake_retry=RetryPolicy.from_config(handshake_conf, default_handshake_policy(), rng=rng),
        read_retry=RetryPolicy.from_config(read_conf, default_read_policy(), rng=rng),
        correlation=strategy_by_name(config.get('correlation', 'any')),
        stop_event=stop_event,
    )


def request_stop(signal_name: str, stop_event: asyncio.Event):
    """Signal handler: ask the probe to finish its current wait and exit."""
    logger.info(f"Received exit signal {signal_name}...")
    stop_event.set()


async def run_probe(authentication_key: str, config: Dict[str, Any]) -> ProbeOutcome:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    # Setup Signal Handlers for OS interrupts
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, functools.partial(request_stop, sig.name, stop_event))

    try:
        probe = build_probe(authentication_key, config, stop_event=stop_event)
        return await probe.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


@app.command()
def main(
    authentication_key: Annotated[str, typer.Argument(help="Authentication key for the broker.")],
):
    """Publish a heartbeat every pacing interval and report every reply on stderr."""
    if not authentication_key.strip():
        raise typer.BadParameter("Please specify an authentication key", param_hint="AUTHENTICATION_KEY")

    setup_logging()
    try:
        config = load_settings(CONFIG_PATH)
        logger.info(f"Starting pubsub-probe {__version__}...")
        outcome = asyncio.run(run_probe(authentication_key, config))
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(code=int(ExitStatus.USAGE))

    raise typer.Exit(code=int(outcome.status))


if __name__ == "__main__":
    app()
