import socket

import pytest

from pubsub_probe.client.session import MQTTSession
from pubsub_probe.probe.correlation import MatchSequence
from pubsub_probe.probe.loop import ProbeLoop
from pubsub_probe.probe.models import ExitStatus

BROKER_HOST = "localhost"
BROKER_PORT = 1883


def _is_port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not _is_port_open(BROKER_HOST, BROKER_PORT),
                       reason="no MQTT broker listening on localhost:1883"),
]


@pytest.mark.asyncio
async def test_probe_round_trips_heartbeats_through_real_broker():
    """
    Integration Test:
    1. Connects a real MQTTSession to the local broker (e.g. Mosquitto).
    2. Runs three heartbeat cycles without pacing.
    3. Verifies every heartbeat came back as its own echo.
    """
    lines = []

    async def connect(key):
        return await MQTTSession.connect(key, host=BROKER_HOST, port=BROKER_PORT,
                                         client_id="longrunningclient-it-042", read_timeout=2.0)

    probe = ProbeLoop(connect, "integration-key",
                      identity=42,
                      topic="pubsub_probe/integration_test",
                      pacing_interval=0,
                      max_cycles=3,
                      correlation=MatchSequence(),
                      sink=lines.append)

    outcome = await probe.run()

    assert outcome.status is ExitStatus.COMPLETED
    assert outcome.stats.accepted_replies == 3
    assert lines == ["042|0", "042|1", "042|2"]
