import asyncio
import random
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from pubsub_probe.errors import ConfigError
from pubsub_probe.probe.config_loader import DEFAULTS, merge_config
from pubsub_probe.probe.correlation import MatchSequence
from pubsub_probe.probe.main import app, build_probe, request_stop, run_probe
from pubsub_probe.probe.models import ExitStatus, ProbeOutcome, ProbeStats

"""
Entry point tests: argument handling, exit statuses and wiring.
"""

runner = CliRunner()


@pytest.fixture
def mock_config():
    return merge_config(DEFAULTS, {'mqtt': {'host': 'broker.test', 'port': '1884'}})


@patch('pubsub_probe.probe.main.MQTTSession')
@patch('pubsub_probe.probe.main.run_probe')
def test_no_arguments_is_usage_error(mock_run_probe, MockSession):
    result = runner.invoke(app, [])

    assert result.exit_code == ExitStatus.USAGE
    mock_run_probe.assert_not_called()
    MockSession.connect.assert_not_called()


@patch('pubsub_probe.probe.main.run_probe')
def test_extra_arguments_are_usage_error(mock_run_probe):
    result = runner.invoke(app, ["key-one", "key-two"])

    assert result.exit_code == ExitStatus.USAGE
    mock_run_probe.assert_not_called()


@patch('pubsub_probe.probe.main.run_probe')
def test_blank_key_is_usage_error(mock_run_probe):
    result = runner.invoke(app, ["   "])

    assert result.exit_code == ExitStatus.USAGE
    mock_run_probe.assert_not_called()


@pytest.mark.parametrize("status", [ExitStatus.COMPLETED, ExitStatus.SESSION_FAILURE])
@patch('pubsub_probe.probe.main.load_config')
@patch('pubsub_probe.probe.main.run_probe', new_callable=AsyncMock)
def test_exit_code_follows_probe_outcome(mock_run_probe, mock_load_config, status, mock_config):
    mock_load_config.return_value = mock_config
    mock_run_probe.return_value = ProbeOutcome(status=status, stats=ProbeStats())

    result = runner.invoke(app, ["secret-key"])

    assert result.exit_code == int(status)
    mock_run_probe.assert_awaited_once_with("secret-key", mock_config)


@patch('pubsub_probe.probe.main.load_config')
def test_bad_config_exits_with_usage_status(mock_load_config, mock_config):
    mock_config['correlation'] = 'telepathy'
    mock_load_config.return_value = mock_config

    with patch('pubsub_probe.probe.main.MQTTSession') as MockSession:
        result = runner.invoke(app, ["secret-key"])

    assert result.exit_code == ExitStatus.USAGE
    MockSession.connect.assert_not_called()


@pytest.mark.parametrize("override", [
    {'mqtt': None},
    {'mqtt': {'keepalive': 'often'}},
    {'retry': {'read': [1, 2]}},
    {'log_level': 'LOUD'},
])
@patch('pubsub_probe.probe.main.load_config')
def test_invalid_config_values_exit_with_usage_status(mock_load_config, override):
    mock_load_config.return_value = merge_config(DEFAULTS, override)

    with patch('pubsub_probe.probe.main.MQTTSession') as MockSession:
        result = runner.invoke(app, ["secret-key"])

    assert result.exit_code == ExitStatus.USAGE
    MockSession.connect.assert_not_called()


@pytest.mark.parametrize("content", ["mqtt: [unclosed\n", "- just\n- a list\n"])
def test_unreadable_config_file_exits_with_usage_status(tmp_path, content):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(content)

    with patch('pubsub_probe.probe.main.CONFIG_PATH', config_file), \
            patch('pubsub_probe.probe.main.run_probe') as mock_run_probe:
        result = runner.invoke(app, ["secret-key"])

    assert result.exit_code == ExitStatus.USAGE
    mock_run_probe.assert_not_called()


def test_build_probe_wires_identity_and_settings(mock_config):
    rng = MagicMock(spec=random.Random)
    rng.randrange.return_value = 7
    mock_config['correlation'] = 'sequence'
    mock_config['max_cycles'] = 10

    probe = build_probe("secret-key", mock_config, rng=rng)

    assert probe.identity == 7
    assert probe.topic == 'longrunningclient'
    assert probe.pacing_interval == 120.0
    assert probe.max_cycles == 10
    assert isinstance(probe.correlation, MatchSequence)
    assert probe.handshake_retry.max_attempts == 5
    assert probe.read_retry.max_attempts == 3
    connect_kwargs = probe._connect.keywords
    assert connect_kwargs['host'] == 'broker.test'
    assert connect_kwargs['port'] == 1884
    assert connect_kwargs['client_id'] == 'longrunningclient-007'
    assert connect_kwargs['read_timeout'] == 30.0


def test_build_probe_rejects_bad_numbers(mock_config):
    mock_config['pacing_interval'] = 'soon'
    with pytest.raises(ConfigError):
        build_probe("secret-key", mock_config, rng=random.Random(1))


@pytest.mark.asyncio
async def test_request_stop_sets_event():
    stop_event = asyncio.Event()
    request_stop("SIGTERM", stop_event)
    assert stop_event.is_set()


@pytest.mark.asyncio
@patch('pubsub_probe.probe.main.build_probe')
async def test_run_probe_runs_the_loop_with_a_stop_event(mock_build_probe, mock_config):
    outcome = ProbeOutcome(status=ExitStatus.COMPLETED, stats=ProbeStats())
    mock_probe = MagicMock()
    mock_probe.run = AsyncMock(return_value=outcome)
    mock_build_probe.return_value = mock_probe

    result = await run_probe("secret-key", mock_config)

    assert result is outcome
    _, kwargs = mock_build_probe.call_args
    assert isinstance(kwargs['stop_event'], asyncio.Event)
    mock_probe.run.assert_awaited_once()
