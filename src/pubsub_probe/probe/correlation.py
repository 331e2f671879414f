"""
Reply Correlation.

Decides whether a message read after publishing a heartbeat counts as the
reply to that heartbeat. Two readings of the topic are supported:

- `AcceptAnyReply`: the topic is a self-loop, so whatever arrives next is the
  reply. This is how the probe has always behaved.
- `MatchSequence`: only the echo of the exact heartbeat just published counts;
  stale echoes and other probes' traffic are skipped.
"""
import logging
from typing import Dict, Protocol, Type

from pubsub_probe.errors import ConfigError, MalformedHeartbeat
from pubsub_probe.probe.models import HeartbeatMessage, ReplyKind

logger = logging.getLogger(__name__)


def classify_reply(expected: HeartbeatMessage, body: bytes) -> ReplyKind:
    """Classifies a received body relative to the heartbeat just published."""
    try:
        received = HeartbeatMessage.decode(body)
    except MalformedHeartbeat as e:
        logger.debug(f"Unrecognised reply: {e}")
        return ReplyKind.UNRECOGNISED

    if received.identity != expected.identity:
        return ReplyKind.FOREIGN
    if received.sequence != expected.sequence:
        return ReplyKind.OWN_STALE
    return ReplyKind.OWN_ECHO


class CorrelationStrategy(Protocol):
    name: str

    def accepts(self, expected: HeartbeatMessage, kind: ReplyKind) -> bool:
        ...


class AcceptAnyReply:
    name = "any"

    def accepts(self, expected: HeartbeatMessage, kind: ReplyKind) -> bool:
        return True


class MatchSequence:
    name = "sequence"

    def accepts(self, expected: HeartbeatMessage, kind: ReplyKind) -> bool:
        return kind is ReplyKind.OWN_ECHO


STRATEGIES: Dict[str, Type] = {
    AcceptAnyReply.name: AcceptAnyReply,
    MatchSequence.name: MatchSequence,
}


def strategy_by_name(name: str) -> CorrelationStrategy:
    strategy_class = STRATEGIES.get(name)
    if strategy_class is None:
        raise ConfigError("correlation", f"unknown strategy '{name}', expected one of {sorted(STRATEGIES)}")
    return strategy_class()
