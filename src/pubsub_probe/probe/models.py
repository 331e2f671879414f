"""
Data Models for the Probe Loop and its Heartbeat Payloads.

Defines the small set of value objects that travel between the
Session adapter, the Probe Loop and the CLI layer.
"""
from dataclasses import dataclass, field, asdict
import json
import random
import re
import time
from enum import Enum, IntEnum
from typing import Optional

from pubsub_probe.errors import MalformedHeartbeat, ProbeError

IDENTITY_RANGE = 100
SEPARATOR = "|"

_HEARTBEAT_PATTERN = re.compile(r"(\d{3})\|(0|[1-9]\d*)", re.ASCII)


class ProbeState(str, Enum):
    INIT = "init"
    SUBSCRIBED = "subscribed"
    PUBLISHING = "publishing"
    AWAITING_REPLY = "awaiting_reply"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


class ReplyKind(str, Enum):
    OWN_ECHO = "own_echo"          # same identity, same sequence
    OWN_STALE = "own_stale"        # same identity, earlier/later sequence
    FOREIGN = "foreign"            # another probe instance
    UNRECOGNISED = "unrecognised"  # not a heartbeat at all


class ExitStatus(IntEnum):
    COMPLETED = 0
    SESSION_FAILURE = 1
    USAGE = 2


def choose_identity(rng: Optional[random.Random] = None) -> int:
    """
    Picks the ClientIdentity for this process.

    Production passes nothing and gets a generator seeded from wall-clock time;
    tests hand in an explicitly seeded `random.Random`.
    """
    if rng is None:
        rng = random.Random(time.time_ns())
    return rng.randrange(IDENTITY_RANGE)


# --- The Payload ---

@dataclass(frozen=True)
class HeartbeatMessage:
    """One heartbeat: `(identity, sequence)` rendered as `"007|42"`."""
    identity: int
    sequence: int

    def __post_init__(self):
        if not 0 <= self.identity < IDENTITY_RANGE:
            raise ValueError(f"identity must be in [0, {IDENTITY_RANGE}), got {self.identity}")
        if self.sequence < 0:
            raise ValueError(f"sequence must be non-negative, got {self.sequence}")

    def to_text(self) -> str:
        return f"{self.identity:03d}{SEPARATOR}{self.sequence}"

    def encode(self) -> bytes:
        """Converts the heartbeat to the UTF-8 bytes published on the topic."""
        return self.to_text().encode('utf-8')

    @classmethod
    def decode(cls, body: bytes) -> "HeartbeatMessage":
        """
        Parses a received body back into a heartbeat.

        Raises MalformedHeartbeat for anything that is not exactly
        three digits, the separator and a decimal sequence.
        """
        try:
            text = body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedHeartbeat(body, "body is not valid UTF-8") from e

        match = _HEARTBEAT_PATTERN.fullmatch(text)
        if match is None:
            raise MalformedHeartbeat(body, "body does not match '<identity>|<sequence>'")
        return cls(identity=int(match.group(1)), sequence=int(match.group(2)))


# --- The "Envelope" (what the Session hands back) ---

@dataclass(frozen=True)
class ReceivedMessage:
    """A message read from the broker, independent of the transport library."""
    topic: str
    body: bytes

    def text(self) -> str:
        """Decoded body; undecodable bytes are replaced rather than raised."""
        return self.body.decode('utf-8', errors='replace')


# --- Bookkeeping ---

@dataclass
class ProbeStats:
    """Running counters, logged as a summary when the probe terminates."""
    cycles: int = 0
    replies: int = 0
    accepted_replies: int = 0
    missed_cycles: int = 0
    publish_failures: int = 0
    read_timeouts: int = 0
    reconnects: int = 0
    started_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self))


@dataclass(frozen=True, kw_only=True)
class ProbeOutcome:
    """How the loop ended. The CLI maps `status` straight to the process exit code."""
    status: ExitStatus
    stats: ProbeStats
    last_error: Optional[ProbeError] = None
