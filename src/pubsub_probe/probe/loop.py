"""
The Probe Loop.

This module is responsible for:
- Establishing the Session (connect + subscribe) with retry and backoff.
- Running heartbeat cycles: publish `"<identity>|<sequence>"`, wait for a
  reply, report it, pause for the pacing interval.
- Telling "no reply yet" (ReadTimeout) apart from "broker gone"
  (ConnectionLost) and recovering from both without dying.
- Honouring an external stop event during every wait.

The loop never lets a transport error escape `run()`; it returns a
`ProbeOutcome` whose status the CLI turns into the exit code.
"""
import asyncio
import itertools
import logging
import sys
from typing import Callable, Iterator, Optional

from pubsub_probe.client.session import Connector, Session
from pubsub_probe.errors import ConnectionLost, ProbeError, PublishError, ReadTimeout, SessionError
from pubsub_probe.probe.correlation import AcceptAnyReply, CorrelationStrategy, classify_reply
from pubsub_probe.probe.models import (ExitStatus, HeartbeatMessage, ProbeOutcome, ProbeState, ProbeStats,
                                       ReceivedMessage)
from pubsub_probe.probe.retry import RetryPolicy, default_handshake_policy, default_read_policy

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "longrunningclient"
DEFAULT_PACING_INTERVAL = 2 * 60.0


def stderr_sink(line: str) -> None:
    """Default observability sink: one line per received message on stderr."""
    print(line, file=sys.stderr, flush=True)


class StopRequested(Exception):
    """Raised internally when the stop event fires during a wait."""


class ProbeLoop:
    identity: int
    topic: str
    pacing_interval: float
    max_cycles: Optional[int]
    handshake_retry: RetryPolicy
    read_retry: RetryPolicy
    correlation: CorrelationStrategy
    state: ProbeState
    stats: ProbeStats
    session: Optional[Session]

    """
    Drives one Session through an unbounded (or capped) series of heartbeat cycles.
    """
    def __init__(self,
                 connect: Connector,
                 authentication_key: str,
                 *,
                 identity: int,
                 topic: str = DEFAULT_TOPIC,
                 pacing_interval: float = DEFAULT_PACING_INTERVAL,
                 max_cycles: Optional[int] = None,
                 handshake_retry: Optional[RetryPolicy] = None,
                 read_retry: Optional[RetryPolicy] = None,
                 correlation: Optional[CorrelationStrategy] = None,
                 sink: Callable[[str], None] = stderr_sink,
                 stop_event: Optional[asyncio.Event] = None):
        self._connect = connect
        self._authentication_key = authentication_key
        self.identity = identity
        self.topic = topic
        self.pacing_interval = pacing_interval
        self.max_cycles = max_cycles
        self.handshake_retry = handshake_retry or default_handshake_policy()
        self.read_retry = read_retry or default_read_policy()
        self.correlation = correlation or AcceptAnyReply()
        self.sink = sink
        self._stop_event = stop_event or asyncio.Event()

        # Internal state
        self.state = ProbeState.INIT
        self.stats = ProbeStats()
        self.session = None
        self._losses = 0  # ConnectionLost count within the current cycle

    def stop(self):
        """Asks the loop to finish; takes effect at the next wait."""
        self._stop_event.set()

    async def run(self) -> ProbeOutcome:
        logger.info(f"Probe {self.identity:03d} starting on topic '{self.topic}' "
                    f"(pacing {self.pacing_interval:.0f}s, correlation '{self.correlation.name}')")
        self.stats = ProbeStats()
        status = ExitStatus.COMPLETED
        last_error: Optional[ProbeError] = None

        try:
            await self._establish_session()
            for sequence in self._sequences():
                await self._run_cycle(sequence)
                if self._is_last(sequence):
                    logger.info(f"Reached the cycle cap of {self.max_cycles}.")
                    break
                if await self._wait(self.pacing_interval):
                    break
        except StopRequested:
            pass
        except SessionError as e:
            logger.error(f"Unrecoverable session error: {e.to_dict()}")
            status = ExitStatus.SESSION_FAILURE
            last_error = e
        finally:
            await self._close_session()
            self.state = ProbeState.TERMINATED

        if self._stop_event.is_set():
            logger.info("Probe stopped on request.")
        logger.info(f"Probe {self.identity:03d} finished with {status.name}: {self.stats.to_json()}")
        return ProbeOutcome(status=status, stats=self.stats, last_error=last_error)

    def _sequences(self) -> Iterator[int]:
        if self.max_cycles is None:
            return itertools.count()
        return iter(range(self.max_cycles))

    def _is_last(self, sequence: int) -> bool:
        return self.max_cycles is not None and sequence + 1 >= self.max_cycles

    # --- Session lifecycle ---

    async def _establish_session(self):
        """Connects and subscribes, retrying under the handshake policy."""
        attempt = 0
        while True:
            try:
                session = await self._connect(self._authentication_key)
                try:
                    await session.subscribe(self.topic)
                except SessionError:
                    await session.close()
                    raise
                self.session = session
                self.state = ProbeState.SUBSCRIBED
                return
            except SessionError as e:
                attempt += 1
                if not e.retryable or self.handshake_retry.exhausted(attempt):
                    logger.error(f"Handshake failed after {attempt} attempt(s): {e}")
                    raise
                delay = self.handshake_retry.delay(attempt - 1)
                logger.warning(f"Handshake attempt {attempt}/{self.handshake_retry.max_attempts} failed "
                               f"({e.code}): {e}. Retrying in {delay:.1f}s...")
                if await self._wait(delay):
                    raise StopRequested()

    async def _close_session(self):
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def _recover(self, error: ConnectionLost):
        """Backs off and re-establishes the session, or re-raises once the budget is spent."""
        self._losses += 1
        if self.read_retry.exhausted(self._losses):
            logger.error(f"Connection lost {self._losses} time(s) in one cycle, giving up: {error}")
            raise error

        delay = self.read_retry.delay(self._losses - 1)
        logger.warning(f"Connection lost ({self._losses}/{self.read_retry.max_attempts}): {error}. "
                       f"Reconnecting in {delay:.1f}s...")
        self.state = ProbeState.RECONNECTING
        await self._close_session()
        if await self._wait(delay):
            raise StopRequested()
        self.stats.reconnects += 1
        await self._establish_session()
        logger.info("Session re-established.")

    # --- One heartbeat cycle ---

    async def _run_cycle(self, sequence: int):
        heartbeat = HeartbeatMessage(identity=self.identity, sequence=sequence)
        self.stats.cycles += 1
        self._losses = 0

        try:
            await self._publish(heartbeat)
            await self._await_reply(heartbeat)
        except PublishError as e:
            self.stats.publish_failures += 1
            logger.warning(f"Heartbeat {heartbeat.to_text()} was not published ({e.code}): {e}. "
                           f"Skipping to the next cycle.")

    async def _publish(self, heartbeat: HeartbeatMessage):
        while True:
            self.state = ProbeState.PUBLISHING
            try:
                await self.session.publish(self.topic, heartbeat.encode())
                logger.debug(f"Published heartbeat {heartbeat.to_text()}")
                return
            except ConnectionLost as e:
                await self._recover(e)

    async def _await_reply(self, heartbeat: HeartbeatMessage):
        """
        Reads until the correlation strategy accepts a reply.

        Timeouts and unaccepted replies both use up read attempts; running out
        marks the cycle as missed. A lost connection is repaired and the same
        heartbeat is published again on the new session.
        """
        attempts = 0
        while True:
            self.state = ProbeState.AWAITING_REPLY
            try:
                message = await self._read()
            except ReadTimeout as e:
                self.stats.read_timeouts += 1
                attempts += 1
                if self.read_retry.exhausted(attempts):
                    self._missed(heartbeat, attempts)
                    return
                logger.warning(f"No reply to {heartbeat.to_text()} yet ({attempts}/"
                               f"{self.read_retry.max_attempts}): {e}")
                continue
            except ConnectionLost as e:
                await self._recover(e)
                await self._publish(heartbeat)
                continue

            self._report(message)
            kind = classify_reply(heartbeat, message.body)
            if self.correlation.accepts(heartbeat, kind):
                self.stats.accepted_replies += 1
                logger.debug(f"Heartbeat {heartbeat.to_text()} answered by {message.text()!r} ({kind.value})")
                return

            attempts += 1
            logger.info(f"Reply {message.text()!r} ({kind.value}) does not answer {heartbeat.to_text()}")
            if self.read_retry.exhausted(attempts):
                self._missed(heartbeat, attempts)
                return

    async def _read(self) -> ReceivedMessage:
        """Session.read() raced against the stop event."""
        read_task = asyncio.ensure_future(self.session.read())
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (read_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(read_task, stop_task, return_exceptions=True)

        if read_task in done:
            return read_task.result()
        raise StopRequested()

    def _report(self, message: ReceivedMessage):
        self.stats.replies += 1
        self.sink(message.text())

    def _missed(self, heartbeat: HeartbeatMessage, attempts: int):
        self.stats.missed_cycles += 1
        logger.error(f"No reply to heartbeat {heartbeat.to_text()} after {attempts} attempt(s); "
                     f"{self.stats.missed_cycles} cycle(s) missed so far.")

    async def _wait(self, delay: float) -> bool:
        """Sleeps for `delay` seconds; returns True early if a stop was requested."""
        if self._stop_event.is_set():
            return True
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
