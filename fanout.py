"""
Fan one request stream out to every provider and collect what each returned.

The broadcaster is the only place sequence ids are minted. Each provider has
its own bounded queue, so every worker sees every request in the same order;
a full queue blocks the broadcaster instead of dropping entries.
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from rpc_providers import Provider
from rpc_types import Envelope, MalformedRequestError, Record, parse_envelope

logger = logging.getLogger(__name__)

DEFAULT_MAX_COUNT = 1_000
FIRST_SEQUENCE_ID = 1
# Seconds between checks of the stop and abort events while blocked
POLL_INTERVAL = 0.05

# Put on every channel once the stream is over
END_OF_STREAM = None


@dataclass
class BroadcastStats:
    sent: int = 0
    skipped: int = 0
    stopped_early: bool = False


class _ReadFailed:
    def __init__(self, error: BaseException):
        self.error = error


class Broadcaster:
    """
    Reads request lines, numbers them and hands a copy to every channel.

    ``stop_event`` ends the stream gracefully: no new lines are read and the
    workers finish what is already queued. ``abort_event`` gives up on queued
    work; it is set here when the run is torn down by an exception such as
    SystemExit.
    """

    def __init__(
        self,
        channels: list[queue.Queue],
        max_count: int = DEFAULT_MAX_COUNT,
        stop_event: threading.Event | None = None,
        abort_event: threading.Event | None = None,
    ):
        self.channels = channels
        self.max_count = max_count
        self.stop_event = stop_event
        self.abort_event = abort_event if abort_event is not None else threading.Event()
        self._next_id = FIRST_SEQUENCE_ID
        self.closed = False

    def _stopping(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def run(self, lines: Iterable[str]) -> BroadcastStats:
        stats = BroadcastStats()
        try:
            if self.max_count <= 0:
                return stats
            for line_no, line in enumerate(self._read(lines), start=1):
                if self._stopping():
                    break
                if not line.strip():
                    logger.debug("line %d: blank, skipped", line_no)
                    continue
                try:
                    envelope = parse_envelope(line)
                except MalformedRequestError as e:
                    logger.warning("line %d: skipping malformed request: %s", line_no, e)
                    stats.skipped += 1
                    continue

                self.publish(envelope)
                stats.sent += 1
                if stats.sent >= self.max_count:
                    break
            stats.stopped_early = self._stopping() and stats.sent < self.max_count
        except BaseException:
            self.abort_event.set()
            raise
        finally:
            self.close()
        return stats

    def _read(self, lines: Iterable[str]) -> Iterator[str]:
        """
        Yield input lines, giving up as soon as a stop is requested.

        With a stop event the source is read on a daemon thread, so an idle
        stdin can't keep the broadcaster from noticing the stop.
        """
        if self.stop_event is None:
            yield from lines
            return

        handoff = queue.Queue(maxsize=1)

        def reader():
            try:
                for line in lines:
                    handoff.put(line)
            except BaseException as e:
                handoff.put(_ReadFailed(e))
            else:
                handoff.put(END_OF_STREAM)

        threading.Thread(target=reader, name="broadcaster-input", daemon=True).start()
        while not self._stopping():
            try:
                item = handoff.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is END_OF_STREAM:
                return
            if isinstance(item, _ReadFailed):
                raise item.error
            yield item

    def publish(self, envelope: Envelope) -> int:
        """Number an envelope and deliver it to every channel before returning."""
        seq_id = self._next_id
        self._next_id += 1
        for channel in self.channels:
            while not self.abort_event.is_set():
                try:
                    channel.put((seq_id, envelope), timeout=POLL_INTERVAL)
                    break
                except queue.Full:
                    continue
        return seq_id

    def close(self) -> None:
        for channel in self.channels:
            if not self.abort_event.is_set():
                channel.put(END_OF_STREAM)
                continue
            # Aborting: throw away queued work so the end marker always fits
            try:
                while True:
                    channel.get_nowait()
            except queue.Empty:
                pass
            channel.put_nowait(END_OF_STREAM)
        self.closed = True


@dataclass
class ResultSet:
    """Everything one provider recorded during a run, keyed by sequence id."""

    label: str
    records: dict[int, Record] = field(default_factory=dict)
    elapsed: float = 0.0
    lagged: int = 0
    crashed: str | None = None

    @property
    def busy_time(self) -> float:
        """Time spent waiting on the provider, as opposed to on the queue."""
        return sum(r.elapsed for r in self.records.values())


class ProviderWorker:
    """Executes requests from one channel against one provider, in arrival order."""

    def __init__(self, provider: Provider, channel: queue.Queue, abort_event: threading.Event | None = None):
        self.provider = provider
        self.channel = channel
        self.abort_event = abort_event if abort_event is not None else threading.Event()
        self.results = ResultSet(provider.label)
        self._expected = None

    def run(self) -> ResultSet:
        start = time.perf_counter()
        try:
            self._consume()
        except Exception as e:
            # Keep whatever was recorded so far and let the broadcaster finish
            logger.exception("%s: worker crashed, keeping %d result(s)", self.provider.label, len(self.results.records))
            self.results.crashed = f"{type(e).__name__}: {e}"
            self._drain()
        self.results.elapsed = time.perf_counter() - start
        return self.results

    def _consume(self) -> None:
        while True:
            item = self.channel.get()
            if item is END_OF_STREAM:
                return
            if self.abort_event.is_set():
                logger.debug("%s: aborted with %d result(s)", self.provider.label, len(self.results.records))
                return
            seq_id, envelope = item
            self._check_sequence(seq_id)
            if seq_id in self.results.records:
                logger.error("%s: request %d delivered twice, ignoring repeat", self.provider.label, seq_id)
                continue
            self.results.records[seq_id] = self.execute(envelope, seq_id)

    def _check_sequence(self, seq_id: int) -> None:
        if self._expected is not None and seq_id > self._expected:
            missed = seq_id - self._expected
            self.results.lagged += missed
            logger.warning(
                "%s: lagging, %d request(s) skipped before %d",
                self.provider.label, missed, seq_id,
            )
        if self._expected is None or seq_id >= self._expected:
            self._expected = seq_id + 1

    def _drain(self) -> None:
        while self.channel.get() is not END_OF_STREAM:
            pass

    def execute(self, envelope: Envelope, seq_id: int) -> Record:
        """Run every call in the envelope, in order, under one sequence id."""
        outcomes = []
        elapsed = 0.0
        for call in envelope.calls:
            outcome, took = self.provider.request(call, seq_id)
            outcomes.append(outcome)
            elapsed += took
        return Record(envelope, tuple(outcomes), elapsed)


@dataclass
class FanoutResult:
    stats: BroadcastStats
    results: list[ResultSet]


def run_fanout(
    providers: list[Provider],
    lines: Iterable[str],
    max_count: int = DEFAULT_MAX_COUNT,
    capacity: int | None = None,
    stop_event: threading.Event | None = None,
    abort_event: threading.Event | None = None,
) -> FanoutResult:
    """
    Broadcast ``lines`` to every provider and wait for all of them to finish.

    The broadcaster runs in the calling thread and each worker in its own
    thread. Result sets come back in the same order as ``providers``.

    If anything interrupts the run (including SystemExit from a second
    signal) the abort event is set, queued requests are dropped and the
    exception propagates without waiting for workers; at most each worker's
    in-flight call is left to finish in the background.
    """
    if abort_event is None:
        abort_event = threading.Event()
    size = capacity if capacity is not None else max_count
    channels = [queue.Queue(maxsize=max(size, 1)) for _ in providers]
    workers = [ProviderWorker(p, ch, abort_event) for p, ch in zip(providers, channels)]
    broadcaster = Broadcaster(channels, max_count, stop_event, abort_event)

    executor = ThreadPoolExecutor(max_workers=max(len(workers), 1))
    try:
        futures = [executor.submit(w.run) for w in workers]
        stats = broadcaster.run(lines)
        results = [f.result() for f in futures]
    except BaseException:
        abort_event.set()
        if not broadcaster.closed:
            broadcaster.close()
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown()

    logger.info("sent %d/%d requests (%d malformed line(s) skipped)", stats.sent, max_count, stats.skipped)
    return FanoutResult(stats, results)
