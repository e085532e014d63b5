"""Periodic connection statistics sampling.

The sampler reads the engine's stats report on a fixed interval and derives
an advisory StatsSnapshot (round-trip time, bitrates, network path type). It
never touches call state; the coordinator only starts it once connected and
stops it when the call ends.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass
class StatsSnapshot:
    """Derived connection statistics for display.

    Attributes:
        round_trip_time_ms: Current round-trip time, None if not reported
        outgoing_bitrate_kbps: Send bitrate since the previous sample
        incoming_bitrate_kbps: Receive bitrate since the previous sample
        path_type: Local candidate type of the selected path
            ("host", "srflx", "prflx", "relay") or "unknown"
        timestamp: Monotonic time the snapshot was taken
    """

    round_trip_time_ms: Optional[float] = None
    outgoing_bitrate_kbps: Optional[float] = None
    incoming_bitrate_kbps: Optional[float] = None
    path_type: str = "unknown"
    timestamp: float = field(default_factory=time.monotonic)


@dataclass
class ReportTotals:
    """Cumulative counters pulled out of one stats report."""

    bytes_sent: int = 0
    bytes_received: int = 0
    round_trip_time: Optional[float] = None
    path_type: str = "unknown"


def summarize_report(report: Iterable[Dict[str, Any]]) -> ReportTotals:
    """Collapse a stats report into cumulative totals.

    Accepts browser-style entries (``candidate-pair``/``local-candidate``) as
    well as the rtp and ``transport`` entries aiortc reports. Received bytes
    come from ``inbound-rtp`` when it carries ``bytesReceived``, otherwise
    from the ``transport`` entries.

    Args:
        report: Stats entries, each a dict with a ``type`` key

    Returns:
        ReportTotals for the report
    """
    totals = ReportTotals()
    entries = list(report)
    rtp_received = None
    transport_received = {}
    candidates = {
        entry.get("id"): entry
        for entry in entries
        if entry.get("type") == "local-candidate"
    }
    pair_rtt = None
    remote_rtts = []

    for entry in entries:
        kind = entry.get("type")
        if kind == "outbound-rtp":
            totals.bytes_sent += entry.get("bytesSent") or 0
        elif kind == "inbound-rtp":
            if entry.get("bytesReceived") is not None:
                rtp_received = (rtp_received or 0) + entry["bytesReceived"]
        elif kind == "transport":
            transport_received[entry.get("id")] = entry.get("bytesReceived") or 0
        elif kind == "remote-inbound-rtp":
            if entry.get("roundTripTime") is not None:
                remote_rtts.append(entry["roundTripTime"])
        elif kind == "candidate-pair":
            if entry.get("state") != "succeeded" or entry.get("nominated") is False:
                continue
            if entry.get("currentRoundTripTime") is not None:
                pair_rtt = entry["currentRoundTripTime"]
            local = candidates.get(entry.get("localCandidateId"))
            if local and local.get("candidateType"):
                totals.path_type = local["candidateType"]

    # aiortc inbound-rtp entries carry no byte count; fall back to the transports.
    if rtp_received is not None:
        totals.bytes_received = rtp_received
    else:
        totals.bytes_received = sum(transport_received.values())

    if pair_rtt is not None:
        totals.round_trip_time = pair_rtt
    elif remote_rtts:
        totals.round_trip_time = max(remote_rtts)
    return totals


def compute_snapshot(
    totals: ReportTotals,
    previous: Optional[ReportTotals],
    elapsed: float,
    now: Optional[float] = None,
) -> StatsSnapshot:
    """Build a snapshot from the current and previous totals.

    Bitrates need a previous sample and a positive elapsed time; otherwise
    they are left as None. Counter resets (current below previous) also yield
    None rather than a negative rate.
    """

    def rate(current: int, before: int) -> Optional[float]:
        if previous is None or elapsed <= 0 or current < before:
            return None
        return (current - before) * 8 / 1000 / elapsed

    snapshot = StatsSnapshot(
        round_trip_time_ms=(
            totals.round_trip_time * 1000 if totals.round_trip_time is not None else None
        ),
        outgoing_bitrate_kbps=rate(
            totals.bytes_sent, previous.bytes_sent if previous else 0
        ),
        incoming_bitrate_kbps=rate(
            totals.bytes_received, previous.bytes_received if previous else 0
        ),
        path_type=totals.path_type,
    )
    if now is not None:
        snapshot.timestamp = now
    return snapshot


class StatsSampler:
    """Samples engine stats on an interval into ``latest``.

    Attributes:
        engine: Peer engine providing ``get_stats()``
        interval: Seconds between samples
        latest: Most recent snapshot, None before the first sample
    """

    def __init__(
        self,
        engine,
        interval: float = 2.0,
        on_sample: Optional[Callable[[StatsSnapshot], None]] = None,
    ):
        self.engine = engine
        self.interval = interval
        self.on_sample = on_sample
        self.latest: Optional[StatsSnapshot] = None

        self._task: Optional[asyncio.Task] = None
        self._previous: Optional[ReportTotals] = None
        self._previous_time: Optional[float] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self):
        """Start the sampling task (no-op if running or stopped)."""
        if self._stopped:
            logger.debug("Stats sampler already stopped, not restarting")
            return
        if not self.running:
            self._task = asyncio.create_task(self._sample_loop())
            logger.info(f"Stats sampling started (interval: {self.interval}s)")

    def stop(self):
        """Cancel sampling immediately. No sample is published afterwards."""
        self._stopped = True
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Stats sampling stopped")

    async def sample(self) -> Optional[StatsSnapshot]:
        """Take one sample and publish it."""
        report = await self.engine.get_stats()
        if self._stopped:
            return None

        now = time.monotonic()
        totals = summarize_report(report)
        elapsed = now - self._previous_time if self._previous_time is not None else 0.0
        snapshot = compute_snapshot(totals, self._previous, elapsed, now=now)
        self._previous = totals
        self._previous_time = now
        self.latest = snapshot

        logger.debug(
            f"Stats: rtt={snapshot.round_trip_time_ms}ms "
            f"out={snapshot.outgoing_bitrate_kbps}kbps "
            f"in={snapshot.incoming_bitrate_kbps}kbps path={snapshot.path_type}"
        )
        if self.on_sample:
            self.on_sample(snapshot)
        return snapshot

    async def _sample_loop(self):
        while not self._stopped:
            try:
                await self.sample()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                logger.debug("Stats sampling loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error sampling stats: {e}")
                await asyncio.sleep(self.interval)
