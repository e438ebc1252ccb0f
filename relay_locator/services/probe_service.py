"""
Reachability probing for relay servers.

A probe is a plain TCP connect: no payload is exchanged, the time to complete
the handshake is taken as the latency. Ports are tried in order and the first
one that answers wins. Blocked or filtered ports are expected in the wild, so
every failure is folded into an absent result instead of an exception.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from relay_locator.errors import ProbeFailure
from relay_locator.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of probing a single host."""

    host: str
    latency_ms: Optional[float]  # None if unreachable
    port: Optional[int]  # port that answered
    status: str  # "success", "timeout", "error"

    @property
    def success(self) -> bool:
        return self.latency_ms is not None


class ReachabilityProbe:
    """Bounded-time TCP connect probe."""

    def __init__(
        self,
        ports: Optional[Sequence[int]] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.ports: List[int] = list(ports if ports is not None else settings.probe_ports)
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.probe_timeout_ms

    async def probe(
        self,
        host: str,
        ports: Optional[Sequence[int]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Optional[float]:
        """
        Measure TCP connect latency to a host.

        Args:
            host: Hostname or IP address.
            ports: Ports to try in order (default: configured probe ports).
            timeout_ms: Timeout for each individual attempt.

        Returns:
            Elapsed milliseconds for the first port that completed a
            handshake, or None if none did.
        """
        result = await self.probe_detailed(host, ports, timeout_ms)
        return result.latency_ms

    async def probe_detailed(
        self,
        host: str,
        ports: Optional[Sequence[int]] = None,
        timeout_ms: Optional[int] = None,
    ) -> ProbeResult:
        """Probe a host and report which port answered and why it failed otherwise."""
        ports_to_try = list(ports) if ports is not None else self.ports
        timeout = (timeout_ms if timeout_ms is not None else self.timeout_ms) / 1000

        if not host:
            return ProbeResult(host=host, latency_ms=None, port=None, status="error")

        status = "timeout"
        for port in ports_to_try:
            try:
                latency_ms = await self._connect(host, port, timeout)
            except ProbeFailure as e:
                logger.debug(f"Probe attempt failed: {e}")
                if e.reason != "timeout" and status == "timeout":
                    status = "error"
                continue

            return ProbeResult(host=host, latency_ms=latency_ms, port=port, status="success")

        # Every port failed. "timeout" only when every attempt timed out.
        return ProbeResult(host=host, latency_ms=None, port=None, status=status)

    async def _connect(self, host: str, port: int, timeout: float) -> float:
        """
        Open and close one TCP connection.

        Raises:
            ProbeFailure: If the handshake did not complete within timeout.
        """
        writer = None
        start = time.perf_counter()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout,
            )
            return (time.perf_counter() - start) * 1000
        except asyncio.TimeoutError as e:
            raise ProbeFailure(host, port, "timeout") from e
        except (OSError, OverflowError, ValueError) as e:
            # Refused, unreachable, DNS failure, port out of range
            raise ProbeFailure(host, port, type(e).__name__) from e
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError as e:
                    logger.debug(f"Error closing probe socket to {host}:{port}: {e}")

    async def probe_many(
        self,
        hosts: Iterable[str],
        ports: Optional[Sequence[int]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Optional[float]]:
        """
        Probe several hosts concurrently.

        Returns:
            Dict mapping each unique host to its latency (None if unreachable).
        """
        unique_hosts = list(dict.fromkeys(hosts))
        if not unique_hosts:
            return {}

        latencies = await asyncio.gather(
            *(self.probe(host, ports, timeout_ms) for host in unique_hosts)
        )
        results = dict(zip(unique_hosts, latencies))

        logger.info(
            f"Probed {len(results)} hosts: "
            f"{sum(1 for latency in results.values() if latency is not None)} reachable"
        )
        return results


# Singleton instance
_probe: Optional[ReachabilityProbe] = None


def get_probe() -> ReachabilityProbe:
    """Get the singleton ReachabilityProbe instance."""
    global _probe
    if _probe is None:
        _probe = ReachabilityProbe()
    return _probe
