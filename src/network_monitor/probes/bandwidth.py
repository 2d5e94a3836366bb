"""
Bandwidth probe with tiered fallback.

Strategies are tried in order and the first one that succeeds wins:

    iperf3          real measurement in both directions
    curl-fallback   one timed HTTP download, upload estimated at 20%
    simulated       random numbers so consumers always get values

Only a result tagged "iperf3" is a real measurement. Everything else is
an estimate or filler and must be treated as such.
"""

from __future__ import annotations

import json
import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import aiohttp

from .._types import BandwidthResult, BandwidthSource
from ..runner import CommandRunner

logger = logging.getLogger(__name__)

# Upload share assumed when only a download was measured
ESTIMATED_UPLOAD_RATIO = 0.2

SIMULATED_MAX_DOWNLOAD = 100.0
SIMULATED_MAX_UPLOAD = 20.0


def parse_iperf3_mbps(output: str) -> float:
    """Pull end.sum_received.bits_per_second out of `iperf3 -J` and convert to Mbps."""
    data = json.loads(output)
    if "error" in data:
        raise ValueError(f"iperf3 error: {data['error']}")
    return data["end"]["sum_received"]["bits_per_second"] / 1_000_000


class BandwidthStrategy(ABC):
    """One tier of the bandwidth fallback chain."""

    source: BandwidthSource

    @abstractmethod
    async def measure(self, ip: str) -> BandwidthResult:
        """Measure bandwidth or raise."""
        pass


class Iperf3Strategy(BandwidthStrategy):
    """Reverse (download) and forward (upload) iperf3 runs against the test server."""

    source = BandwidthSource.IPERF3

    def __init__(self, runner: CommandRunner, host: str, port: int = 5201, timeout: float = 15.0):
        self.runner = runner
        self.host = host
        self.port = port
        self.timeout = timeout

    async def measure(self, ip: str) -> BandwidthResult:
        base = f"iperf3 -c {self.host} -p {self.port} -J"
        download_output = await self.runner.exec(f"{base} -R", self.timeout)
        upload_output = await self.runner.exec(base, self.timeout)

        try:
            download = parse_iperf3_mbps(download_output)
            upload = parse_iperf3_mbps(upload_output)
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"iperf3 output for {ip}: {download_output[:200]!r}")
            raise ValueError(f"Failed to parse iperf3 output: {e}") from e

        return BandwidthResult(download=round(download, 2), upload=round(upload, 2), source=self.source)


class CurlDownloadStrategy(BandwidthStrategy):
    """Timed curl download inside the sandbox."""

    source = BandwidthSource.CURL_FALLBACK

    def __init__(self, runner: CommandRunner, url: str, timeout: float = 15.0):
        self.runner = runner
        self.url = url
        self.timeout = timeout

    async def measure(self, ip: str) -> BandwidthResult:
        output = await self.runner.exec(
            f"curl -o /dev/null -w '%{{speed_download}}' -s {self.url}", self.timeout
        )
        bytes_per_second = float(output.strip())
        if bytes_per_second <= 0:
            raise ValueError(f"No data downloaded from {self.url}")

        download = bytes_per_second * 8 / 1_000_000
        return BandwidthResult(
            download=round(download, 2),
            upload=round(download * ESTIMATED_UPLOAD_RATIO, 2),
            source=self.source,
        )


class AiohttpDownloadStrategy(BandwidthStrategy):
    """Timed HTTP download from this machine. Reported under the same tag as curl."""

    source = BandwidthSource.CURL_FALLBACK

    def __init__(self, url: str, timeout: float = 15.0, chunk_size: int = 64 * 1024):
        self.url = url
        self.timeout = timeout
        self.chunk_size = chunk_size

    async def measure(self, ip: str) -> BandwidthResult:
        total = 0
        start = time.monotonic()
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.url) as resp:
                resp.raise_for_status()
                async for chunk in resp.content.iter_chunked(self.chunk_size):
                    total += len(chunk)

        elapsed = time.monotonic() - start
        if total == 0 or elapsed <= 0:
            raise ValueError(f"No data downloaded from {self.url}")

        download = total * 8 / elapsed / 1_000_000
        return BandwidthResult(
            download=round(download, 2),
            upload=round(download * ESTIMATED_UPLOAD_RATIO, 2),
            source=self.source,
        )


class SimulatedStrategy(BandwidthStrategy):
    """Random filler values. Never fails."""

    source = BandwidthSource.SIMULATED

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def measure(self, ip: str) -> BandwidthResult:
        return BandwidthResult(
            download=round(self.rng.uniform(0, SIMULATED_MAX_DOWNLOAD), 2),
            upload=round(self.rng.uniform(0, SIMULATED_MAX_UPLOAD), 2),
            source=self.source,
        )


class BandwidthProbe:
    """Runs the strategy chain for one IP."""

    def __init__(self, strategies: Sequence[BandwidthStrategy]):
        self.strategies = list(strategies)

    async def measure(self, ip: str) -> BandwidthResult:
        for strategy in self.strategies:
            try:
                result = await strategy.measure(ip)
            except Exception as e:
                logger.warning(f"Bandwidth tier {strategy.source.value} failed for {ip}: {e}")
                continue

            logger.info(
                f"Bandwidth for {ip} via {result.source.value}: "
                f"down={result.download} Mbps, up={result.upload} Mbps"
            )
            return result

        logger.error(f"All bandwidth tiers failed for {ip}")
        return BandwidthResult(download=None, upload=None, source=BandwidthSource.FAILED)
