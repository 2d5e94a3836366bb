"""
Per-IP performance probes.
"""

from .bandwidth import (
    AiohttpDownloadStrategy,
    BandwidthProbe,
    BandwidthStrategy,
    CurlDownloadStrategy,
    Iperf3Strategy,
    SimulatedStrategy,
    parse_iperf3_mbps,
)
from .latency import LatencyProbe, parse_ping_output
from .suite import ProbeSuite
from .uptime import RemoteUptimeProbe, parse_uptime_output

__all__ = [
    "AiohttpDownloadStrategy",
    "BandwidthProbe",
    "BandwidthStrategy",
    "CurlDownloadStrategy",
    "Iperf3Strategy",
    "LatencyProbe",
    "ProbeSuite",
    "RemoteUptimeProbe",
    "SimulatedStrategy",
    "parse_iperf3_mbps",
    "parse_ping_output",
    "parse_uptime_output",
]
