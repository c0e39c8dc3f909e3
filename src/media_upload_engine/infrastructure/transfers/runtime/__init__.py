"""Runtime primitives shared by transfer tasks."""

from media_upload_engine.infrastructure.transfers.runtime.bandwidth_throttle import (
    BYTES_PER_MB,
    BandwidthThrottle,
    mbps_to_bytes_per_second,
)
from media_upload_engine.infrastructure.transfers.runtime.throughput_meter import ThroughputMeter

__all__ = ["BYTES_PER_MB", "BandwidthThrottle", "ThroughputMeter", "mbps_to_bytes_per_second"]
