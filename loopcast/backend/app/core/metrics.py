"""
Loopcast Prometheus metrics, exposed under /metrics by app.main.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge

ENCODER_STARTS = Counter(
    "loopcast_encoder_starts_total",
    "Encoder processes spawned",
)
ENCODER_EXITS = Counter(
    "loopcast_encoder_exits_total",
    "Encoder processes that ended",
    ["outcome"],  # clean | failed | stopped | launch_error
)
ENCODER_DIAGNOSTICS = Counter(
    "loopcast_encoder_diagnostics_total",
    "Advisory diagnostics recognised in encoder output",
    ["kind"],
)
LOOP_ADVANCES = Counter(
    "loopcast_loop_advances_total",
    "Playlist loop advances to the next item",
)
STREAM_LIVE = Gauge(
    "loopcast_stream_live",
    "1 while the stream status record reads live",
)
