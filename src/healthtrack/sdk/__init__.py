"""Client-side tracking pipeline."""

from healthtrack.sdk.client import HealthTrack
from healthtrack.sdk.client import expose
from healthtrack.sdk.transport import EventTransport

__all__ = ["EventTransport", "HealthTrack", "expose"]
