"""HealthTrack — PHI-safe marketing analytics gateway.

Client SDK pipeline, PHI scrubbing, consent resolution, ingestion server and
server-side platform forwarders.
"""

__version__ = "1.0.0"
