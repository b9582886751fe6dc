"""Node-local PTP daemon: process supervision, clock state and telemetry."""

__version__ = "0.1.0"
