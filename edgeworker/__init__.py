"""Parts of an edge-device worker: configuration, heartbeats, hardware, data sync and playbook events."""

__version__ = "0.1.0"