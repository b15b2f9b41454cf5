"""Job scheduling core for a distributed compile cluster: servers, job queues, statistics and control commands."""

__version__ = "0.1.0"