"""Shotline background job system: queues, workers and the caption pipeline."""

__version__ = "0.1.0"
