"""Dual-path assistant orchestration: fast replies plus a durable background job queue."""

__version__ = "0.1.0"
