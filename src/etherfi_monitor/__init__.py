"""Persistence layer for ether.fi on-chain metrics and AI-flagged anomalies."""

__version__ = "0.1.0"
