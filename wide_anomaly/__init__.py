"""
Wide Anomaly Engine.

A long-running service that watches metric series derived from wide-event
data and raises incidents when they behave abnormally.

This package provides:
- Data models for series, samples, baselines, scores, and incidents
- A query client for the wide-event query service
- The statistical baseline detector and the incident state machine
- The evaluation scheduler and notification dispatcher
- Configuration management and engine state storage
"""

__version__ = "0.1.0"
