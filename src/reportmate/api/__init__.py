"""
Collection API client.

This module provides the TransmissionClient that checks backend health and
delivers aggregated payloads, and the response decoder it uses.
"""

from .client import EVENTS_PATH, HEALTH_PATH, TransmissionClient, decode_response

__all__ = [
    "EVENTS_PATH",
    "HEALTH_PATH",
    "TransmissionClient",
    "decode_response",
]
