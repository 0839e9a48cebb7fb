"""
Client-side call session adapter.
"""
from feedrelay.client.calls import CallClient, CallError, CallEvent, LocalCall, MediaNegotiator

__all__ = ["CallClient", "CallError", "CallEvent", "LocalCall", "MediaNegotiator"]
