"""Feedback sources."""

from .auth import AppStoreConnectAuth
from .base import Source
from .testflight import TestFlightSource, crash_resource_to_record, screenshot_resource_to_record

__all__ = [
    "AppStoreConnectAuth",
    "Source",
    "TestFlightSource",
    "crash_resource_to_record",
    "screenshot_resource_to_record",
]
