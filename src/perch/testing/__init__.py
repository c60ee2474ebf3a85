"""Test utilities for perch projects.

Provides an ASGI test client that also collects live-update streams::

    from perch.testing import TestClient
"""

from perch.testing.client import SSETestResult, TestClient

__all__ = ["SSETestResult", "TestClient"]
