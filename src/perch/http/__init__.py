"""HTTP primitives — immutable request, response, and headers."""

from perch.http.headers import Headers
from perch.http.request import Request
from perch.http.response import RawResponse, Response

__all__ = ["Headers", "RawResponse", "Request", "Response"]
