"""Server — the ASGI application and its pounce runners."""

from perch.server.app import DevServer
from perch.server.runner import run_dev_server, run_production_server

__all__ = ["DevServer", "run_dev_server", "run_production_server"]
