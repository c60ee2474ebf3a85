"""Supervisor — the API backend process and the proxy in front of it."""

from perch.supervisor.probe import HttpProbe, TcpProbe
from perch.supervisor.process import ProcessState, SubprocessLauncher, SupervisedProcess
from perch.supervisor.proxy import ApiProxy
from perch.supervisor.supervisor import ApiSupervisor

__all__ = [
    "ApiProxy",
    "ApiSupervisor",
    "HttpProbe",
    "ProcessState",
    "SubprocessLauncher",
    "SupervisedProcess",
    "TcpProbe",
]
