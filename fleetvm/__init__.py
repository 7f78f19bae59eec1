"""fleetvm - provision, bootstrap and tear down ephemeral instance fleets."""

from .bootstrap import Bootstrapper, NeedsFreshConnection, ReusableSession
from .channel import AgentChannel, RemoteChannel, Session, SSHChannel
from .config import Settings, load_templates
from .environment import Environment
from .errors import (
    AuthenticationExhausted,
    CreationError,
    FleetError,
    InitScriptFailure,
    InstanceNotFound,
    InterruptedOperation,
    ReadinessTimeout,
    RuntimeInstallFailure,
    SideChannelError,
)
from .orchestrator import Provisioner, provision, replica_count
from .providers import AWSProvider, Provider, get_provider
from .readiness import wait_until_ready
from .teardown import parse_instance_ids, teardown
from .types import BootstrapState, InstanceHandle, InstanceTemplate, Tag
from .utils import error, log, warn
from .variables import ResultVariables

__all__ = [
    "AWSProvider",
    "AgentChannel",
    "AuthenticationExhausted",
    "BootstrapState",
    "Bootstrapper",
    "CreationError",
    "Environment",
    "FleetError",
    "InitScriptFailure",
    "InstanceHandle",
    "InstanceNotFound",
    "InstanceTemplate",
    "InterruptedOperation",
    "NeedsFreshConnection",
    "Provider",
    "Provisioner",
    "ReadinessTimeout",
    "RemoteChannel",
    "ResultVariables",
    "ReusableSession",
    "RuntimeInstallFailure",
    "SSHChannel",
    "Session",
    "Settings",
    "SideChannelError",
    "Tag",
    "error",
    "get_provider",
    "load_templates",
    "log",
    "parse_instance_ids",
    "provision",
    "replica_count",
    "teardown",
    "wait_until_ready",
    "warn",
]
