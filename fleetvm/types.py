"""Type definitions for fleetvm."""

import enum
from dataclasses import dataclass, field
from typing import TypedDict

from .environment import Environment

UNASSIGNED_ADDRESS = "0.0.0.0"


@dataclass(frozen=True)
class Tag:
    """Name/value tag applied to every instance created from a template."""

    name: str
    value: str


@dataclass(frozen=True)
class InstanceTemplate:
    """Immutable provisioning recipe, instantiated into one or more instances."""

    image: str
    instance_type: str = "t3.micro"
    tags: tuple[Tag, ...] = ()
    remote_admin: str = "root"
    root_command_prefix: str = "sudo"
    runtime_options: str | None = None
    init_script: str | None = None
    private_dns: str | None = None
    ssh_port: int = 22
    use_private_address: bool = False
    key_name: str | None = None
    security_group_ids: tuple[str, ...] = ()
    subnet_id: str | None = None
    zone: str | None = None
    description: str = ""


@dataclass
class InstanceHandle:
    """One provisioned instance.

    Address fields start empty and are filled in by the provider's
    ``refresh_address`` as the cloud assigns them.
    """

    instance_id: str
    public_address: str = ""
    private_address: str = ""
    private_ip: str = ""
    vpc_id: str = ""
    ssh_port: int = 22
    remote_admin: str = "root"
    root_command_prefix: str = "sudo"
    init_script: str = ""
    runtime_options: str = ""
    use_private_address: bool = False


class InstanceInfo(TypedDict, total=False):
    """Live instance state as reported by the provider."""

    id: str
    state: str
    public_dns: str
    public_ip: str
    private_dns: str
    private_ip: str
    vpc_id: str


class BootstrapState(enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    INIT_SCRIPT_PENDING = "init-script-pending"
    INIT_SCRIPT_RUNNING = "init-script-running"
    INIT_SCRIPT_DONE = "init-script-done"
    RUNTIME_CHECK = "runtime-check"
    RUNTIME_INSTALLING = "runtime-installing"
    AGENT_UPLOADING = "agent-uploading"
    AGENT_LAUNCHED = "agent-launched"
    FAILED = "failed"


@dataclass
class InstanceRecord:
    """Per-instance state for one provisioning batch."""

    handle: InstanceHandle
    template: InstanceTemplate
    cloud_number: int
    env: Environment | None = None
    state: BootstrapState | None = None
    has_address: bool = False
    ssh_ready: bool = False
    error: Exception | None = None
    history: list[BootstrapState] = field(default_factory=list)

    @property
    def instance_id(self) -> str:
        return self.handle.instance_id

    @property
    def eligible(self) -> bool:
        return self.error is None
