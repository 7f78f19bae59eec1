"""Remote bootstrap: prepare one instance over SSH and launch its agent.

Stages run in order on a single authenticated session:

1. connect, retried without bound until the SSH handshake succeeds
2. authenticate with the provider key pair, bounded retries
3. init script, once per instance lifetime (guarded by a remote marker file)
4. runtime check, installing from a pre-signed archive when missing
5. agent upload and launch on a long-lived session owned by the caller

Commands needing root are prefixed with the template's root-command-prefix
when the remote admin is not ``root``.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from paramiko.ssh_exception import SSHException

from .channel import AgentChannel, RemoteChannel, Session
from .config import Settings
from .errors import (
    AuthenticationExhausted,
    InitScriptFailure,
    InstanceNotFound,
    InterruptedOperation,
    RuntimeInstallFailure,
)
from .providers import PROVIDER_ERRORS, Provider
from .readiness import Sleeper, is_unassigned, resolve_host
from .types import UNASSIGNED_ADDRESS, BootstrapState, InstanceHandle
from .utils import log

INIT_SCRIPT_PATH = "/tmp/init.sh"

StateListener = Callable[[str, BootstrapState], None]


@dataclass
class ReusableSession:
    """Authentication succeeded and the session can carry the later stages."""

    session: Session


@dataclass
class NeedsFreshConnection:
    """Authentication succeeded but the session is gone; reconnect once."""

    reason: str


AuthResult = ReusableSession | NeedsFreshConnection


def build_command(handle: InstanceHandle, command: str) -> str:
    if handle.remote_admin != "root":
        return f"{handle.root_command_prefix} {command}"
    return command


class Bootstrapper:
    def __init__(
        self,
        channel: RemoteChannel,
        provider: Provider,
        settings: Settings | None = None,
        sleep: Sleeper = time.sleep,
        on_state: StateListener | None = None,
    ):
        self.channel = channel
        self.provider = provider
        self.settings = settings or Settings()
        self.sleep = sleep
        self.on_state = on_state
        self._key: str | None = None

    @property
    def key(self) -> str:
        if self._key is None:
            self._key = self.provider.get_key_material()
        return self._key

    def _transition(self, handle: InstanceHandle, state: BootstrapState) -> None:
        log(f"[{handle.instance_id}] {state.value}")
        if self.on_state is not None:
            self.on_state(handle.instance_id, state)

    def connect(self, handle: InstanceHandle) -> Session:
        """Connect to the instance, retrying until SSH comes up.

        Address propagation can take arbitrarily long, so there is no bound
        here; cancellation goes through the sleeper.
        """
        self._transition(handle, BootstrapState.CONNECTING)
        while True:
            try:
                self.provider.refresh_address(handle)
                host = resolve_host(handle)
                if is_unassigned(host):
                    log(
                        f"Invalid host '{host or UNASSIGNED_ADDRESS}', "
                        "your host is most likely waiting for an ip address."
                    )
                else:
                    return self.channel.connect(host, handle.ssh_port)
            except (SSHException, InstanceNotFound, *PROVIDER_ERRORS) as e:
                log(f"Connection to '{handle.instance_id}' failed: {e}")
            log(f"Waiting for SSH to come up. Sleeping {self.settings.connect_retry_delay}.")
            self.sleep(self.settings.connect_retry_delay)

    def authenticate(self, session: Session, handle: InstanceHandle) -> AuthResult:
        """:raises AuthenticationExhausted: after settings.auth_attempts failures"""
        self._transition(handle, BootstrapState.AUTHENTICATING)
        attempts = self.settings.auth_attempts
        for attempt in range(1, attempts + 1):
            log(f"Authenticating as {handle.remote_admin}")
            if self.channel.authenticate(session, handle.remote_admin, self.key):
                if self.channel.is_active(session):
                    return ReusableSession(session)
                return NeedsFreshConnection("session closed after authentication")
            if attempt < attempts:
                log("Authentication failed. Trying again...")
                self.sleep(self.settings.auth_retry_delay)
        log("Authentication failed")
        self.channel.close(session)
        self._transition(handle, BootstrapState.FAILED)
        raise AuthenticationExhausted(session.host, handle.remote_admin, attempts)

    def open_session(self, handle: InstanceHandle) -> Session:
        """Connect and authenticate, reconnecting once if the session was lost."""
        result = self.authenticate(self.connect(handle), handle)
        if isinstance(result, ReusableSession):
            return result.session

        log(f"Reconnecting to '{handle.instance_id}': {result.reason}")
        session = self.connect(handle)
        self._transition(handle, BootstrapState.AUTHENTICATING)
        if not self.channel.authenticate(session, handle.remote_admin, self.key):
            log("Authentication failed")
            self.channel.close(session)
            self._transition(handle, BootstrapState.FAILED)
            raise AuthenticationExhausted(session.host, handle.remote_admin, 1)
        return session

    def run_init_script(self, session: Session, handle: InstanceHandle) -> bool:
        """Run the init script unless the marker says it already ran.

        :return: True if the script was executed now
        :raises InitScriptFailure: on non-zero exit status
        """
        script = handle.init_script
        if not script or not script.strip():
            return False

        marker = self.settings.init_marker
        if self.channel.exec(session, f"test -e {marker}") == 0:
            log(f"Init script already ran on '{handle.instance_id}', skipping")
            self._transition(handle, BootstrapState.INIT_SCRIPT_DONE)
            return False

        self._transition(handle, BootstrapState.INIT_SCRIPT_PENDING)
        log("Executing init script")
        self.channel.upload(session, script.encode("utf-8"), INIT_SCRIPT_PATH, 0o700)

        # pty so that the remote side bundles stdout and stderr
        self._transition(handle, BootstrapState.INIT_SCRIPT_RUNNING)
        exit_code = self.channel.exec(
            session, build_command(handle, INIT_SCRIPT_PATH), pty=True
        )
        if exit_code != 0:
            log(f"init script failed: exit code={exit_code}")
            raise InitScriptFailure(handle.instance_id, exit_code)

        # sudo needs a tty
        self.channel.exec(session, build_command(handle, f"touch {marker}"), pty=True)
        self._transition(handle, BootstrapState.INIT_SCRIPT_DONE)
        return True

    def ensure_runtime(self, session: Session, handle: InstanceHandle) -> bool:
        """Install the runtime if the version check fails.

        :return: True if the runtime was installed now
        :raises RuntimeInstallFailure: naming the failed step
        """
        s = self.settings
        self._transition(handle, BootstrapState.RUNTIME_CHECK)
        log(f"Verifying that {s.runtime_executable} exists")
        if self.channel.exec(session, s.runtime_check) == 0:
            return False

        self._transition(handle, BootstrapState.RUNTIME_INSTALLING)
        log(f"Installing {s.runtime_name}")
        archive = f"/tmp/{s.runtime_name}.tgz"
        url = self.provider.signed_download_url(s.runtime_archive_path)
        steps = [
            ("download", f"wget -nv -O {archive} '{url}'"),
            ("extract", build_command(handle, f"tar xz -C /usr -f {archive}")),
            (
                "symlink",
                build_command(
                    handle,
                    f"ln -sf /usr/{s.runtime_name}/bin/{s.runtime_executable} "
                    f"/bin/{s.runtime_executable}",
                ),
            ),
        ]
        for step, command in steps:
            if self.channel.exec(session, command) != 0:
                log(f"Failed to {step} {s.runtime_name}")
                raise RuntimeInstallFailure(handle.instance_id, step)
        return True

    def launch_agent(
        self, session: Session, handle: InstanceHandle, agent: bytes
    ) -> AgentChannel:
        s = self.settings
        self._transition(handle, BootstrapState.AGENT_UPLOADING)
        log("Copying agent")
        self.channel.upload(session, agent, s.agent_remote_path, 0o644)

        command = " ".join(
            part
            for part in (s.runtime_executable, handle.runtime_options, "-jar", s.agent_remote_path)
            if part
        )
        log(f"Launching agent: {command}")
        agent_channel = self.channel.open_interactive_session(
            session, command, handle.instance_id
        )
        self._transition(handle, BootstrapState.AGENT_LAUNCHED)
        return agent_channel

    def run(self, handle: InstanceHandle, agent: bytes | None = None) -> AgentChannel | None:
        """Bootstrap one instance.

        Without an agent only the init script stage runs (and nothing connects
        if there is no script). The session is closed on every path except a
        successful agent launch, where the returned channel owns it.
        """
        if agent is None and not (handle.init_script and handle.init_script.strip()):
            log(f"No init script for '{handle.instance_id}', skipping bootstrap")
            return None

        session = self.open_session(handle)
        launched = False
        try:
            self.run_init_script(session, handle)
            if agent is None:
                return None
            self.ensure_runtime(session, handle)
            agent_channel = self.launch_agent(session, handle, agent)
            launched = True
            return agent_channel
        except InterruptedOperation:
            raise
        except Exception:
            self._transition(handle, BootstrapState.FAILED)
            raise
        finally:
            if not launched:
                self.channel.close(session)
