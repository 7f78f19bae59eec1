"""Provision a batch of instances from templates and bring them to readiness.

Pipeline for one ``provision`` call:

    create (sequential, fail-fast) -> wait for address -> publish variables
    -> wait for SSH -> init scripts -> private address side channel
    -> agents (optional)

Creation stops at the first error and the instances created so far are torn
down. Any later error tears down the whole batch before propagating.
Interruption leaves the batch running and reports its instance ids.
"""

import itertools
import socket
import threading
from collections.abc import Sequence

from .bootstrap import Bootstrapper
from .channel import AgentChannel, RemoteChannel, SSHChannel
from .config import Settings
from .environment import Environment
from .errors import CreationError, InterruptedOperation, ReadinessTimeout, SideChannelError
from .providers import Provider
from .readiness import (
    cancellable_sleep,
    has_address,
    provider_refresh,
    require_ready,
    run_concurrently,
    ssh_reachable,
    wait_until_ready,
)
from .teardown import teardown
from .types import BootstrapState, InstanceRecord, InstanceTemplate
from .utils import log, logger, warn
from .variables import ResultVariables, collect_variables

SIDE_CHANNEL_TIMEOUT = 30


class CloudNumbers:
    """Batch-wide CLOUD_NUMBER allocator, safe to share between threads."""

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)


def replica_count(template: InstanceTemplate, env: Environment | None = None) -> int:
    """Number of instances to create from a template.

    Taken from a tag named ``count`` (any case). Non-numeric and non-positive
    values are ignored. Always 1 or more.
    """
    count = 1
    for tag in template.tags:
        if tag.name.lower() != "count":
            continue
        value = env.expand(tag.value) if env is not None else tag.value
        log(f"Found '{tag.name}' going to make {value} instances of image.")
        try:
            parsed = int(value.strip())
        except ValueError:
            log(f"'{tag.name}' must be a valid integer to use it to define how many instances to create.")
            continue
        if parsed < 1:
            log(f"'{tag.name}' must be positive, got {parsed}. Using {count}.")
            continue
        count = parsed
    return max(count, 1)


def publish_private_address(host: str, value: str, port: int, timeout: float = SIDE_CHANNEL_TIMEOUT) -> None:
    """Send value plus newline to a listener on the instance."""
    log(f"Connecting to {host}")
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(f"{value}\n".encode("utf-8"))
    except OSError as e:
        raise SideChannelError(f"Could not publish private address to '{host}:{port}': {e}") from e


class Provisioner:
    """Runs provisioning batches against one provider.

    ``cancel()`` (or setting ``cancel_event`` from another thread) interrupts
    any wait in progress; ``provision`` then raises InterruptedOperation.
    """

    def __init__(
        self,
        provider: Provider,
        channel: RemoteChannel | None = None,
        settings: Settings | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.provider = provider
        self.channel = channel or SSHChannel()
        self.settings = settings or Settings()
        self.cancel_event = cancel_event or threading.Event()
        self.sleep = cancellable_sleep(self.cancel_event)
        self.batch: dict[str, InstanceRecord] = {}
        self.channels: dict[str, AgentChannel] = {}
        self.variables: ResultVariables | None = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def instance_ids(self) -> list[str]:
        return list(self.batch)

    def _eligible(self) -> list[InstanceRecord]:
        return [r for r in self.batch.values() if r.eligible]

    def _interrupted(self) -> InterruptedOperation:
        self.cancel_event.set()
        warn(f"Interrupted. Instances left running: {' '.join(self.instance_ids) or '(none)'}")
        return InterruptedOperation(self.instance_ids)

    def provision(
        self,
        templates: Sequence[InstanceTemplate],
        env: Environment | None = None,
        agent: bytes | None = None,
    ) -> ResultVariables:
        """Create, wait for and bootstrap every instance the templates describe.

        :param templates: Templates, each expanded into its replica count
        :param env: Environment for placeholder expansion (default: os.environ)
        :param agent: Agent artifact to install and launch on every instance
        :return: Result variables for the batch
        :raises CreationError: creation failed; created instances were cleaned up
        :raises InterruptedOperation: cancelled; instances were left running
        """
        env = env if env is not None else Environment()
        self.cancel_event.clear()
        self.batch = {}
        self.channels = {}
        self.variables = None

        try:
            self._create_batch(templates, env)
        except KeyboardInterrupt as e:
            raise self._interrupted() from e

        try:
            self._wait_for_addresses()
            log("Adding variables to the environment")
            self.variables = collect_variables(r.handle for r in self.batch.values())
            self._wait_for_ssh()
            self._bootstrap()
            self._publish_private_dns()
            if agent is not None:
                self._launch_agents(agent)
        except (InterruptedOperation, KeyboardInterrupt) as e:
            raise self._interrupted() from e
        except Exception as e:
            self.cancel_event.set()
            logger.error(f"Provisioning failed: {e}. Tearing down {len(self.batch)} instance(s).")
            self._cleanup()
            raise

        self._log_summary()
        return self.variables

    def _create_batch(self, templates: Sequence[InstanceTemplate], env: Environment) -> None:
        numbers = CloudNumbers()
        for template in templates:
            for _ in range(replica_count(template, env)):
                number = numbers.next()
                replica_env = env.derive(CLOUD_NUMBER=str(number))
                try:
                    handles = self.provider.create_instances(template, replica_env, count=1)
                except (InterruptedOperation, KeyboardInterrupt):
                    raise
                except Exception as e:
                    logger.error(f"Failed to start a machine: {e}. Attempting to clean up.")
                    created = self.instance_ids
                    teardown(self.provider, created, hard_terminate=self.settings.cleanup_terminate)
                    raise CreationError(
                        f"Failed to create instance {number} from '{template.image}': {e}",
                        cleaned_up=created,
                    ) from e
                for handle in handles:
                    self.batch[handle.instance_id] = InstanceRecord(
                        handle=handle, template=template, cloud_number=number, env=replica_env
                    )
                    log(f"Created machine {handle.instance_id} (CLOUD_NUMBER={number})")

    def _apply_outcomes(self, records: list[InstanceRecord], outcomes: dict[str, bool], label: str) -> None:
        if self.settings.on_timeout == "abort":
            require_ready(outcomes, label)
        for record in records:
            if not outcomes[record.instance_id]:
                record.error = ReadinessTimeout(label, [record.instance_id])
                warn(f"Excluding '{record.instance_id}' from later stages: no {label}")

    def _wait_for_addresses(self) -> None:
        log("Waiting for all machines to acquire an address.")
        records = self._eligible()
        outcomes = wait_until_ready(
            [r.handle for r in records],
            has_address,
            provider_refresh(self.provider),
            label="address",
            timeout=self.settings.ready_timeout,
            poll_interval=self.settings.poll_interval,
            sleep=self.sleep,
            max_workers=self.settings.max_workers,
        )
        for record in records:
            record.has_address = outcomes[record.instance_id]
            if record.has_address:
                log(f"Machine acquired address: {record.instance_id}")
                log(f"\t- public dns: {record.handle.public_address}")
                log(f"\t- private dns: {record.handle.private_address}")
        self._apply_outcomes(records, outcomes, "address")

    def _wait_for_ssh(self) -> None:
        log("Waiting for SSH to come up on all machines.")
        records = self._eligible()
        outcomes = wait_until_ready(
            [r.handle for r in records],
            ssh_reachable(self.channel),
            provider_refresh(self.provider),
            label="ssh",
            timeout=self.settings.ready_timeout,
            poll_interval=self.settings.poll_interval,
            sleep=self.sleep,
            max_workers=self.settings.max_workers,
        )
        for record in records:
            record.ssh_ready = outcomes[record.instance_id]
        self._apply_outcomes(records, outcomes, "ssh")

    def _record_state(self, instance_id: str, state: BootstrapState) -> None:
        record = self.batch.get(instance_id)
        if record is not None:
            record.state = state
            record.history.append(state)

    def _bootstrapper(self) -> Bootstrapper:
        return Bootstrapper(
            self.channel,
            self.provider,
            self.settings,
            sleep=self.sleep,
            on_state=self._record_state,
        )

    def _run_stage(self, agent: bytes | None) -> dict[str, AgentChannel]:
        bootstrapper = self._bootstrapper()

        def run_one(record: InstanceRecord) -> AgentChannel | None:
            try:
                return bootstrapper.run(record.handle, agent)
            except InterruptedOperation:
                raise
            except Exception as e:
                record.error = e
                record.state = BootstrapState.FAILED
                warn(f"Bootstrap failed on '{record.instance_id}': {e}")
                if self.settings.all_or_nothing:
                    raise
                return None

        records = self._eligible()
        results = run_concurrently(records, run_one, max_workers=self.settings.max_workers)
        return {r.instance_id: ch for r, ch in zip(records, results) if ch is not None}

    def _bootstrap(self) -> None:
        log("Running init scripts.")
        self._run_stage(agent=None)

    def _launch_agents(self, agent: bytes) -> None:
        log("Launching agents.")
        for instance_id, agent_channel in self._run_stage(agent).items():
            agent_channel.add_close_listener(
                lambda ch: log(f"Agent channel for '{ch.instance_id}' closed")
            )
            self.channels[instance_id] = agent_channel

    def _publish_private_dns(self) -> None:
        for record in self._eligible():
            template_value = record.template.private_dns
            if template_value is None:
                continue
            env = (record.env or Environment()).derive(**(self.variables or {}))
            value = env.expand(template_value)
            if value and value != template_value:
                publish_private_address(
                    record.handle.public_address, value, self.settings.side_channel_port
                )
            else:
                log(f"privateDns was '{value}'")

    def _cleanup(self) -> None:
        for agent_channel in self.channels.values():
            agent_channel.close()
        teardown(self.provider, self.instance_ids, hard_terminate=self.settings.cleanup_terminate)

    def _log_summary(self) -> None:
        failed = [r.instance_id for r in self.batch.values() if not r.eligible]
        log(f"Provisioned {len(self.batch) - len(failed)}/{len(self.batch)} instance(s)")
        for instance_id in failed:
            warn(f"'{instance_id}' not ready: {self.batch[instance_id].error}")


def provision(
    provider: Provider,
    templates: Sequence[InstanceTemplate],
    env: Environment | None = None,
    *,
    channel: RemoteChannel | None = None,
    settings: Settings | None = None,
    agent: bytes | None = None,
) -> ResultVariables:
    """Provision one batch. See :class:`Provisioner` for the pipeline."""
    return Provisioner(provider, channel, settings).provision(templates, env, agent)
