"""Bounded polling until instances satisfy a readiness predicate."""

import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from .channel import RemoteChannel
from .config import POLL_INTERVAL, READY_TIMEOUT
from .errors import InstanceNotFound, InterruptedOperation, ReadinessTimeout
from .providers import PROVIDER_ERRORS, Provider
from .types import UNASSIGNED_ADDRESS, InstanceHandle
from .utils import log, warn

T = TypeVar("T")
R = TypeVar("R")

Predicate = Callable[[InstanceHandle], bool]
Refresh = Callable[[InstanceHandle], None]
Sleeper = Callable[[float], None]


def cancellable_sleep(cancel: threading.Event | None) -> Sleeper:
    """Return a sleep function that raises InterruptedOperation once cancelled."""

    def sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise InterruptedOperation()

    return sleep


def run_concurrently(
    items: Sequence[T], fn: Callable[[T], R], max_workers: int = 8
) -> list[R]:
    """Apply fn to every item on a thread pool, results in item order.

    The first exception (in item order) is re-raised. The pool is not
    joined on the way out, so an interrupted caller is not blocked by
    workers still sleeping.
    """
    if not items:
        return []
    pool = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items))))
    try:
        futures = [pool.submit(fn, item) for item in items]
        return [f.result() for f in futures]
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def has_address(handle: InstanceHandle) -> bool:
    return bool(handle.public_address)


def resolve_host(handle: InstanceHandle) -> str:
    """Address to SSH to.

    Private DNS (or IP) when the template asks for it, private IP for a VPC
    instance without a public address, public address otherwise.
    """
    if handle.use_private_address:
        return handle.private_address or handle.private_ip
    if handle.vpc_id and not handle.public_address:
        return handle.private_ip
    return handle.public_address


def is_unassigned(host: str) -> bool:
    return not host or host == UNASSIGNED_ADDRESS


def ssh_reachable(channel: RemoteChannel) -> Predicate:
    """Predicate: a TCP+SSH handshake to the instance succeeds."""

    def predicate(handle: InstanceHandle) -> bool:
        host = resolve_host(handle)
        if is_unassigned(host):
            return False
        try:
            channel.probe(host, handle.ssh_port)
        except Exception as e:
            log(f"SSH not ready yet on '{host}:{handle.ssh_port}' ({type(e).__name__})")
            return False
        log(
            f"{handle.instance_id} is up and ready for action: "
            f"{host}:{handle.ssh_port}"
        )
        return True

    return predicate


def provider_refresh(provider: Provider) -> Refresh:
    """Refresh addresses from the provider.

    Not-yet-visible instances and transient API errors are logged and left to
    the next poll.
    """

    def refresh(handle: InstanceHandle) -> None:
        try:
            provider.refresh_address(handle)
        except InstanceNotFound:
            log(f"'{handle.instance_id}' not visible to the provider yet")
        except PROVIDER_ERRORS as e:
            warn(f"Refreshing '{handle.instance_id}' failed, retrying: {e}")

    return refresh


def wait_until_ready(
    handles: Iterable[InstanceHandle],
    predicate: Predicate,
    refresh: Refresh | None = None,
    *,
    label: str,
    timeout: float = READY_TIMEOUT,
    poll_interval: float = POLL_INTERVAL,
    sleep: Sleeper = time.sleep,
    max_workers: int = 8,
) -> dict[str, bool]:
    """Poll each instance until predicate holds or its own timeout is reached.

    :param handles: Instances to wait for
    :param predicate: Readiness condition, checked before every refresh
    :param refresh: Re-fetch live state between checks (optional)
    :param label: What is being waited for, used in log lines
    :param timeout: Per-instance bound in seconds
    :param poll_interval: Sleep between checks in seconds
    :param sleep: Sleep function (cancellation-aware in the orchestrator)
    :param max_workers: Instances polled concurrently
    :return: instance_id -> True if ready, False if the bound was reached
    """
    handles = list(handles)
    log(f"Waiting for {label} on {len(handles)} instance(s).")

    def wait_one(handle: InstanceHandle) -> bool:
        waited = 0.0
        while waited < timeout:
            if predicate(handle):
                return True
            if refresh is not None:
                refresh(handle)
            log(f"Waiting for {label} on '{handle.instance_id}'. Sleeping {poll_interval}.")
            sleep(poll_interval)
            waited += poll_interval
        if predicate(handle):
            return True
        warn(f"Gave up waiting for {label} on '{handle.instance_id}' after {timeout}s")
        return False

    results = run_concurrently(handles, wait_one, max_workers=max_workers)
    return {h.instance_id: ok for h, ok in zip(handles, results)}


def require_ready(outcomes: dict[str, bool], label: str) -> None:
    """:raises ReadinessTimeout: if any instance did not become ready"""
    timed_out = [iid for iid, ok in outcomes.items() if not ok]
    if timed_out:
        raise ReadinessTimeout(label, timed_out)
