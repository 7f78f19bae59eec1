"""Stop or terminate instances, best effort and idempotent."""

from collections.abc import Iterable
from typing import Literal

from .errors import InstanceNotFound
from .providers import Provider
from .utils import log, warn

Outcome = Literal["stopped", "terminated", "missing", "failed"]


def parse_instance_ids(text: str | None) -> list[str]:
    """Split a whitespace-delimited id list, dropping empty items."""
    return (text or "").split()


def teardown(
    provider: Provider, instance_ids: Iterable[str], hard_terminate: bool = False
) -> dict[str, Outcome]:
    """Stop (or terminate) every instance in the list.

    Instances the provider no longer knows are skipped; any other failure is
    logged and the remaining ids are still processed. Never raises for a
    per-instance failure, so running it twice over the same ids is safe.

    :param provider: Provider client
    :param instance_ids: Instance ids to tear down
    :param hard_terminate: Terminate (irreversible) instead of stop
    :return: instance_id -> outcome
    """
    action = "terminate" if hard_terminate else "stop"
    outcomes: dict[str, Outcome] = {}
    for instance_id in instance_ids:
        if not instance_id:
            continue
        log(f"{'Terminating' if hard_terminate else 'Stopping'} '{instance_id}'")
        try:
            if hard_terminate:
                provider.terminate(instance_id)
                outcomes[instance_id] = "terminated"
            else:
                provider.stop(instance_id)
                outcomes[instance_id] = "stopped"
        except InstanceNotFound:
            log(f"'{instance_id}' already gone, nothing to {action}")
            outcomes[instance_id] = "missing"
        except Exception as e:
            warn(f"Failed to {action} '{instance_id}': {e}")
            outcomes[instance_id] = "failed"
    return outcomes
