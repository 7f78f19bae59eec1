"""Result variables published after a successful batch."""

import json
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values, set_key

from .types import InstanceHandle
from .utils import log

MISSING = "-"


class ResultVariables(dict[str, str]):
    """String-keyed variables exposed to downstream consumers.

    Every assignment goes through :meth:`add`, which logs the resolved value
    and records ``None`` as an empty string rather than dropping the key.
    """

    def add(self, name: str, value: str | None) -> None:
        if value is None:
            log(f"{name} was {value}. Setting to empty string.")
            value = ""
        log(f"'{name}' => '{value}'")
        self[name] = value

    def save_json(self, path: str | Path) -> None:
        Path(path).write_text(json.dumps(self, indent=2))
        log(f"Saved {len(self)} variables to '{path}'")

    def save_dotenv(self, path: str | Path) -> None:
        """Write variables in dotenv format, keeping unrelated keys in the file."""
        path = Path(path)
        path.touch(exist_ok=True)
        for name, value in self.items():
            set_key(str(path), _dotenv_name(name), value, quote_mode="always")
        log(f"Saved {len(self)} variables to '{path}'")

    @classmethod
    def load(cls, path: str | Path) -> "ResultVariables":
        path = Path(path)
        if path.suffix == ".json":
            data = json.loads(path.read_text())
        else:
            data = {k: v or "" for k, v in dotenv_values(path).items()}
        result = cls()
        result.update(data)
        return result


def _dotenv_name(name: str) -> str:
    return name.replace("-", "_")


def _value_or_none(value: str) -> str | None:
    return value if value else None


def collect_variables(handles: Iterable[InstanceHandle]) -> ResultVariables:
    """Build aggregate and per-instance variables from address-ready handles.

    Aggregates (``instances``, ``publicDns``, ``privateDns``) are space-joined
    in creation order, one item per instance, so splitting on whitespace keeps
    positions aligned with ``instances``. A missing address is written as
    ``-`` there. Per-instance entries are keyed ``<id>_<field>`` and keep the
    empty string.
    """
    handles = list(handles)
    result = ResultVariables()
    result.add("instances", " ".join(h.instance_id for h in handles))
    result.add("publicDns", " ".join(h.public_address or MISSING for h in handles))
    result.add("privateDns", " ".join(h.private_address or MISSING for h in handles))
    for h in handles:
        result.add(f"{h.instance_id}_publicDns", _value_or_none(h.public_address))
        result.add(f"{h.instance_id}_privateDns", _value_or_none(h.private_address))
        result.add(f"{h.instance_id}_runtimeOptions", _value_or_none(h.runtime_options))
        result.add(f"{h.instance_id}_remoteAdmin", _value_or_none(h.remote_admin))
    return result
