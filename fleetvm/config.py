"""Settings and template file loading."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

from .types import InstanceTemplate, Tag
from .utils import error, get_ssh_user, log

OnTimeout = Literal["proceed", "abort"]

READY_TIMEOUT = 600
POLL_INTERVAL = 5
CONNECT_RETRY_DELAY = 5
AUTH_ATTEMPTS = 20
AUTH_RETRY_DELAY = 10
SIDE_CHANNEL_PORT = 40000
INIT_MARKER = "~/.fleetvm-run-init"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        error(f"{name} must be an integer, got '{value}'")


@dataclass
class Settings:
    """Process-wide configuration, read-only once provisioning starts."""

    aws_profile: str | None = None
    region: str | None = None
    ssh_key_path: str | None = None
    runtime_bucket: str = "fleetvm-runtime"
    ready_timeout: float = READY_TIMEOUT
    poll_interval: float = POLL_INTERVAL
    max_workers: int = 8
    on_timeout: OnTimeout = "proceed"
    all_or_nothing: bool = False
    cleanup_terminate: bool = False
    side_channel_port: int = SIDE_CHANNEL_PORT
    connect_retry_delay: float = CONNECT_RETRY_DELAY
    auth_attempts: int = AUTH_ATTEMPTS
    auth_retry_delay: float = AUTH_RETRY_DELAY
    init_marker: str = INIT_MARKER
    runtime_check: str = "java -fullversion"
    runtime_name: str = "jdk-17"
    runtime_executable: str = "java"
    runtime_archive_dir: str = "jdk/linux-x64"
    agent_remote_path: str = "/tmp/agent.jar"

    @property
    def runtime_archive_path(self) -> str:
        return f"/{self.runtime_bucket}/{self.runtime_archive_dir}/{self.runtime_name}.tgz"

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "Settings":
        """Load settings from environment variables (and a .env file if present)."""
        if env_file:
            load_dotenv(env_file, override=True)
        else:
            load_dotenv()

        on_timeout = os.getenv("FLEETVM_ON_TIMEOUT", "proceed").lower()
        if on_timeout not in ("proceed", "abort"):
            error(f"FLEETVM_ON_TIMEOUT must be 'proceed' or 'abort', got '{on_timeout}'")

        defaults = cls()
        return cls(
            aws_profile=os.getenv("AWS_PROFILE"),
            region=os.getenv("AWS_REGION"),
            ssh_key_path=os.getenv("FLEETVM_SSH_KEY_PATH"),
            runtime_bucket=os.getenv("FLEETVM_RUNTIME_BUCKET", defaults.runtime_bucket),
            ready_timeout=_env_int("FLEETVM_READY_TIMEOUT", READY_TIMEOUT),
            poll_interval=_env_int("FLEETVM_POLL_INTERVAL", POLL_INTERVAL),
            max_workers=_env_int("FLEETVM_MAX_WORKERS", defaults.max_workers),
            on_timeout=on_timeout,
            all_or_nothing=_env_bool("FLEETVM_ALL_OR_NOTHING"),
            cleanup_terminate=_env_bool("FLEETVM_CLEANUP_TERMINATE"),
            side_channel_port=_env_int("FLEETVM_SIDE_CHANNEL_PORT", SIDE_CHANNEL_PORT),
            runtime_name=os.getenv("FLEETVM_RUNTIME_NAME", defaults.runtime_name),
            runtime_archive_dir=os.getenv(
                "FLEETVM_RUNTIME_ARCHIVE_DIR", defaults.runtime_archive_dir
            ),
        )


def _parse_tags(raw) -> tuple[Tag, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        return tuple(Tag(str(k), str(v)) for k, v in raw.items())
    return tuple(Tag(str(t["name"]), str(t.get("value", ""))) for t in raw)


def parse_template(item: dict) -> InstanceTemplate:
    """Build an InstanceTemplate from one JSON template object.

    :param item: Template dict; ``image`` is required, everything else optional
    :return: Frozen template
    """
    if "image" not in item:
        error(f"Template is missing 'image': {item}")

    remote_admin = item.get("remote_admin") or get_ssh_user(item.get("image_family", ""))
    return InstanceTemplate(
        image=item["image"],
        instance_type=item.get("instance_type", "t3.micro"),
        tags=_parse_tags(item.get("tags")),
        remote_admin=remote_admin,
        root_command_prefix=item.get("root_command_prefix", "sudo"),
        runtime_options=item.get("runtime_options"),
        init_script=item.get("init_script"),
        private_dns=item.get("private_dns"),
        ssh_port=int(item.get("ssh_port", 22)),
        use_private_address=bool(item.get("use_private_address", False)),
        key_name=item.get("key_name"),
        security_group_ids=tuple(item.get("security_group_ids", ())),
        subnet_id=item.get("subnet_id"),
        zone=item.get("zone"),
        description=item.get("description", ""),
    )


def load_templates(path: str | Path) -> list[InstanceTemplate]:
    """Load templates from a JSON file.

    Accepts a list of template objects or ``{"templates": [...]}``. An
    ``init_script_file`` entry is read relative to the templates file.

    :param path: Path to the JSON file
    :return: Templates in file order
    """
    path = Path(path)
    if not path.exists():
        error(f"Templates file not found: '{path}'")
    data = json.loads(path.read_text())
    items = data.get("templates", []) if isinstance(data, dict) else data

    templates = []
    for item in items:
        script_file = item.pop("init_script_file", None)
        if script_file:
            item["init_script"] = (path.parent / script_file).read_text()
        templates.append(parse_template(item))
    log(f"Loaded {len(templates)} template(s) from '{path}'")
    return templates
