#!/usr/bin/env python3
"""Provision and tear down ephemeral instance fleets.

Usage: uv run fleetvm <command> [options]

Examples:
    uv run fleetvm up templates.json
    uv run fleetvm up templates.json --agent agent.jar --dotenv-file fleet.env
    uv run fleetvm status "i-0abc i-0def"
    uv run fleetvm down '$instances' --vars-file fleet.vars.json --terminate
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Annotated

import cyclopts
from cyclopts import Parameter
from rich import print

from .channel import AgentChannel
from .config import Settings, load_templates
from .environment import Environment
from .errors import FleetError, InstanceNotFound, InterruptedOperation
from .orchestrator import Provisioner
from .providers import get_provider
from .teardown import parse_instance_ids, teardown
from .utils import error, log, setup_logging, warn
from .variables import ResultVariables

app = cyclopts.App(
    name="fleetvm", help="Provision and tear down ephemeral instance fleets", sort_key=None
)


@app.meta.default
def launcher(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    verbose: bool = False,
):
    """Provision and tear down ephemeral instance fleets.

    :param verbose: Enable debug logging
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    app(tokens)


def _provider(settings: Settings, region: str | None, aws_profile: str | None):
    return get_provider(
        region=region or settings.region,
        aws_profile=aws_profile or settings.aws_profile,
        ssh_key_path=settings.ssh_key_path,
    )


def _pump(agent_channel: AgentChannel) -> None:
    """Log agent output until the remote side closes the stream."""
    try:
        for line in agent_channel.stdout:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                log(f"[{agent_channel.instance_id}] {text}")
    except OSError as e:
        warn(f"Agent stream for '{agent_channel.instance_id}' failed: {e}")
    finally:
        agent_channel.close()


def _attach_agents(channels: dict[str, AgentChannel]) -> None:
    log(f"{len(channels)} agent channel(s) open. Ctrl-C to close.")
    threads = [
        threading.Thread(target=_pump, args=(ch,), daemon=True) for ch in channels.values()
    ]
    for t in threads:
        t.start()
    try:
        for ch in channels.values():
            while not ch.wait_closed(1.0):
                pass
    except KeyboardInterrupt:
        warn("Closing agent channels")
    finally:
        for ch in channels.values():
            ch.close()


@app.command(name="up")
def up(
    templates_file: str,
    *,
    agent: str | None = None,
    vars_file: str = "fleet.vars.json",
    dotenv_file: str | None = None,
    env_file: str | None = None,
    region: str | None = None,
    aws_profile: str | None = None,
):
    """Create instances from a templates file, wait for them and bootstrap them.

    :param templates_file: JSON file with instance templates
    :param agent: Agent artifact to install and launch on every instance
    :param vars_file: Where to write the result variables (JSON)
    :param dotenv_file: Also write the result variables in dotenv format
    :param env_file: .env file with settings (default: ./.env)
    :param region: AWS region (default: AWS_REGION)
    :param aws_profile: AWS profile (default: AWS_PROFILE)
    """
    settings = Settings.from_env(env_file)
    templates = load_templates(templates_file)
    agent_bytes = Path(agent).read_bytes() if agent else None

    p = _provider(settings, region, aws_profile)
    p.validate_auth()

    provisioner = Provisioner(p, settings=settings)
    try:
        variables = provisioner.provision(templates, Environment(), agent=agent_bytes)
    except InterruptedOperation as e:
        warn(f"Interrupted. Tear down with: fleetvm down \"{' '.join(e.instance_ids)}\"")
        sys.exit(130)
    except FleetError as e:
        error(str(e))

    variables.save_json(vars_file)
    if dotenv_file:
        variables.save_dotenv(dotenv_file)

    print(f"  Instances: {variables['instances']}")
    print(f"  Public DNS: {variables['publicDns']}")

    if provisioner.channels:
        _attach_agents(provisioner.channels)


@app.command(name="down")
def down(
    instances: str = "",
    *,
    terminate: bool = False,
    vars_file: str | None = None,
    env_file: str | None = None,
    region: str | None = None,
    aws_profile: str | None = None,
):
    """Stop (or terminate) instances.

    Environment placeholders in the id list are expanded first, including the
    variables from --vars-file; with no ids the 'instances' variable is used.

    :param instances: Whitespace-separated instance ids
    :param terminate: Terminate instead of stop (irreversible)
    :param vars_file: Result variables file from 'up' (JSON or dotenv)
    :param env_file: .env file with settings (default: ./.env)
    :param region: AWS region (default: AWS_REGION)
    :param aws_profile: AWS profile (default: AWS_PROFILE)
    """
    settings = Settings.from_env(env_file)
    env = Environment()
    if vars_file:
        env = env.derive(**ResultVariables.load(vars_file))
        if not instances:
            instances = env.get("instances", "")

    instance_ids = parse_instance_ids(env.expand(instances))
    if not instance_ids:
        warn("No instances to tear down")
        return

    p = _provider(settings, region, aws_profile)
    outcomes = teardown(p, instance_ids, hard_terminate=terminate)
    for instance_id, outcome in outcomes.items():
        print(f"  {instance_id}: {outcome}")


@app.command(name="status")
def status(
    instances: str,
    *,
    env_file: str | None = None,
    region: str | None = None,
    aws_profile: str | None = None,
):
    """Show state and addresses of instances.

    :param instances: Whitespace-separated instance ids
    :param env_file: .env file with settings (default: ./.env)
    :param region: AWS region (default: AWS_REGION)
    :param aws_profile: AWS profile (default: AWS_PROFILE)
    """
    settings = Settings.from_env(env_file)
    p = _provider(settings, region, aws_profile)
    for instance_id in parse_instance_ids(instances):
        try:
            info = p.describe_instance(instance_id)
        except InstanceNotFound:
            print(f"  {instance_id}: [red]not found[/red]")
            continue
        address = info.get("public_dns") or info.get("public_ip") or "-"
        print(f"  {instance_id}: {info['state']}  {address}  {info.get('private_ip') or '-'}")


@app.command(name="vars")
def show_vars(vars_file: str = "fleet.vars.json"):
    """Print result variables saved by 'up'.

    :param vars_file: Result variables file (JSON or dotenv)
    """
    if not Path(vars_file).exists():
        error(f"Variables file not found: '{vars_file}'")
    for name, value in ResultVariables.load(vars_file).items():
        print(f"  {name}={value}")


def main():
    app.meta()


if __name__ == "__main__":
    main()
