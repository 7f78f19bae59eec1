"""End-to-end provisioning against the in-memory provider and channel."""

import pytest
from botocore.exceptions import ClientError

from fleetvm.config import Settings
from fleetvm.environment import Environment
from fleetvm.errors import CreationError, InitScriptFailure, InterruptedOperation, ReadinessTimeout
from fleetvm.orchestrator import Provisioner, provision, replica_count
from fleetvm.types import BootstrapState, InstanceTemplate, Tag

from .conftest import FakeProvider


def _host(instance_id: str) -> str:
    return f"ec2-{instance_id}.compute.example.com"


def _template(count: str | None = None, **fields) -> InstanceTemplate:
    tags = (Tag("count", count),) if count is not None else ()
    fields.setdefault("image", "ami-123")
    fields.setdefault("init_script", "echo node $CLOUD_NUMBER")
    return InstanceTemplate(tags=tags, **fields)


@pytest.mark.parametrize(
    "tags, expected",
    [
        ((), 1),
        ((Tag("count", "3"),), 3),
        ((Tag("COUNT", " 2 "),), 2),
        ((Tag("count", "0"),), 1),
        ((Tag("count", "-2"),), 1),
        ((Tag("count", "many"),), 1),
        ((Tag("count", "2"), Tag("Count", "x")), 2),
        ((Tag("Name", "web"), Tag("count", "$REPLICAS")), 4),
    ],
)
def test_replica_count(tags, expected):
    template = InstanceTemplate(image="ami-123", tags=tags)
    assert replica_count(template, Environment({"REPLICAS": "4"})) == expected


def test_cloud_numbers_follow_creation_order(provider, channel, settings):
    variables = provision(
        provider,
        [_template("3"), _template()],
        Environment({}),
        channel=channel,
        settings=settings,
    )

    assert len(provider.create_calls) == 4
    assert [number for _, number in provider.create_calls] == ["0", "1", "2", "3"]
    assert variables["instances"] == "i-0001 i-0002 i-0003 i-0004"
    assert variables["i-0004_publicDns"] == _host("i-0004")


def test_two_templates_end_to_end(provider, channel, settings):
    web = _template("2", remote_admin="ubuntu", runtime_options="-Xmx$HEAP")
    db = _template(init_script=None)

    variables = provision(
        provider, [web, db], Environment({"HEAP": "2g"}), channel=channel, settings=settings
    )

    assert variables["instances"] == "i-0001 i-0002 i-0003"
    assert variables["publicDns"] == " ".join(_host(i) for i in ("i-0001", "i-0002", "i-0003"))
    assert variables["privateDns"] == "ip-i-0001.internal ip-i-0002.internal ip-i-0003.internal"
    assert variables["i-0002_publicDns"] == _host("i-0002")
    assert variables["i-0002_runtimeOptions"] == "-Xmx2g"
    assert variables["i-0001_remoteAdmin"] == "ubuntu"
    assert variables["i-0003_remoteAdmin"] == "root"
    assert variables["i-0003_runtimeOptions"] == ""

    assert channel.host(_host("i-0001")).files["/tmp/init.sh"][0] == b"echo node 0"
    assert channel.host(_host("i-0002")).files["/tmp/init.sh"][0] == b"echo node 1"
    assert channel.host(_host("i-0001")).init_runs == 1
    assert channel.host(_host("i-0003")).commands == []
    assert provider.stopped == []


def test_creation_failure_cleans_up_created_instances(channel, settings):
    provider = FakeProvider(fail_on=3)
    provisioner = Provisioner(provider, channel, settings)

    with pytest.raises(CreationError) as exc_info:
        provisioner.provision([_template("4")], Environment({}))

    assert len(provider.create_calls) == 3
    assert exc_info.value.cleaned_up == ["i-0001", "i-0002"]
    assert provider.stopped == ["i-0001", "i-0002"]
    assert provider.terminated == []
    assert provisioner.variables is None
    assert channel.connects == []


def test_creation_failure_terminates_when_configured(channel):
    provider = FakeProvider(fail_on=2)

    with pytest.raises(CreationError):
        provision(
            provider,
            [_template("2")],
            Environment({}),
            channel=channel,
            settings=Settings(cleanup_terminate=True),
        )

    assert provider.terminated == ["i-0001"]
    assert provider.stopped == []


def test_init_failure_tears_down_batch_when_all_or_nothing(provider, channel, settings):
    settings.all_or_nothing = True
    channel.host(_host("i-0002")).init_exit = 3

    with pytest.raises(InitScriptFailure) as exc_info:
        provision(provider, [_template("3")], Environment({}), channel=channel, settings=settings)

    assert exc_info.value.exit_code == 3
    assert provider.stopped == ["i-0001", "i-0002", "i-0003"]


def test_init_failure_only_excludes_that_instance(provider, channel, settings):
    channel.host(_host("i-0002")).init_exit = 3
    provisioner = Provisioner(provider, channel, settings)

    variables = provisioner.provision([_template("3")], Environment({}))

    failed = provisioner.batch["i-0002"]
    assert isinstance(failed.error, InitScriptFailure)
    assert failed.state is BootstrapState.FAILED
    assert provisioner.batch["i-0001"].state is BootstrapState.INIT_SCRIPT_DONE
    assert variables["instances"] == "i-0001 i-0002 i-0003"
    assert provider.stopped == []


def test_transient_refresh_error_does_not_tear_down_batch(channel, settings):
    class ThrottledProvider(FakeProvider):
        def refresh_address(self, handle):
            if not self.refreshes[handle.instance_id]:
                self.refreshes[handle.instance_id] += 1
                raise ClientError(
                    {"Error": {"Code": "RequestLimitExceeded", "Message": "slow down"}},
                    "DescribeInstances",
                )
            super().refresh_address(handle)

    provider = ThrottledProvider(address_after=2)
    provisioner = Provisioner(provider, channel, settings)

    variables = provisioner.provision([_template()], Environment({}))

    assert variables["i-0001_publicDns"] == _host("i-0001")
    assert provisioner.batch["i-0001"].eligible
    assert channel.host(_host("i-0001")).init_runs == 1
    assert provider.stopped == []


def _fast_timeout_settings(**overrides) -> Settings:
    return Settings(
        ready_timeout=0.01, poll_interval=0.001, connect_retry_delay=0, auth_retry_delay=0, **overrides
    )


def test_address_timeout_aborts_batch(channel):
    provider = FakeProvider(address_after=1)
    provider.gone.add("i-0002")

    with pytest.raises(ReadinessTimeout) as exc_info:
        provision(
            provider,
            [_template("2")],
            Environment({}),
            channel=channel,
            settings=_fast_timeout_settings(on_timeout="abort"),
        )

    assert exc_info.value.instance_ids == ["i-0002"]
    assert provider.stopped == ["i-0001"]
    assert channel.connects == []


def test_address_timeout_proceeds_without_instance(channel):
    provider = FakeProvider(address_after=1)
    provider.gone.add("i-0002")
    provisioner = Provisioner(provider, channel, _fast_timeout_settings())

    variables = provisioner.provision([_template("2")], Environment({}))

    assert variables["instances"] == "i-0001 i-0002"
    assert variables["i-0002_publicDns"] == ""
    assert isinstance(provisioner.batch["i-0002"].error, ReadinessTimeout)
    assert provisioner.batch["i-0001"].ssh_ready
    assert channel.host(_host("i-0001")).init_runs == 1
    assert provider.stopped == []


def test_interrupt_leaves_instances_running(channel, settings):
    provider = FakeProvider(address_after=5, on_refresh=lambda handle: provisioner.cancel())
    provisioner = Provisioner(provider, channel, settings)

    with pytest.raises(InterruptedOperation) as exc_info:
        provisioner.provision([_template()], Environment({}))

    assert exc_info.value.instance_ids == ["i-0001"]
    assert provider.stopped == []
    assert provider.terminated == []


def test_private_address_published_over_side_channel(monkeypatch, provider, channel, settings):
    published = []
    monkeypatch.setattr(
        "fleetvm.orchestrator.publish_private_address",
        lambda host, value, port: published.append((host, value, port)),
    )

    provision(
        provider,
        [_template(private_dns="$privateDns")],
        Environment({}),
        channel=channel,
        settings=settings,
    )

    assert published == [(_host("i-0001"), "ip-i-0001.internal", 40000)]


def test_private_address_not_published_when_unresolved(monkeypatch, provider, channel, settings):
    published = []
    monkeypatch.setattr(
        "fleetvm.orchestrator.publish_private_address",
        lambda host, value, port: published.append((host, value, port)),
    )

    provision(
        provider,
        [_template(private_dns="$NOT_SET")],
        Environment({}),
        channel=channel,
        settings=settings,
    )

    assert published == []


def test_agents_launched_on_every_instance(provider, channel, settings):
    provisioner = Provisioner(provider, channel, settings)

    provisioner.provision([_template("2", runtime_options="-Xmx1g")], Environment({}), agent=b"jar")

    assert sorted(provisioner.channels) == ["i-0001", "i-0002"]
    remote = channel.host(_host("i-0001"))
    assert remote.agent_command == "java -Xmx1g -jar /tmp/agent.jar"
    assert remote.files["/tmp/agent.jar"] == (b"jar", 0o644)
    assert remote.init_runs == 1
    assert provisioner.batch["i-0001"].state is BootstrapState.AGENT_LAUNCHED

    closes = channel.closes
    provisioner.channels["i-0001"].close()
    assert channel.closes == closes + 1
