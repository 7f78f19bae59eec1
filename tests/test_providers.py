"""Tests for the AWS provider with mocked boto3 clients."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from fleetvm.environment import Environment
from fleetvm.errors import FleetError, InstanceNotFound
from fleetvm.providers import AWSProvider, get_provider, handle_from_template
from fleetvm.teardown import teardown
from fleetvm.types import InstanceTemplate, Tag


def _client_error(code: str, operation: str = "StopInstances") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def aws(monkeypatch):
    monkeypatch.setattr(AWSProvider, "get_aws_config", staticmethod(lambda profile=None: {}))
    provider = AWSProvider(region="us-west-2")
    provider.ec2 = MagicMock()
    provider.s3 = MagicMock()
    monkeypatch.setattr(provider, "_get_ec2_client", lambda: provider.ec2)
    monkeypatch.setattr(provider, "_get_s3_client", lambda: provider.s3)
    return provider


def test_availability_zone_normalized_to_region(monkeypatch):
    monkeypatch.setattr(AWSProvider, "get_aws_config", staticmethod(lambda profile=None: {}))
    assert AWSProvider(region="eu-west-1b").region == "eu-west-1"


def test_invalid_region_exits(monkeypatch):
    monkeypatch.setattr(AWSProvider, "get_aws_config", staticmethod(lambda profile=None: {}))
    with pytest.raises(SystemExit):
        AWSProvider(region="mars-north-1")


def test_unknown_provider_exits():
    with pytest.raises(SystemExit):
        get_provider("gcp")


def test_create_instances_request(aws):
    aws.ec2.run_instances.return_value = {
        "Instances": [
            {
                "InstanceId": "i-abc",
                "State": {"Name": "pending"},
                "PrivateDnsName": "ip-10-0-0-5.internal",
                "PrivateIpAddress": "10.0.0.5",
                "VpcId": "vpc-1",
            }
        ]
    }
    template = InstanceTemplate(
        image="ami-123",
        instance_type="t3.small",
        tags=(Tag("Name", "node-$CLOUD_NUMBER"),),
        key_name="ci",
        zone="us-west-2a",
        subnet_id="subnet-1",
        security_group_ids=("sg-1",),
        init_script="echo $CLOUD_NUMBER",
    )

    handles = aws.create_instances(template, Environment({"CLOUD_NUMBER": "7"}))

    params = aws.ec2.run_instances.call_args.kwargs
    assert params["ImageId"] == "ami-123"
    assert params["InstanceType"] == "t3.small"
    assert params["MinCount"] == params["MaxCount"] == 1
    assert params["KeyName"] == "ci"
    assert params["Placement"] == {"AvailabilityZone": "us-west-2a"}
    assert params["SubnetId"] == "subnet-1"
    assert params["SecurityGroupIds"] == ["sg-1"]
    tags = {t["Key"]: t["Value"] for t in params["TagSpecifications"][0]["Tags"]}
    assert tags["Name"] == "node-7"
    assert tags["ManagedBy"] == "fleetvm"

    [handle] = handles
    assert handle.instance_id == "i-abc"
    assert handle.public_address == ""
    assert handle.private_ip == "10.0.0.5"
    assert handle.vpc_id == "vpc-1"
    assert handle.init_script == "echo 7"


def test_refresh_address_prefers_public_dns(aws):
    aws.ec2.describe_instances.return_value = {
        "Reservations": [
            {
                "Instances": [
                    {
                        "InstanceId": "i-abc",
                        "State": {"Name": "running"},
                        "PublicDnsName": "ec2-1-2-3-4.compute.amazonaws.com",
                        "PublicIpAddress": "1.2.3.4",
                    }
                ]
            }
        ]
    }
    handle = handle_from_template("i-abc", InstanceTemplate(image="ami-1"), Environment({}))

    aws.refresh_address(handle)

    assert handle.public_address == "ec2-1-2-3-4.compute.amazonaws.com"


def test_describe_unknown_instance_raises_not_found(aws):
    aws.ec2.describe_instances.side_effect = _client_error("InvalidInstanceID.NotFound")
    with pytest.raises(InstanceNotFound):
        aws.describe_instance("i-gone")


def test_terminate_of_terminated_instance_is_not_found(aws):
    aws.ec2.terminate_instances.side_effect = _client_error("IncorrectInstanceState")
    aws.ec2.describe_instances.return_value = {
        "Reservations": [{"Instances": [{"InstanceId": "i-1", "State": {"Name": "terminated"}}]}]
    }
    with pytest.raises(InstanceNotFound):
        aws.terminate("i-1")


def test_other_client_errors_propagate(aws):
    aws.ec2.stop_instances.side_effect = _client_error("UnauthorizedOperation")
    with pytest.raises(ClientError):
        aws.stop("i-1")


def test_stop_calls_ec2(aws):
    aws.stop("i-1")
    aws.ec2.stop_instances.assert_called_once_with(InstanceIds=["i-1"])


def test_signed_download_url(aws):
    aws.s3.generate_presigned_url.return_value = "https://signed"

    assert aws.signed_download_url("/fleetvm-runtime/jdk/linux-x64/jdk-17.tgz") == "https://signed"
    aws.s3.generate_presigned_url.assert_called_once_with(
        "get_object",
        Params={"Bucket": "fleetvm-runtime", "Key": "jdk/linux-x64/jdk-17.tgz"},
        ExpiresIn=3600,
    )


def test_signed_download_url_rejects_bad_path(aws):
    with pytest.raises(FleetError):
        aws.signed_download_url("/only-bucket")


def test_stop_of_pending_instance_waits_until_running(aws):
    aws.ec2.stop_instances.side_effect = [_client_error("IncorrectInstanceState"), {}]
    aws.ec2.describe_instances.return_value = {
        "Reservations": [{"Instances": [{"InstanceId": "i-1", "State": {"Name": "pending"}}]}]
    }

    assert teardown(aws, ["i-1"]) == {"i-1": "stopped"}
    aws.ec2.get_waiter.assert_called_once_with("instance_running")
    aws.ec2.get_waiter.return_value.wait.assert_called_once_with(InstanceIds=["i-1"])
    assert aws.ec2.stop_instances.call_count == 2


def test_terminate_of_pending_instance_error_propagates(aws):
    aws.ec2.terminate_instances.side_effect = _client_error("IncorrectInstanceState")
    aws.ec2.describe_instances.return_value = {
        "Reservations": [{"Instances": [{"InstanceId": "i-1", "State": {"Name": "pending"}}]}]
    }
    with pytest.raises(ClientError):
        aws.terminate("i-1")
    aws.ec2.get_waiter.assert_not_called()
