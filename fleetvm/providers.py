"""Cloud provider client for creating, inspecting and removing instances."""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

from .environment import Environment
from .errors import FleetError, InstanceNotFound
from .types import InstanceHandle, InstanceInfo, InstanceTemplate
from .utils import error, log

NOT_FOUND_CODES = ("InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed")
GONE_STATES = ("shutting-down", "terminated")
PRESIGNED_URL_EXPIRY = 3600
# Transient API failures, retried by the pollers
PROVIDER_ERRORS = (ClientError, BotoCoreError, OSError)


def get_local_ssh_key(key_path: str | None = None) -> str:
    """:return: private key content from key_path, or the first key in ~/.ssh/"""
    if key_path:
        path = Path(key_path).expanduser()
        if not path.exists():
            error(f"SSH key not found: '{path}'")
        log(f"Using SSH key: '{path}'")
        return path.read_text()

    ssh_dir = Path.home() / ".ssh"
    key_names = ["id_ed25519", "id_rsa", "id_ecdsa"]
    for name in key_names:
        path = ssh_dir / name
        if path.exists():
            log(f"Using SSH key: '{path}'")
            return path.read_text()

    error(f"No SSH key found in ~/.ssh/ (tried: {', '.join(key_names)})")


class Provider(Protocol):
    provider_name: str

    def create_instances(
        self, template: InstanceTemplate, env: Environment, count: int = 1
    ) -> list[InstanceHandle]: ...

    def refresh_address(self, handle: InstanceHandle) -> None: ...

    def describe_instance(self, instance_id: str) -> InstanceInfo: ...

    def stop(self, instance_id: str) -> None: ...

    def terminate(self, instance_id: str) -> None: ...

    def signed_download_url(self, path: str) -> str: ...

    def get_key_material(self) -> str: ...


def handle_from_template(
    instance_id: str, template: InstanceTemplate, env: Environment
) -> InstanceHandle:
    """Create a handle carrying the template's per-instance settings."""
    return InstanceHandle(
        instance_id=instance_id,
        ssh_port=template.ssh_port,
        remote_admin=template.remote_admin,
        root_command_prefix=template.root_command_prefix,
        init_script=env.expand(template.init_script) or "",
        runtime_options=env.expand(template.runtime_options) or "",
        use_private_address=template.use_private_address,
    )


def apply_info(handle: InstanceHandle, info: InstanceInfo) -> None:
    handle.public_address = info.get("public_dns") or info.get("public_ip") or ""
    handle.private_address = info.get("private_dns") or ""
    handle.private_ip = info.get("private_ip") or ""
    handle.vpc_id = info.get("vpc_id") or ""


def _instance_info(instance: dict) -> InstanceInfo:
    return {
        "id": instance["InstanceId"],
        "state": instance.get("State", {}).get("Name", "unknown"),
        "public_dns": instance.get("PublicDnsName", ""),
        "public_ip": instance.get("PublicIpAddress", ""),
        "private_dns": instance.get("PrivateDnsName", ""),
        "private_ip": instance.get("PrivateIpAddress", ""),
        "vpc_id": instance.get("VpcId", ""),
    }


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


class AWSProvider:
    REGIONS = [
        "us-east-1",
        "us-east-2",
        "us-west-1",
        "us-west-2",
        "ca-central-1",
        "eu-west-1",
        "eu-west-2",
        "eu-west-3",
        "eu-central-1",
        "eu-north-1",
        "ap-southeast-1",
        "ap-southeast-2",
        "ap-northeast-1",
        "ap-northeast-2",
        "ap-south-1",
        "sa-east-1",
    ]

    def __init__(
        self,
        region: str | None = None,
        aws_profile: str | None = None,
        ssh_key_path: str | None = None,
    ):
        self.provider_name = "aws"
        self.ssh_key_path = ssh_key_path
        self.aws_config = AWSProvider.get_aws_config(profile=aws_profile)

        region = region or self.aws_config.get("region_name", "us-east-1")

        # Availability zone given instead of region (us-east-1a -> us-east-1)
        if region and region[-1].isalpha() and region[:-1] in self.REGIONS:
            normalized_region = region[:-1]
            log(f"Converted availability zone '{region}' to region '{normalized_region}'")
            self.region = normalized_region
        elif region not in self.REGIONS:
            error(
                f"Invalid AWS region: '{region}'\n"
                f"Valid AWS regions: '{', '.join(self.REGIONS[:6])}', ..."
            )
        else:
            self.region = region
        self.aws_config["region_name"] = self.region
        self._key_material: str | None = None

    @staticmethod
    def get_aws_config(profile: str | None = None) -> dict:
        """Load AWS configuration for boto3 session initialization.

        Reads profile and region from config files and environment variables.
        Does not validate credentials, call check_aws_auth() for that.

        :param profile: Explicit AWS profile name (overrides AWS_PROFILE env var)
        :return: Dict with profile_name and/or region_name keys for boto3.Session()
        """
        load_dotenv()

        aws_config = {}
        available_profiles = set()
        credentials_path = os.path.expanduser("~/.aws/credentials")
        config_path = os.path.expanduser("~/.aws/config")

        import configparser
        for path in [credentials_path, config_path]:
            if os.path.exists(path):
                cfg = configparser.ConfigParser()
                cfg.read(path)
                for section in cfg.sections():
                    if section.startswith("profile "):
                        available_profiles.add(section[8:])
                    else:
                        available_profiles.add(section)

        profile_name = profile or os.getenv("AWS_PROFILE")
        if profile_name:
            if profile_name in available_profiles:
                aws_config["profile_name"] = profile_name
            else:
                log(f"AWS profile '{profile_name}' not found, using default credential chain...")
                os.environ.pop("AWS_PROFILE", None)

        region = os.getenv("AWS_REGION")
        if region:
            aws_config["region_name"] = region

        return aws_config

    def _get_session(self):
        return boto3.Session(**self.aws_config)

    def _get_ec2_client(self):
        return self._get_session().client("ec2")

    def _get_s3_client(self):
        return self._get_session().client("s3")

    def validate_auth(self) -> None:
        check_aws_auth(self.aws_config.get("profile_name"))
        sts = self._get_session().client("sts", region_name=self.region)
        identity = sts.get_caller_identity()
        log(f"AWS: region={self.region}  account={identity.get('Account', 'unknown')}")

    def create_instances(
        self, template: InstanceTemplate, env: Environment, count: int = 1
    ) -> list[InstanceHandle]:
        ec2 = self._get_ec2_client()

        tags = [{"Key": t.name, "Value": env.expand(t.value)} for t in template.tags]
        tags += [
            {"Key": "ManagedBy", "Value": "fleetvm"},
            {"Key": "CreatedAt", "Value": datetime.now(timezone.utc).isoformat()},
            {"Key": "CreatedBy", "Value": os.getenv("USER", "unknown")},
        ]

        run_params = {
            "ImageId": template.image,
            "InstanceType": template.instance_type,
            "MinCount": count,
            "MaxCount": count,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if template.key_name:
            run_params["KeyName"] = template.key_name
        if template.zone:
            run_params["Placement"] = {"AvailabilityZone": template.zone}
        if template.subnet_id:
            run_params["SubnetId"] = template.subnet_id
        if template.security_group_ids:
            run_params["SecurityGroupIds"] = list(template.security_group_ids)

        log(f"Creating {count} EC2 instance(s) from '{template.image}' ({template.instance_type})...")
        response = ec2.run_instances(**run_params)

        handles = []
        for instance in response["Instances"]:
            handle = handle_from_template(instance["InstanceId"], template, env)
            apply_info(handle, _instance_info(instance))
            handles.append(handle)
        return handles

    def describe_instance(self, instance_id: str) -> InstanceInfo:
        ec2 = self._get_ec2_client()
        try:
            response = ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise InstanceNotFound(instance_id) from e
            raise
        reservations = response.get("Reservations", [])
        if not reservations or not reservations[0]["Instances"]:
            raise InstanceNotFound(instance_id)
        return _instance_info(reservations[0]["Instances"][0])

    def refresh_address(self, handle: InstanceHandle) -> None:
        apply_info(handle, self.describe_instance(handle.instance_id))

    def _change_state(self, action: str, instance_id: str) -> None:
        ec2 = self._get_ec2_client()
        try:
            getattr(ec2, action)(InstanceIds=[instance_id])
        except ClientError as e:
            code = _error_code(e)
            if code in NOT_FOUND_CODES:
                raise InstanceNotFound(instance_id) from e
            if code != "IncorrectInstanceState":
                raise
            state = self.describe_instance(instance_id)["state"]
            if state in GONE_STATES:
                raise InstanceNotFound(instance_id) from e
            if action != "stop_instances" or state != "pending":
                raise
            # pending instances cannot be stopped yet
            log(f"'{instance_id}' is still pending, waiting for it to run before stopping")
            ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
            ec2.stop_instances(InstanceIds=[instance_id])

    def stop(self, instance_id: str) -> None:
        self._change_state("stop_instances", instance_id)

    def terminate(self, instance_id: str) -> None:
        self._change_state("terminate_instances", instance_id)

    def signed_download_url(self, path: str) -> str:
        """Pre-sign a GET for ``/<bucket>/<key>``."""
        bucket, _, key = path.lstrip("/").partition("/")
        if not bucket or not key:
            raise FleetError(f"Download path must be '/<bucket>/<key>', got '{path}'")
        return self._get_s3_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=PRESIGNED_URL_EXPIRY,
        )

    def get_key_material(self) -> str:
        if self._key_material is None:
            self._key_material = get_local_ssh_key(self.ssh_key_path)
        return self._key_material


def check_aws_auth(profile: str | None = None) -> None:
    """Validate AWS credentials, fail fast with clear error if expired or invalid.

    :param profile: AWS profile name to check (uses default chain if None)
    :raises SystemExit: If credentials are missing, expired, or invalid
    """
    aws_config = {}
    if profile:
        aws_config["profile_name"] = profile

    try:
        session = boto3.Session(**aws_config)
        sts = session.client("sts")
        sts.get_caller_identity()
    except ClientError as e:
        error_code = e.response["Error"]["Code"]
        if error_code in ("ExpiredToken", "ExpiredTokenException"):
            login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
            error(f"AWS credentials expired. Run:\n  {login_cmd}")
        else:
            error(f"AWS authentication failed ({error_code}): {e}")
    except Exception as e:
        error(f"AWS authentication failed: {e}")


def get_provider(
    provider: str | None = None,
    *,
    region: str | None = None,
    aws_profile: str | None = None,
    ssh_key_path: str | None = None,
) -> Provider:
    """Get a provider instance with defaults applied."""
    if provider is None:
        load_dotenv()
        provider = os.getenv("FLEETVM_PROVIDER", "aws")
    if provider != "aws":
        error(f"Unknown provider: {provider}. Available: aws")
    return AWSProvider(region=region, aws_profile=aws_profile, ssh_key_path=ssh_key_path)
