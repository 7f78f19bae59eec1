"""Error kinds raised by the provisioning core."""


class FleetError(Exception):
    """Base class for provisioning failures."""


class CreationError(FleetError):
    """The provider rejected an instance request; the batch was cleaned up."""

    def __init__(self, message: str, cleaned_up: list[str] | None = None):
        super().__init__(message)
        self.cleaned_up = cleaned_up or []


class ReadinessTimeout(FleetError):
    def __init__(self, label: str, instance_ids: list[str]):
        super().__init__(
            f"Timed out waiting for {label} on: {', '.join(instance_ids)}"
        )
        self.label = label
        self.instance_ids = instance_ids


class AuthenticationExhausted(FleetError):
    def __init__(self, host: str, user: str, attempts: int):
        super().__init__(
            f"Authentication as '{user}' on '{host}' failed after {attempts} attempts"
        )
        self.host = host
        self.user = user
        self.attempts = attempts


class InitScriptFailure(FleetError):
    def __init__(self, instance_id: str, exit_code: int):
        super().__init__(f"Init script failed on '{instance_id}': exit code={exit_code}")
        self.instance_id = instance_id
        self.exit_code = exit_code


class RuntimeInstallFailure(FleetError):
    def __init__(self, instance_id: str, step: str):
        super().__init__(f"Runtime install failed on '{instance_id}' at step '{step}'")
        self.instance_id = instance_id
        self.step = step


class SideChannelError(FleetError):
    """Publishing the private address to an instance failed."""


class InstanceNotFound(FleetError):
    """The provider no longer knows the instance (already terminated or bad id)."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance '{instance_id}' not found")
        self.instance_id = instance_id


class InterruptedOperation(Exception):
    """Cancellation was requested while waiting.

    Not a FleetError, so `except FleetError` handlers never catch it.
    Instances listed in ``instance_ids`` are left running for the caller.
    """

    def __init__(self, instance_ids: list[str] | None = None):
        self.instance_ids = instance_ids or []
        detail = f" (instances left running: {' '.join(self.instance_ids)})" if self.instance_ids else ""
        super().__init__(f"Operation interrupted{detail}")
