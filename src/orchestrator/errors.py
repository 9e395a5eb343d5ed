"""Precondition errors raised before any tool process is spawned."""


class OrchestratorError(Exception):
    """Base exception for rejected operation requests."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class NoPlanError(OrchestratorError):
    """Apply requested without a plan artifact from a successful plan."""

    def __init__(self, deployment: str):
        self.deployment = deployment
        super().__init__("E401", f"No plan found for {deployment}. Please run plan first.")


class OperationInProgressError(OrchestratorError):
    """Another operation on the same deployment has not finished."""

    def __init__(self, deployment: str, operation_id: str, kind: str):
        self.deployment = deployment
        self.operation_id = operation_id
        super().__init__("E402", f"Operation {kind} ({operation_id}) is still in progress for {deployment}")


class DeploymentNotFoundError(OrchestratorError):
    """Deployment has no working directory."""

    def __init__(self, deployment: str):
        self.deployment = deployment
        super().__init__("E403", f"Deployment not found: {deployment}")
