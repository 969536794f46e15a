from typing import Optional


class OrchestratorError(RuntimeError):
    pass


class FatalProvisioningError(OrchestratorError):
    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step


class HealthTimeout(OrchestratorError):
    pass


class SecretStoreError(OrchestratorError):
    pass


class CredentialUnavailable(SecretStoreError):
    pass


class ObjectUnavailable(OrchestratorError):
    pass


class MalformedInput(OrchestratorError):
    pass


class ApiError(OrchestratorError):
    def __init__(self, message: str, status_code: Optional[int] = None, duplicate: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.duplicate = duplicate


class InvalidTransition(OrchestratorError):
    pass
