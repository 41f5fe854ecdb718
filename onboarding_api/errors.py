from typing import Optional


class OnboardingError(RuntimeError):
    code = "onboarding_error"

    def __init__(self, message: str = "", *, operation: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.operation = operation


class ValidationError(OnboardingError):
    code = "validation_error"


class TransientError(OnboardingError):
    code = "transient_error"


class PermanentError(OnboardingError):
    code = "permanent_error"


class ConflictError(OnboardingError):
    code = "conflict"


class NotFoundError(OnboardingError):
    code = "not_found"


class VersionConflict(OnboardingError):
    code = "version_conflict"


class CompensationFailure(OnboardingError):
    code = "compensation_failure"

    def __init__(self, message: str = "", *, step: str = "", cause: Optional[BaseException] = None):
        super().__init__(message, operation=step)
        self.step = step
        self.cause = cause


class OnboardingInProgress(OnboardingError):
    code = "onboarding_in_progress"


class ProvisioningFailed(OnboardingError):
    code = "provisioning_failed"

    def __init__(self, message: str = "", *, reference: str = ""):
        super().__init__(message or "device provisioning failed")
        self.reference = reference


class OperatorActionRequired(OnboardingError):
    code = "operator_action_required"

    def __init__(self, message: str = "", *, reference: str = ""):
        super().__init__(message or "device requires operator cleanup")
        self.reference = reference
