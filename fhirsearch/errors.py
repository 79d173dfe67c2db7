from typing import Union, List

from fhir.resources.R4B.operationoutcome import OperationOutcome


class FHIRSearchError(Exception):
    errors = None

    def __init__(self, error: Union[None, str, List[str]] = None, severity="error", code="invalid"):
        self.severity = severity
        self.code = code
        if isinstance(error, list):
            self.errors = error
        elif isinstance(error, str):
            self.errors = [error]
        else:
            self.errors = []

        super().__init__(self.errors)

    def format(self, as_json=False) -> Union[OperationOutcome, dict]:
        issues = [
            {"severity": self.severity, "code": self.code, "diagnostics": err}
            for err in self.errors
        ]
        # an OperationOutcome carries at least one issue
        outcome = OperationOutcome(issue=issues or [{"severity": self.severity, "code": self.code}])
        return outcome.dict() if as_json else outcome


class NotSupportedError(FHIRSearchError):
    """
    NotSupportedError is returned when searching a resource type the store does not know.
    """

    def __init__(self, error: str):
        super().__init__(error, severity="error", code="not-supported")


class UnknownHandlerError(FHIRSearchError):
    """
    UnknownHandlerError is returned when a parameter set references a search handler
    (or a request references a search parameter) that is not defined for the resource.
    """

    def __init__(self, error: str):
        super().__init__(error, severity="error", code="not-supported")


class UnsupportedParameterError(FHIRSearchError):
    """
    UnsupportedParameterError is returned when a known handler receives a criterion
    it cannot turn into a predicate.
    """

    def __init__(self, error: str):
        super().__init__(error, severity="error", code="not-supported")


class AmbiguousReferenceError(FHIRSearchError):
    """
    AmbiguousReferenceError is returned when a reference may point to several resource
    types and no type hint was provided to pick one.
    """

    def __init__(self, error: str):
        super().__init__(error, severity="error", code="invalid")


class JoinResolutionError(FHIRSearchError):
    """
    JoinResolutionError is returned when a relation does not exist on a record type,
    or does not lead to the requested resource type.
    """

    def __init__(self, error: str):
        super().__init__(error, severity="error", code="invalid")


class ExecutionError(FHIRSearchError):
    """
    ExecutionError wraps a failure of the underlying store while running a search.
    """

    def __init__(self, error: str):
        super().__init__(error, severity="fatal", code="exception")
