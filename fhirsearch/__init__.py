from .store import FHIRSearchStore  # noqa
from .errors import (  # noqa
    FHIRSearchError,
    NotSupportedError,
    UnknownHandlerError,
    UnsupportedParameterError,
    AmbiguousReferenceError,
    JoinResolutionError,
    ExecutionError,
)
