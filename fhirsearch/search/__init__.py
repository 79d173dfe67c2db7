from .params import (  # noqa
    StringMatch,
    TokenMatch,
    DateRange,
    QuantityMatch,
    ReferenceMatch,
    ValueGroup,
    ParameterEntry,
    ParameterSet,
    SortKey,
)
from .joins import JoinResolver  # noqa
from .criteria import CriteriaBuilder  # noqa
from .sort import SortPlanner, SortField  # noqa
from .corequerybuilder import QueryAssembler, SearchPlan  # noqa
from .bundle import Bundle, BundleProvider  # noqa
from .searchquery import SearchQuery  # noqa
from .searcharguments import SearchArguments  # noqa
