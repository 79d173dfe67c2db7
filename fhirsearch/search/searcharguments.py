import os
import re
from collections.abc import Mapping
from typing import Dict, List

from werkzeug.datastructures import MultiDict
from yarl import URL

from fhirsearch.errors import NotSupportedError, UnknownHandlerError, UnsupportedParameterError
from fhirsearch.search.catalog import DATE, QUANTITY, REFERENCE, STRING, TOKEN, get_definition
from fhirsearch.search.criteria import split_token
from fhirsearch.search.params import (
    DateRange,
    ParameterSet,
    QuantityMatch,
    ReferenceMatch,
    SortKey,
    StringMatch,
    TokenMatch,
    ValueGroup,
)

FHIR_DEFAULT_PAGE_SIZE = int(os.getenv("FHIR_DEFAULT_PAGE_SIZE", 100))
FHIR_MAX_PAGE_SIZE = int(os.getenv("FHIR_MAX_PAGE_SIZE", 1000))

# name, name:exact, subject:Patient.name, subject.name
KEY_PATTERN = re.compile(r"^(?P<param>[^:.]+)(?::(?P<modifier>[^.]+))?(?:\.(?P<chain>.+))?$")
PREFIX_PATTERN = re.compile(r"^(eq|ne|gt|ge|lt|le)(.*)$")

RESULT_PARAMETERS = ("_sort", "_count", "_offset", "_summary")


def url_to_dict(url_args) -> Dict[str, List[str]]:
    """Normalize a query string, a MultiDict or a plain mapping into {key: [values]}."""
    if url_args is None:
        return {}
    if isinstance(url_args, str):
        query = URL(f"?{url_args.lstrip('?')}").query
        return {key: query.getall(key) for key in dict.fromkeys(query.keys())}
    if isinstance(url_args, MultiDict):
        return {key: url_args.getlist(key) for key in url_args.keys()}
    if isinstance(url_args, Mapping):
        return {
            key: list(value) if isinstance(value, (list, tuple)) else [value]
            for key, value in url_args.items()
        }
    raise UnsupportedParameterError(f"cannot read search arguments from {type(url_args).__name__}")


def parse_int(key, value, minimum=0):
    try:
        number = int(value)
    except ValueError:
        raise UnsupportedParameterError(f"{key} must be an integer, got '{value}'")
    if number < minimum:
        raise UnsupportedParameterError(f"{key} must be at least {minimum}, got {number}")
    return number


def string_criterion(value, modifier=None):
    if modifier is None:
        return StringMatch(value=value)
    if modifier in ("exact", "contains"):
        return StringMatch(value=value, exactness=modifier)
    raise UnsupportedParameterError(f"modifier ':{modifier}' is not supported on string parameters")


def token_criterion(value, modifier=None):
    if modifier == "missing":
        if value == "true":
            return TokenMatch()
        raise UnsupportedParameterError(f"':missing={value}' is not supported")
    if modifier is not None:
        raise UnsupportedParameterError(f"modifier ':{modifier}' is not supported on token parameters")
    system, code = split_token(value)
    return TokenMatch(system=system, code=code)


def date_criterion(value, modifier=None):
    if modifier is not None:
        raise UnsupportedParameterError(f"modifier ':{modifier}' is not supported on date parameters")
    prefix, date = "eq", value
    match = PREFIX_PATTERN.match(value)
    if match:
        prefix, date = match.groups()

    if prefix == "eq":
        return DateRange.on(date)
    elif prefix == "gt":
        return DateRange(lower=date, lower_inclusive=False)
    elif prefix == "ge":
        return DateRange(lower=date)
    elif prefix == "lt":
        return DateRange(upper=date, upper_inclusive=False)
    elif prefix == "le":
        return DateRange(upper=date)
    raise UnsupportedParameterError(f"prefix '{prefix}' is not supported on date parameters")


def quantity_criterion(value, modifier=None):
    """[prefix]value[|system|unit]"""
    if modifier is not None:
        raise UnsupportedParameterError(f"modifier ':{modifier}' is not supported on quantity parameters")
    comparator = "eq"
    match = PREFIX_PATTERN.match(value)
    if match:
        comparator, value = match.groups()

    parts = value.split("|")
    if len(parts) not in (1, 3):
        raise UnsupportedParameterError(f"invalid quantity: '{value}'")
    try:
        number = float(parts[0])
    except ValueError:
        raise UnsupportedParameterError(f"invalid quantity: '{value}'")
    unit = (parts[2] or None) if len(parts) == 3 else None
    return QuantityMatch(value=number, comparator=comparator, unit=unit)


def reference_criterion(value, modifier=None, chain=None):
    if modifier is not None and not modifier[:1].isupper():
        raise UnsupportedParameterError(f"modifier ':{modifier}' is not supported on reference parameters")
    if chain is not None:
        return ReferenceMatch(resource_type=modifier, chain=chain, value=value)
    return ReferenceMatch(target_id=value, resource_type=modifier)


CRITERION_PARSERS = {
    STRING: string_criterion,
    TOKEN: token_criterion,
    DATE: date_criterion,
    QUANTITY: quantity_criterion,
}


class SearchArguments:
    """Turns request arguments into a ParameterSet plus the result parameters
    (paging, sort, summary) of the request."""

    def __init__(self):
        self.params = ParameterSet()
        self.offset = 0
        self.count = FHIR_DEFAULT_PAGE_SIZE
        self.is_summary_count = False
        # search arguments as received, used to rebuild paging links
        self.query = []

    def parse(self, url_args, resource_type) -> "SearchArguments":
        self.resource_type = resource_type
        self.definition = get_definition(resource_type)
        if self.definition is None:
            raise NotSupportedError(f'unsupported FHIR resource: "{resource_type}"')

        args = url_to_dict(url_args)
        for key, values in args.items():
            if key in RESULT_PARAMETERS:
                self.result_param(key, values)
                continue
            for value in values:
                self.query.append((key, value))
                self.add_occurrence(key, value)
        return self

    def result_param(self, key, values):
        if key == "_sort":
            self.params.set_sort(*self.sort_keys(values))
        elif key == "_count":
            self.count = min(parse_int(key, values[-1]), FHIR_MAX_PAGE_SIZE)
        elif key == "_offset":
            self.offset = parse_int(key, values[-1])
        elif key == "_summary":
            if values[-1] == "count":
                self.is_summary_count = True
            elif values[-1] != "false":
                raise UnsupportedParameterError(f"_summary={values[-1]} is not supported")

    def sort_keys(self, values):
        keys = []
        for value in values:
            for argument in value.split(","):
                # a "-" before the argument means descending order
                if argument.startswith("-"):
                    keys.append(SortKey(param=argument[1:], direction="desc"))
                elif argument:
                    keys.append(SortKey(param=argument))
        return keys

    def add_occurrence(self, key, value):
        match = KEY_PATTERN.match(key)
        param = match.group("param") if match else key
        if not match or param not in self.definition.params:
            raise UnknownHandlerError(
                f"No search definition is available for search parameter ``{param}`` "
                f"on Resource ``{self.resource_type}``."
            )
        modifier, chain = match.group("modifier"), match.group("chain")
        handler_key, sub_key = self.definition.params[param]
        handler = self.definition.handlers[handler_key]
        kind = sorted(handler.kinds)[0]

        if kind == REFERENCE:
            or_list = [reference_criterion(v, modifier, chain) for v in value.split(",")]
        elif chain is not None:
            raise UnsupportedParameterError(f"'{param}' is not a reference, it cannot be chained")
        else:
            or_list = [CRITERION_PARSERS[kind](v, modifier) for v in value.split(",")]
        self.params.add_parameter(handler_key, ValueGroup.of(or_list), sub_key)
