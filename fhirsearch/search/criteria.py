import re
import logging
from calendar import monthrange
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from fhirsearch.errors import JoinResolutionError, UnsupportedParameterError
from fhirsearch.search.catalog import (
    DATE,
    QUANTITY,
    REFERENCE,
    RESOURCES,
    STRING,
    TOKEN,
    Handler,
)
from fhirsearch.search.joins import ROOT, JoinPath, JoinResolver, field_path
from fhirsearch.search.params import (
    DateRange,
    QuantityMatch,
    ReferenceMatch,
    StringMatch,
    TokenMatch,
)

number_prefix_matching = {
    "eq": "$eq",
    "ne": "$ne",
    "gt": "$gt",
    "ge": "$gte",
    "lt": "$lt",
    "le": "$lte",
}

DATE_PATTERN = re.compile(
    r"^(\d{4})(?:-(\d{2})(?:-(\d{2})"
    r"(?:T(\d{2}):(\d{2})(?::(\d{2})(?:\.(\d+))?)?(Z|[+-]\d{2}:\d{2})?)?)?)?$"
)


def and_(predicates: List[dict]) -> dict:
    predicates = [p for p in predicates if p]
    if len(predicates) == 0:
        return {}
    if len(predicates) == 1:
        return predicates[0]
    return {"$and": predicates}


def or_(predicates: List[dict]) -> dict:
    # an empty predicate matches everything, and so does any OR containing it
    if len(predicates) == 0 or any(p == {} for p in predicates):
        return {}
    if len(predicates) == 1:
        return predicates[0]
    return {"$or": predicates}


def parse_date_bounds(value: str) -> Tuple[datetime, datetime]:
    """Parse a date at its own precision and return the interval it covers,
    as naive UTC datetimes: [start, end).

    parse_date_bounds("1999-12") == (datetime(1999, 12, 1), datetime(2000, 1, 1))
    """
    match = DATE_PATTERN.match(value or "")
    if not match:
        raise UnsupportedParameterError(f"invalid date: '{value}'")
    year, month, day, hour, minute, second, fraction, offset = match.groups()

    try:
        start = datetime(
            int(year),
            int(month or 1),
            int(day or 1),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
            int(fraction[:6].ljust(6, "0")) if fraction else 0,
        )
    except ValueError as e:
        raise UnsupportedParameterError(f"invalid date: '{value}': {e}")

    if fraction:
        step = timedelta(microseconds=10 ** (6 - len(fraction[:6])))
    elif second:
        step = timedelta(seconds=1)
    elif minute:
        step = timedelta(minutes=1)
    elif day:
        step = timedelta(days=1)
    elif month:
        step = timedelta(days=monthrange(start.year, start.month)[1])
    else:
        step = datetime(start.year + 1, 1, 1) - start if start.year < 9999 else timedelta(days=365)

    if offset and offset != "Z":
        sign = 1 if offset[0] == "+" else -1
        hours, minutes = offset[1:].split(":")
        start -= sign * timedelta(hours=int(hours), minutes=int(minutes))

    try:
        end = start + step
    except OverflowError:
        end = datetime.max
    return start, end


def split_token(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """"system|code" -> (system, code), "code" -> (None, code)"""
    if value is None or "|" not in value:
        return None, value or None
    system, code = value.split("|", 1)
    return system or None, code or None


def split_reference(value: str, resource_type: Optional[str]) -> Tuple[Optional[str], str]:
    """"Patient/123" -> ("Patient", "123")"""
    if "/" in value:
        prefix, target_id = value.rsplit("/", 1)
        prefix = prefix.rsplit("/", 1)[-1]
        if resource_type is not None and resource_type != prefix:
            raise UnsupportedParameterError(
                f"reference '{value}' does not point to a {resource_type} resource"
            )
        return prefix, target_id
    return resource_type, value


def string_condition(value: str, exactness: str):
    if exactness == "exact":
        return value
    elif exactness == "contains":
        return {"$regex": re.escape(value), "$options": "i"}
    return {"$regex": f"^{re.escape(value)}", "$options": "i"}


class CriteriaBuilder:
    """Translates one criterion of one handler into a MongoDB query document.

    Field names in the produced documents are pipeline paths: a predicate on a
    joined record is expressed against the alias under which the join was unwound.
    """

    def __init__(self, resolver: JoinResolver):
        self.resolver = resolver
        self._builders = {
            STRING: self.build_string,
            TOKEN: self.build_token,
            DATE: self.build_date,
            QUANTITY: self.build_quantity,
            REFERENCE: self.build_reference,
        }

    def build(self, handler: Handler, sub_key, criterion, source: str = ROOT) -> Tuple[dict, JoinPath]:
        if criterion.kind not in handler.kinds:
            raise UnsupportedParameterError(
                f"{handler.key} does not accept {criterion.kind} criteria"
            )
        builder = self._builders.get(criterion.kind)
        if builder is None:
            raise UnsupportedParameterError(f"no builder for {criterion.kind} criteria")
        return builder(handler, sub_key, criterion, source)

    def target_fields(self, handler: Handler, sub_key, alias: str) -> List[str]:
        fields = handler.fields.get(sub_key)
        if not fields:
            if sub_key is None:
                raise UnsupportedParameterError(f"{handler.key} requires a property")
            raise UnsupportedParameterError(f"{handler.key} has no property '{sub_key}'")
        return [field_path(alias, field) for field in fields]

    def _resolve(self, handler: Handler, source: str) -> Tuple[JoinPath, str]:
        path = self.resolver.resolve(handler.chain, source=source)
        return path, path[-1].alias if path else source

    def build_string(self, handler: Handler, sub_key, criterion: StringMatch, source: str):
        path, alias = self._resolve(handler, source)
        fields = self.target_fields(handler, sub_key, alias)

        values = [criterion.value]
        if handler.tokenize and criterion.exactness != "exact":
            values = criterion.value.split() or values

        predicate = and_(
            [
                or_([{field: string_condition(value, criterion.exactness)} for field in fields])
                for value in values
            ]
        )
        return predicate, path

    def build_token(self, handler: Handler, sub_key, criterion: TokenMatch, source: str):
        path, alias = self._resolve(handler, source)
        fields = self.target_fields(handler, sub_key, alias)

        code = criterion.code
        if code is not None and code in handler.code_map:
            code = handler.code_map[code]

        predicate = or_([{field: code} for field in fields])
        if criterion.system is not None:
            if handler.system_field is None:
                raise UnsupportedParameterError(f"{handler.key} does not support coding systems")
            predicate = and_([predicate, {field_path(alias, handler.system_field): criterion.system}])
        return predicate, path

    def build_date(self, handler: Handler, sub_key, criterion: DateRange, source: str):
        if criterion.lower is None and criterion.upper is None:
            raise UnsupportedParameterError(f"{handler.key} received a date range without bounds")
        path, alias = self._resolve(handler, source)
        fields = self.target_fields(handler, sub_key, alias)

        condition = {}
        if criterion.lower is not None:
            start, end = parse_date_bounds(criterion.lower)
            condition["$gte"] = start if criterion.lower_inclusive else end
        if criterion.upper is not None:
            start, end = parse_date_bounds(criterion.upper)
            condition["$lt"] = end if criterion.upper_inclusive else start

        return or_([{field: dict(condition)} for field in fields]), path

    def build_quantity(self, handler: Handler, sub_key, criterion: QuantityMatch, source: str):
        path, alias = self._resolve(handler, source)
        fields = self.target_fields(handler, sub_key, alias)

        operator = number_prefix_matching[criterion.comparator]
        predicate = or_([{field: {operator: criterion.value}} for field in fields])
        if criterion.unit is not None:
            if handler.unit_field is None:
                raise UnsupportedParameterError(f"{handler.key} does not support units")
            predicate = and_([predicate, {field_path(alias, handler.unit_field): criterion.unit}])
        return predicate, path

    def build_reference(self, handler: Handler, sub_key, criterion: ReferenceMatch, source: str):
        if not handler.chain:
            raise UnsupportedParameterError(f"{handler.key} has no reference to follow")
        if criterion.chain is None:
            return self._build_reference_id(handler, criterion, source)
        return self._build_chained_reference(handler, criterion, source)

    def _build_reference_id(self, handler: Handler, criterion: ReferenceMatch, source: str):
        """Compare the target id with the foreign key: the referenced record is not joined."""
        resource_type, target_id = split_reference(criterion.target_id, criterion.resource_type)

        path = self.resolver.resolve(handler.chain[:-1], source=source)
        alias = path[-1].alias if path else source
        relation = self.resolver.relation_of(alias, handler.chain[-1])
        if not relation.is_lookup:
            raise JoinResolutionError(f"'{relation.name}' is not a reference")

        if resource_type is None and relation.is_ambiguous:
            # identifiers are unique across record types, any foreign key may hold it
            targets = list(relation.targets.values())
        else:
            _, target = self.resolver.pick_target(alias, relation, resource_type)
            targets = [target]

        predicate = or_([{field_path(alias, t.local_field): target_id} for t in targets])
        return predicate, path

    def _build_chained_reference(self, handler: Handler, criterion: ReferenceMatch, source: str):
        """Search `chain` on the referenced resource.

        The chain is the referenced resource's own parameter, optionally typed and
        followed by a further chain: "name", "patient.name", "patient:Patient.name".
        """
        path = self.resolver.resolve(handler.chain, criterion.resource_type, source)
        target = path[-1]

        definition = RESOURCES.get(target.resource_type)
        if definition is None:
            raise JoinResolutionError(f"{target.resource_type} resources cannot be searched")

        head, _, rest = criterion.chain.partition(".")
        param, _, modifier = head.partition(":")
        try:
            handler_key, sub_key = definition.params[param]
        except KeyError:
            raise UnsupportedParameterError(f"{target.resource_type} has no search parameter '{param}'")
        chained_handler = definition.handlers[handler_key]

        if rest:
            if REFERENCE not in chained_handler.kinds:
                raise UnsupportedParameterError(
                    f"'{param}' on {target.resource_type} is not a reference, it cannot be chained"
                )
            nested = ReferenceMatch(resource_type=modifier or None, chain=rest, value=criterion.value)
        else:
            nested = chained_criterion(chained_handler, criterion.value, modifier or None)
        logging.debug(f"chained {handler.key} to {target.resource_type}.{criterion.chain}")
        predicate, nested_path = self.build(chained_handler, sub_key, nested, target.alias)
        return predicate, path + nested_path


def chained_criterion(handler: Handler, value: str, modifier: Optional[str] = None):
    """Interpret the raw value of a chained parameter the way the referenced
    resource's own handler would."""
    if STRING in handler.kinds and modifier in (None, "exact", "contains"):
        return StringMatch(value=value, exactness=modifier or "prefix")
    if REFERENCE in handler.kinds:
        return ReferenceMatch(target_id=value, resource_type=modifier)
    if modifier is not None:
        raise UnsupportedParameterError(f"modifier '{modifier}' is not supported on {handler.key}")
    if TOKEN in handler.kinds:
        system, code = split_token(value)
        return TokenMatch(system=system, code=code)
    if DATE in handler.kinds:
        return DateRange.on(value)
    if QUANTITY in handler.kinds:
        try:
            return QuantityMatch(value=float(value))
        except ValueError:
            raise UnsupportedParameterError(f"invalid quantity: '{value}'")
    raise UnsupportedParameterError(f"{handler.key} cannot be used in a chain")
