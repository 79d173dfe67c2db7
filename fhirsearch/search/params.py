from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StringMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["string"] = "string"
    value: str
    exactness: Literal["prefix", "contains", "exact"] = "prefix"


class TokenMatch(BaseModel):
    """A code, optionally scoped by its coding system.
    A missing code searches for records where the property is not set.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["token"] = "token"
    system: Optional[str] = None
    code: Optional[str] = None


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["date"] = "date"
    lower: Optional[str] = None
    upper: Optional[str] = None
    lower_inclusive: bool = True
    upper_inclusive: bool = True

    @classmethod
    def on(cls, value: str) -> "DateRange":
        return cls(lower=value, upper=value)


class QuantityMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["quantity"] = "quantity"
    value: float
    comparator: Literal["eq", "ne", "gt", "ge", "lt", "le"] = "eq"
    unit: Optional[str] = None


class ReferenceMatch(BaseModel):
    """Either a direct match on the referenced resource id (`target_id`),
    or a chained search on a parameter (`chain`) of the referenced resource.
    `resource_type` picks the referenced resource type when the reference
    may point to several of them.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["reference"] = "reference"
    target_id: Optional[str] = None
    resource_type: Optional[str] = None
    chain: Optional[str] = None
    value: Optional[str] = None

    @model_validator(mode="after")
    def check_shape(self):
        if self.target_id is None and self.chain is None:
            raise ValueError("a reference criterion needs either a target_id or a chain")
        if self.target_id is not None and self.chain is not None:
            raise ValueError("a reference criterion cannot have both a target_id and a chain")
        if self.chain is not None and self.value is None:
            raise ValueError(f"chained reference on '{self.chain}' is missing a value")
        return self


Criterion = Annotated[
    Union[StringMatch, TokenMatch, DateRange, QuantityMatch, ReferenceMatch],
    Field(discriminator="kind"),
]


class ValueGroup(BaseModel):
    """AND-list of OR-lists of criteria."""

    model_config = ConfigDict(frozen=True)

    and_groups: List[List[Criterion]] = []

    @field_validator("and_groups")
    @classmethod
    def no_empty_or_list(cls, and_groups):
        for or_group in and_groups:
            if len(or_group) == 0:
                raise ValueError("an OR-list must contain at least one criterion")
        return and_groups

    @classmethod
    def of(cls, *or_groups) -> "ValueGroup":
        """Build a group from OR-lists; a bare criterion is a one-member OR-list.

        ValueGroup.of([a, b], c) means (a OR b) AND c
        """
        return cls(
            and_groups=[
                list(group) if isinstance(group, (list, tuple)) else [group] for group in or_groups
            ]
        )

    def is_empty(self) -> bool:
        return len(self.and_groups) == 0


class ParameterEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    handler: str
    sub_key: Optional[str] = None
    group: ValueGroup


class SortKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    param: str
    direction: Literal["asc", "desc"] = "asc"


class ParameterSet(BaseModel):
    entries: List[ParameterEntry] = []
    sort: List[SortKey] = []

    def add_parameter(
        self, handler: str, group: Union[ValueGroup, Criterion], sub_key: Optional[str] = None
    ) -> "ParameterSet":
        if not isinstance(group, ValueGroup):
            group = ValueGroup.of(group)
        self.entries.append(ParameterEntry(handler=handler, sub_key=sub_key, group=group))
        return self

    def set_sort(self, *keys) -> "ParameterSet":
        """Accepts SortKey instances, (param, direction) tuples or param names."""
        sort = []
        for key in keys:
            if isinstance(key, SortKey):
                sort.append(key)
            elif isinstance(key, tuple):
                sort.append(SortKey(param=key[0], direction=key[1]))
            else:
                sort.append(SortKey(param=key))
        self.sort = sort
        return self

    def get_parameters(self, handler: str) -> List[ParameterEntry]:
        return [entry for entry in self.entries if entry.handler == handler]
