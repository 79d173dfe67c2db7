from typing import List, NamedTuple

from fhirsearch.errors import UnsupportedParameterError
from fhirsearch.search.catalog import ResourceDefinition
from fhirsearch.search.joins import ROOT, JoinPath, JoinResolver, field_path


class SortField(NamedTuple):
    path: str
    direction: str
    join_path: JoinPath


class SortPlanner:
    """Expands sort keys into pipeline fields.

    Joins go through the resolver shared with the criteria, so sorting on a
    relation already used by a criterion sorts on a row that matched it.
    Candidates of one key are read from the same row.
    """

    def __init__(self, definition: ResourceDefinition, resolver: JoinResolver):
        self.definition = definition
        self.resolver = resolver

    def plan(self, sort_keys) -> List[SortField]:
        fields = []
        for key in sort_keys:
            candidates = self.definition.sorts.get(key.param)
            if candidates is None:
                raise UnsupportedParameterError(
                    f"{self.definition.resource_type} resources cannot be sorted by '{key.param}'"
                )
            for candidate in candidates:
                join_path = self.resolver.resolve(candidate.chain)
                alias = join_path[-1].alias if join_path else ROOT
                fields.append(SortField(field_path(alias, candidate.field), key.direction, join_path))
        return fields
