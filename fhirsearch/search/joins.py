import logging
from typing import Dict, List, NamedTuple, Optional, Tuple

from fhirsearch.errors import AmbiguousReferenceError, JoinResolutionError
from fhirsearch.search.catalog import ID_FIELD, SCHEMAS, Relation, Target

# alias of the searched record itself: its fields sit at the top of each pipeline row
ROOT = ""


def field_path(alias: str, field: str) -> str:
    return f"{alias}.{field}" if alias else field


class Join(NamedTuple):
    alias: str
    source: str
    relation: str
    resource_type: Optional[str]
    schema: str
    many: bool
    stages: Tuple[dict, ...]


JoinPath = Tuple[Join, ...]


class JoinResolver:
    """Creates the joins needed by one search and hands out the same join
    every time the same hop is requested.

    A hop is identified by (source alias, relation name, resource type). Each join
    is a left join producing one pipeline row per joined record, so joining the same
    hop twice would multiply rows: hops are always memoised.
    The resolver belongs to a single plan build and is dropped with it.
    """

    def __init__(self, root_schema: str):
        self.root_schema = root_schema
        self._joins: Dict[Tuple[str, str, Optional[str]], Join] = {}
        self._schemas: Dict[str, str] = {ROOT: root_schema}

    def resolve(self, chain, resource_type: Optional[str] = None, source: str = ROOT) -> JoinPath:
        """Walk `chain` (relation names) from `source`.
        `resource_type` disambiguates the last hop only.
        """
        path = []
        alias = source
        for index, relation_name in enumerate(chain):
            hint = resource_type if index == len(chain) - 1 else None
            join = self.resolve_hop(alias, relation_name, hint)
            path.append(join)
            alias = join.alias
        return tuple(path)

    def resolve_hop(self, source: str, relation_name: str, resource_type: Optional[str] = None) -> Join:
        relation = self.relation_of(source, relation_name)
        resource_type, target = self.pick_target(source, relation, resource_type)

        key = (source, relation_name, resource_type)
        join = self._joins.get(key)
        if join is None:
            join = self._create(source, relation, resource_type, target)
            self._joins[key] = join
            logging.debug(f"joined {relation_name} from '{source or 'root'}' as {join.alias}")
        return join

    def relation_of(self, source: str, relation_name: str) -> Relation:
        schema = SCHEMAS[self._schemas[source]]
        relation = schema.relations.get(relation_name)
        if relation is None:
            raise JoinResolutionError(f"{schema.name} records have no relation named '{relation_name}'")
        return relation

    def pick_target(self, source: str, relation: Relation, resource_type: Optional[str]):
        schema_name = self._schemas[source]
        if not relation.is_lookup:
            if resource_type is not None:
                raise JoinResolutionError(
                    f"'{relation.name}' on {schema_name} records is not a reference, "
                    f"it cannot point to {resource_type}"
                )
            return None, None

        if resource_type is None:
            if relation.is_ambiguous:
                raise AmbiguousReferenceError(
                    f"reference '{relation.name}' on {schema_name} records may point to "
                    f"{', '.join(sorted(relation.targets))}: a resource type is required"
                )
            resource_type = next(iter(relation.targets))

        target = relation.targets.get(resource_type)
        if target is None:
            raise JoinResolutionError(
                f"reference '{relation.name}' on {schema_name} records cannot point to {resource_type}"
            )
        return resource_type, target

    def _create(self, source: str, relation: Relation, resource_type: Optional[str], target: Target):
        alias = f"j{len(self._joins)}"
        if relation.is_lookup:
            schema = target.schema
            attach = {
                "$lookup": {
                    "from": SCHEMAS[schema].collection,
                    "localField": field_path(source, target.local_field),
                    "foreignField": ID_FIELD,
                    "as": alias,
                }
            }
        else:
            schema = relation.embedded_schema
            attach = {"$addFields": {alias: "$" + field_path(source, relation.embedded_field)}}
        unwind = {"$unwind": {"path": f"${alias}", "preserveNullAndEmptyArrays": True}}

        self._schemas[alias] = schema
        return Join(alias, source, relation.name, resource_type, schema, relation.many, (attach, unwind))

    def joins(self) -> List[Join]:
        return list(self._joins.values())

    def stages(self) -> List[dict]:
        return [stage for join in self._joins.values() for stage in join.stages]

    @property
    def has_fan_out(self) -> bool:
        return any(join.many for join in self._joins.values())
