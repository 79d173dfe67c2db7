from typing import List, NamedTuple, Tuple

from fhirsearch.search.catalog import ID_FIELD
from fhirsearch.search.criteria import and_, or_
from fhirsearch.search.sort import SortField

RANGE_OPERATORS = ("$gt", "$gte", "$lt", "$lte")


def field_value(path: str) -> dict:
    # missing fields evaluate to null
    return {"$ifNull": [f"${path}", None]}


def to_expression(predicate: dict) -> dict:
    """Rewrite a query document, as built by the criteria builder, into an
    aggregation expression evaluating to a boolean on one pipeline row.

    to_expression({"gender": "M"}) == {"$eq": [{"$ifNull": ["$gender", None]}, {"$literal": "M"}]}
    """
    terms = []
    for key, condition in predicate.items():
        if key in ("$and", "$or"):
            terms.append({key: [to_expression(p) for p in condition]})
        elif isinstance(condition, dict) and "$regex" in condition:
            terms.append(
                {
                    "$regexMatch": {
                        "input": {"$ifNull": [f"${key}", ""]},
                        "regex": condition["$regex"],
                        "options": condition.get("$options", ""),
                    }
                }
            )
        elif isinstance(condition, dict):
            for operator, value in condition.items():
                comparison = {operator: [field_value(key), {"$literal": value}]}
                if operator in RANGE_OPERATORS:
                    # null sorts below every value, it never falls in a range
                    comparison = {"$and": [{"$ne": [field_value(key), None]}, comparison]}
                terms.append(comparison)
        else:
            terms.append({"$eq": [field_value(key), {"$literal": condition}]})
    if len(terms) == 1:
        return terms[0]
    return {"$and": terms}


class SearchPlan(NamedTuple):
    """Everything needed to run one search against one collection.

    `terms` are AND-ed at the record level: joins produce one row per joined
    record, a record matches when each term holds on at least one of its rows.
    With several terms, each row is flagged with the terms it satisfies and
    the flags are folded while grouping rows back by record identifier, so
    every record is counted and returned once.
    """

    collection: str
    join_stages: Tuple[dict, ...]
    terms: Tuple[dict, ...]
    sort: Tuple[SortField, ...] = ()

    @property
    def flagged(self) -> bool:
        return len(self.terms) > 1

    @property
    def match(self) -> dict:
        """Row filter: the whole search with one term, any term with several."""
        if self.flagged:
            return or_(list(self.terms))
        return and_(list(self.terms))

    def filter_stages(self) -> List[dict]:
        stages = [*self.join_stages, {"$match": self.match}]
        if self.flagged:
            stages.append({"$addFields": {f"a{i}": to_expression(t) for i, t in enumerate(self.terms)}})
        return stages

    def _group_stages(self, group: dict) -> List[dict]:
        group = {"_id": f"${ID_FIELD}", **group}
        if not self.flagged:
            return [{"$group": group}]
        for index in range(len(self.terms)):
            group[f"a{index}"] = {"$max": f"$a{index}"}
        return [{"$group": group}, {"$match": {f"a{i}": True for i in range(len(self.terms))}}]

    def order_stages(self) -> List[dict]:
        if not self.sort:
            return [*self._group_stages({}), {"$sort": {"_id": 1}}]

        row_values = {}
        row_order = {ID_FIELD: 1}
        group = {}
        order = {}
        for index, field in enumerate(self.sort):
            value, flag = f"s{index}", f"n{index}"
            direction = 1 if field.direction == "asc" else -1
            row_values[value] = field_value(field.path)
            row_values[flag] = {"$cond": [{"$eq": [field_value(field.path), None]}, 1, 0]}
            # rows without a value come last, whatever the direction
            row_order[flag] = 1
            row_order[value] = direction
            # every sort value of a record comes from its first row
            group[flag] = {"$first": f"${flag}"}
            group[value] = {"$first": f"${value}"}
            order[flag] = 1
            order[value] = direction
        order["_id"] = 1

        return [
            {"$addFields": row_values},
            {"$sort": row_order},
            *self._group_stages(group),
            {"$sort": order},
        ]

    def ids_pipeline(self, offset: int, limit: int) -> List[dict]:
        return [
            *self.filter_stages(),
            *self.order_stages(),
            {"$skip": offset},
            {"$limit": limit},
            {"$project": {"_id": 1}},
        ]

    def count_pipeline(self) -> List[dict]:
        return [*self.filter_stages(), *self._group_stages({}), {"$count": "total"}]


class QueryAssembler:
    """Folds the predicates of every parameter occurrence into AND-ed terms.

    Each occurrence is an AND-list of OR-lists of predicates: every OR-list
    becomes one term. With no term at all every record matches.
    """

    def __init__(self):
        self.terms = []

    def add(self, and_groups: List[List[dict]]) -> "QueryAssembler":
        for or_group in and_groups:
            term = or_(or_group)
            if term:
                self.terms.append(term)
        return self

    @property
    def match(self) -> dict:
        return and_(self.terms)

    def assemble(self, collection: str, join_stages, sort_fields=()) -> SearchPlan:
        return SearchPlan(collection, tuple(join_stages), tuple(self.terms), tuple(sort_fields))
