import logging

from fhirsearch.errors import NotSupportedError, UnknownHandlerError, UnsupportedParameterError
from fhirsearch.search.bundle import BundleProvider
from fhirsearch.search.catalog import get_definition
from fhirsearch.search.corequerybuilder import QueryAssembler
from fhirsearch.search.criteria import CriteriaBuilder
from fhirsearch.search.joins import JoinResolver
from fhirsearch.search.params import ParameterSet
from fhirsearch.search.sort import SortPlanner


class SearchQuery:
    """Plans a search and binds the plan to a record accessor.

    Planning never touches the store: any invalid parameter is reported before
    a single query runs.
    """

    def execute(self, params: ParameterSet, accessor, translator) -> BundleProvider:
        resource_type = accessor.resource_type
        definition = get_definition(resource_type)
        if definition is None:
            raise NotSupportedError(f'unsupported FHIR resource: "{resource_type}"')

        resolver = JoinResolver(definition.schema)
        builder = CriteriaBuilder(resolver)
        assembler = QueryAssembler()

        for entry in params.entries:
            if entry.group.is_empty():
                continue
            handler = definition.handlers.get(entry.handler)
            if handler is None:
                raise UnknownHandlerError(
                    f"search handler {entry.handler} is not available on {resource_type} resources"
                )
            if entry.sub_key is not None and entry.sub_key not in handler.fields:
                raise UnsupportedParameterError(f"{entry.handler} has no property '{entry.sub_key}'")

            assembler.add(
                [
                    [builder.build(handler, entry.sub_key, criterion)[0] for criterion in or_group]
                    for or_group in entry.group.and_groups
                ]
            )

        sort_fields = SortPlanner(definition, resolver).plan(params.sort)
        plan = assembler.assemble(definition.collection, resolver.stages(), sort_fields)
        logging.debug(f"{resource_type} search on {plan.collection}: {[*plan.filter_stages(), *plan.order_stages()]}")
        return BundleProvider(plan, accessor, translator)
