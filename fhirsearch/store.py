import sys
import logging
from typing import Optional, Union

from fhir.resources.R4B.bundle import Bundle as FHIRBundle
from fhir.resources.R4B.operationoutcome import OperationOutcome
from pymongo import ASCENDING, MongoClient
from tqdm import tqdm

from fhirsearch.accessor import MongoRecordAccessor
from fhirsearch.errors import ExecutionError, FHIRSearchError, NotSupportedError
from fhirsearch.search.bundle import Bundle, BundleProvider
from fhirsearch.search.catalog import ID_FIELD, SCHEMAS, get_definition
from fhirsearch.search.params import ParameterSet
from fhirsearch.search.searcharguments import SearchArguments
from fhirsearch.search.searchquery import SearchQuery
from fhirsearch.translators import get_translator


def foreign_keys(schema_name, prefix=""):
    """Fields of a record holding the uuid of another record, embedded sub-records included."""
    fields = []
    for relation in SCHEMAS[schema_name].relations.values():
        if relation.is_lookup:
            fields.extend(f"{prefix}{target.local_field}" for target in relation.targets.values())
        else:
            fields.extend(
                foreign_keys(relation.embedded_schema, f"{prefix}{relation.embedded_field}.")
            )
    return fields


class FHIRSearchStore:
    def __init__(self, mongo_client: MongoClient, db_name: str):
        self.db = mongo_client[db_name]
        self.resources = self.db.list_collection_names()

    @property
    def initialized(self):
        return len(self.resources) > 0

    def reset(self):
        """
        Drops all collections currently in the database.
        """
        for collection in self.resources:
            self.db.drop_collection(collection)
        self.resources = []

    def bootstrap(self, resource: Optional[str] = None, show_progress: Optional[bool] = True):
        """
        Creates the collections backing the searchable resources, with their indexes:
        a unique index on the record identifier and one index per foreign key.
        """
        if resource:
            definition = get_definition(resource)
            if definition is None:
                raise NotSupportedError(f'unsupported FHIR resource: "{resource}"')
            schemas = [definition.schema]
        else:
            schemas = [name for name, schema in SCHEMAS.items() if schema.collection]

        existing_collections = self.db.list_collection_names()
        schemas = [s for s in schemas if SCHEMAS[s].collection not in existing_collections]
        logging.info(f"bootstrapping {len(schemas)} collections")
        if show_progress:
            tqdm.write("\n", end="")
            schemas = tqdm(schemas, file=sys.stdout, desc="Bootstrapping collections...")
        for schema_name in schemas:
            collection = SCHEMAS[schema_name].collection
            self.db.create_collection(collection)
            # Add unique constraint on the record identifier
            self.db[collection].create_index(ID_FIELD, unique=True)
            for field in foreign_keys(schema_name):
                self.db[collection].create_index([(field, ASCENDING)])
            self.resources.append(collection)

    def search_provider(self, resource_type: str, params: ParameterSet) -> BundleProvider:
        """
        Plans a search and returns a provider for its results.
        Raises a FHIRSearchError if the parameters cannot be planned.
        """
        accessor = MongoRecordAccessor(self.db, resource_type)
        return SearchQuery().execute(params, accessor, get_translator(resource_type))

    def search(
        self, resource_type, query_string=None, params=None, as_json=False
    ) -> Union[FHIRBundle, OperationOutcome, dict]:
        """
        Searchs for records matching the request arguments.

        Args:
            - resource_type: FHIR resource (eg: 'Patient')
            - query_string: raw query string (eg: 'name=John&gender=male')
            - params: request arguments as a mapping of lists or a MultiDict,
            used when no query string is given
            (eg: {"name": ["John"], "_sort": ["-birthdate"]}).
            - as_json: return dicts instead of fhir.resources models

        Returns: A searchset Bundle, or an OperationOutcome.
        """
        try:
            arguments = SearchArguments().parse(
                query_string if query_string is not None else params, resource_type
            )
            provider = self.search_provider(resource_type, arguments.params)
            bundle = Bundle(resource_type).fill(
                provider,
                offset=arguments.offset,
                count=arguments.count,
                query=arguments.query,
                is_summary_count=arguments.is_summary_count,
            )
        except ExecutionError as e:
            logging.error(f"{resource_type} search failed: {e.errors}")
            return e.format(as_json)
        except FHIRSearchError as e:
            return e.format(as_json)
        return bundle.json() if as_json else bundle.content
