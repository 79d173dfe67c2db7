import logging
from typing import List

from pymongo.database import Database
from pymongo.errors import PyMongoError

from fhirsearch.errors import ExecutionError, NotSupportedError
from fhirsearch.search.catalog import ID_FIELD, get_definition


class MongoRecordAccessor:
    """Runs search plans against the MongoDB collection backing one resource type."""

    def __init__(self, db: Database, resource_type: str):
        definition = get_definition(resource_type)
        if definition is None:
            raise NotSupportedError(f'unsupported FHIR resource: "{resource_type}"')
        self.db = db
        self.resource_type = resource_type
        self.collection = definition.collection

    def get_matching_ids(self, plan, offset: int, limit: int) -> List[str]:
        rows = self._aggregate(plan.collection, plan.ids_pipeline(offset, limit))
        return [row["_id"] for row in rows]

    def count_matching(self, plan) -> int:
        rows = self._aggregate(plan.collection, plan.count_pipeline())
        return rows[0]["total"] if rows else 0

    def load_by_ids(self, ids) -> List[dict]:
        try:
            return list(
                self.db[self.collection].find({ID_FIELD: {"$in": list(ids)}}, projection={"_id": False})
            )
        except PyMongoError as e:
            logging.error(f"could not load {self.resource_type} records: {e}")
            raise ExecutionError(f"could not load {self.resource_type} records: {e}") from e

    def _aggregate(self, collection, pipeline) -> List[dict]:
        try:
            return list(self.db[collection].aggregate(pipeline))
        except PyMongoError as e:
            logging.error(f"search on {collection} failed: {e}")
            raise ExecutionError(f"search on {collection} failed: {e}") from e
