import json
from datetime import datetime

import mongomock
import pytest

from fhirsearch import FHIRSearchStore

DB_NAME = "fhirsearch"
COLLECTIONS = ["patient", "person", "relationship", "provider", "location", "encounter"]
DATE_FIELDS = ["birthdate", "encounter_datetime"]


def load_records(collection):
    with open(f"test/fixtures/{collection}.json") as f:
        records = json.load(f)
    for record in records:
        for field in DATE_FIELDS:
            if record.get(field):
                record[field] = datetime.fromisoformat(record[field])
    return records


@pytest.fixture(scope="function")
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture(scope="function")
def store(mongo_client):
    fhirsearch_store = FHIRSearchStore(mongo_client, DB_NAME)
    fhirsearch_store.bootstrap(show_progress=False)
    for collection in COLLECTIONS:
        mongo_client[DB_NAME][collection].insert_many(load_records(collection))
    return fhirsearch_store


@pytest.fixture(scope="function")
def search_ids(store):
    """Runs a search and returns the ids of the resources in the bundle, in order."""

    def search(resource_type, query_string=None, params=None):
        bundle = store.search(resource_type, query_string=query_string, params=params, as_json=True)
        assert bundle["resourceType"] == "Bundle", bundle
        return [entry["resource"]["id"] for entry in bundle.get("entry", [])]

    return search


@pytest.fixture(scope="function")
def db(store, mongo_client):
    """The database behind `store`, to add records a single test needs."""
    return mongo_client[DB_NAME]
