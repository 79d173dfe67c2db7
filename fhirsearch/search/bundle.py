import os
import json
import logging
import threading
from typing import List, Optional

from fhir.resources.R4B.bundle import Bundle as FHIRBundle
from yarl import URL

from fhirsearch.errors import ExecutionError, FHIRSearchError
from fhirsearch.search.catalog import ID_FIELD

FHIR_API_URL = os.getenv("FHIR_API_URL", "https://arkhn.com")

SUBSETTED_TAG = {
    "system": "http://terminology.hl7.org/CodeSystem/v3-ObservationValue",
    "code": "SUBSETTED",
}


def check_window(offset: int, limit: int):
    if offset < 0:
        raise ValueError(f"offset must be positive, got {offset}")
    if limit < 0:
        raise ValueError(f"limit must be positive, got {limit}")


class BundleProvider:
    """Lazy access to the results of one search plan.

    Nothing runs until a count or a page is requested. The total is computed
    once per provider; pages are fetched on demand, identifiers first, then the
    records themselves.
    """

    def __init__(self, plan, accessor, translator):
        self.plan = plan
        self.accessor = accessor
        self.translator = translator
        self._total: Optional[int] = None
        self._lock = threading.Lock()

    def total_count(self) -> int:
        with self._lock:
            if self._total is None:
                self._total = self._call(self.accessor.count_matching, self.plan)
        return self._total

    def get_resource_ids(self, offset: int, limit: int) -> List[str]:
        check_window(offset, limit)
        if limit == 0:
            return []
        return self._call(self.accessor.get_matching_ids, self.plan, offset, limit)

    def fetch(self, offset: int, limit: int) -> list:
        """Returns the page [offset, offset + limit) as wire resources, in search order."""
        ids = self.get_resource_ids(offset, limit)
        if not ids:
            return []

        records = {record[ID_FIELD]: record for record in self._call(self.accessor.load_by_ids, ids)}
        resources = []
        for record_id in ids:
            record = records.get(record_id)
            if record is None:
                logging.warning(f"{self.accessor.resource_type} {record_id} disappeared during search")
                continue
            resources.append(self.translator.to_wire_resource(record))
        return resources

    def _call(self, method, *args):
        try:
            return method(*args)
        except FHIRSearchError:
            raise
        except Exception as e:
            raise ExecutionError(f"search on {self.accessor.resource_type} failed: {e}") from e


class Bundle:
    """Searchset bundle of one page of results."""

    def __init__(self, resource_type: str):
        self.resource_type = resource_type
        self.content: Optional[FHIRBundle] = None

    def url(self, query=(), offset=None, count=None) -> str:
        pairs = list(query)
        if count is not None:
            pairs.append(("_count", str(count)))
        if offset is not None:
            pairs.append(("_offset", str(offset)))
        return str((URL(FHIR_API_URL) / self.resource_type).with_query(pairs))

    def fill(self, provider: BundleProvider, offset=0, count=None, query=(), is_summary_count=False):
        total = provider.total_count()

        if is_summary_count:
            self.content = FHIRBundle(type="searchset", total=total, meta={"tag": [SUBSETTED_TAG]})
            return self

        count = total if count is None else count
        entries = [
            {
                "fullUrl": str(URL(FHIR_API_URL) / self.resource_type / resource.id),
                "resource": resource,
                "search": {"mode": "match"},
            }
            for resource in provider.fetch(offset, count)
        ]

        links = [{"relation": "self", "url": self.url(query, offset, count)}]
        if count > 0 and offset + count < total:
            links.append({"relation": "next", "url": self.url(query, offset + count, count)})
        if count > 0 and offset > 0:
            links.append({"relation": "previous", "url": self.url(query, max(offset - count, 0), count)})

        self.content = FHIRBundle(type="searchset", total=total, entry=entries or None, link=links)
        return self

    def json(self) -> dict:
        return json.loads(self.content.json())
