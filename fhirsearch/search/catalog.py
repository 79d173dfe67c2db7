"""Static description of the record store and of the search grammar.

Everything in this module is built once at import time and never mutated:

- SCHEMAS describes the record types stored in MongoDB and the relations
  between them (embedded arrays and references by uuid to other collections).
- RESOURCES describes, for each FHIR resource type, which record type backs it,
  which search handlers it supports, which request parameters map to them and
  how each sort parameter is computed.
"""
from types import MappingProxyType
from typing import FrozenSet, Mapping, NamedTuple, Optional, Tuple

# Handler keys
NAME_SEARCH_HANDLER = "name.search.handler"
GIVEN_SEARCH_HANDLER = "given.search.handler"
FAMILY_SEARCH_HANDLER = "family.search.handler"
GENDER_SEARCH_HANDLER = "gender.search.handler"
DATE_RANGE_SEARCH_HANDLER = "date.range.search.handler"
ADDRESS_SEARCH_HANDLER = "address.search.handler"
IDENTIFIER_SEARCH_HANDLER = "identifier.search.handler"
ID_SEARCH_HANDLER = "id.search.handler"
QUANTITY_SEARCH_HANDLER = "quantity.search.handler"
PATIENT_REFERENCE_SEARCH_HANDLER = "patient.reference.search.handler"
PARTICIPANT_REFERENCE_SEARCH_HANDLER = "participant.reference.search.handler"
LOCATION_REFERENCE_SEARCH_HANDLER = "location.reference.search.handler"

# Address sub-keys
CITY_PROPERTY = "city"
STATE_PROPERTY = "state"
POSTAL_CODE_PROPERTY = "postalCode"
COUNTRY_PROPERTY = "country"

STRING = "string"
TOKEN = "token"
DATE = "date"
QUANTITY = "quantity"
REFERENCE = "reference"

# identifier of every record, in every collection
ID_FIELD = "uuid"


class Target(NamedTuple):
    schema: str
    local_field: str


class Relation(NamedTuple):
    name: str
    # array of sub-records stored on the source record
    embedded_field: Optional[str] = None
    embedded_schema: Optional[str] = None
    # resource type -> record referenced by uuid from `local_field`
    targets: Mapping[str, Target] = MappingProxyType({})

    @property
    def is_lookup(self):
        return self.embedded_field is None

    @property
    def many(self):
        return not self.is_lookup

    @property
    def is_ambiguous(self):
        return len(self.targets) > 1


def embedded(name, field, schema):
    return Relation(name, embedded_field=field, embedded_schema=schema)


def lookup(name, **targets):
    return Relation(name, targets=MappingProxyType(targets))


class RecordSchema(NamedTuple):
    name: str
    collection: Optional[str]
    relations: Mapping[str, Relation]


def _schema(name, collection, *relations):
    return RecordSchema(name, collection, MappingProxyType({r.name: r for r in relations}))


SCHEMAS: Mapping[str, RecordSchema] = MappingProxyType(
    {
        s.name: s
        for s in (
            _schema(
                "patient",
                "patient",
                embedded("names", "names", "person_name"),
                embedded("addresses", "addresses", "person_address"),
                embedded("identifiers", "identifiers", "patient_identifier"),
            ),
            _schema(
                "person",
                "person",
                embedded("names", "names", "person_name"),
                embedded("addresses", "addresses", "person_address"),
            ),
            _schema(
                "relationship",
                "relationship",
                lookup("person_a", Patient=Target("patient", "person_a_id")),
                lookup("person_b", Person=Target("person", "person_b_id")),
            ),
            _schema("provider", "provider", lookup("person", Person=Target("person", "person_id"))),
            _schema("location", "location"),
            _schema(
                "encounter",
                "encounter",
                lookup("patient", Patient=Target("patient", "patient_id")),
                lookup("location", Location=Target("location", "location_id")),
                embedded("participants", "providers", "encounter_provider"),
            ),
            _schema(
                "encounter_provider",
                None,
                lookup(
                    "individual",
                    Practitioner=Target("provider", "provider_id"),
                    RelatedPerson=Target("relationship", "related_person_id"),
                ),
            ),
            _schema("person_name", None),
            _schema("person_address", None),
            _schema("patient_identifier", None),
        )
    }
)


class Handler(NamedTuple):
    key: str
    kinds: FrozenSet[str]
    # relation names walked from the resource root before applying the predicate
    chain: Tuple[str, ...] = ()
    # sub-key -> target fields (OR-ed); None is the key used without sub-key
    fields: Mapping[Optional[str], Tuple[str, ...]] = MappingProxyType({})
    system_field: Optional[str] = None
    code_map: Mapping[str, Optional[str]] = MappingProxyType({})
    tokenize: bool = False
    unit_field: Optional[str] = None


class SortCandidate(NamedTuple):
    chain: Tuple[str, ...]
    field: str


class ResourceDefinition(NamedTuple):
    resource_type: str
    schema: str
    handlers: Mapping[str, Handler]
    # request parameter name -> (handler key, sub-key)
    params: Mapping[str, Tuple[str, Optional[str]]]
    sorts: Mapping[str, Tuple[SortCandidate, ...]]

    @property
    def collection(self):
        return SCHEMAS[self.schema].collection


def _handler(key, kinds, chain=(), fields=None, **options):
    if isinstance(kinds, str):
        kinds = (kinds,)
    if isinstance(fields, tuple):
        fields = {None: fields}
    return Handler(
        key,
        frozenset(kinds),
        tuple(chain),
        MappingProxyType(dict(fields or {})),
        **{
            k: MappingProxyType(v) if isinstance(v, dict) else v for k, v in options.items()
        },
    )


def _definition(resource_type, schema, handlers, params, sorts):
    return ResourceDefinition(
        resource_type,
        schema,
        MappingProxyType({h.key: h for h in handlers}),
        MappingProxyType(params),
        MappingProxyType({k: tuple(SortCandidate(*c) for c in v) for k, v in sorts.items()}),
    )


GENDER_CODES = {"male": "M", "female": "F", "other": None, "unknown": None}

NAME_FIELDS = ("given_name", "middle_name", "family_name")

ADDRESS_FIELDS = {
    CITY_PROPERTY: ("city_village",),
    STATE_PROPERTY: ("state_province",),
    POSTAL_CODE_PROPERTY: ("postal_code",),
    COUNTRY_PROPERTY: ("country",),
}

ADDRESS_PARAMS = {
    "address-city": (ADDRESS_SEARCH_HANDLER, CITY_PROPERTY),
    "address-state": (ADDRESS_SEARCH_HANDLER, STATE_PROPERTY),
    "address-postalcode": (ADDRESS_SEARCH_HANDLER, POSTAL_CODE_PROPERTY),
    "address-country": (ADDRESS_SEARCH_HANDLER, COUNTRY_PROPERTY),
}

PERSON_PARAMS = {
    "name": (NAME_SEARCH_HANDLER, None),
    "given": (GIVEN_SEARCH_HANDLER, None),
    "family": (FAMILY_SEARCH_HANDLER, None),
    "gender": (GENDER_SEARCH_HANDLER, None),
    "birthdate": (DATE_RANGE_SEARCH_HANDLER, None),
    "_id": (ID_SEARCH_HANDLER, None),
    **ADDRESS_PARAMS,
}


def _person_handlers(prefix=()):
    """Handlers shared by every resource backed by person-like records,
    `prefix` being the relations leading from the resource root to that record."""
    names = (*prefix, "names")
    addresses = (*prefix, "addresses")
    return [
        _handler(NAME_SEARCH_HANDLER, STRING, names, NAME_FIELDS, tokenize=True),
        _handler(GIVEN_SEARCH_HANDLER, STRING, names, ("given_name",)),
        _handler(FAMILY_SEARCH_HANDLER, STRING, names, ("family_name",)),
        _handler(GENDER_SEARCH_HANDLER, TOKEN, prefix, ("gender",), code_map=GENDER_CODES),
        _handler(DATE_RANGE_SEARCH_HANDLER, DATE, prefix, ("birthdate",)),
        _handler(ADDRESS_SEARCH_HANDLER, STRING, addresses, ADDRESS_FIELDS),
    ]


def _person_sorts(prefix=()):
    names = (*prefix, "names")
    addresses = (*prefix, "addresses")
    return {
        "name": [(names, "family_name"), (names, "given_name")],
        "given": [(names, "given_name")],
        "family": [(names, "family_name")],
        "birthdate": [(prefix, "birthdate")],
        "address-city": [(addresses, "city_village")],
        "address-state": [(addresses, "state_province")],
        "address-postalcode": [(addresses, "postal_code")],
        "address-country": [(addresses, "country")],
    }


ID_HANDLER = _handler(ID_SEARCH_HANDLER, TOKEN, (), (ID_FIELD,))

RESOURCES: Mapping[str, ResourceDefinition] = MappingProxyType(
    {
        d.resource_type: d
        for d in (
            _definition(
                "Patient",
                "patient",
                [
                    *_person_handlers(),
                    ID_HANDLER,
                    _handler(
                        IDENTIFIER_SEARCH_HANDLER,
                        TOKEN,
                        ("identifiers",),
                        ("identifier",),
                        system_field="identifier_type",
                    ),
                ],
                {**PERSON_PARAMS, "identifier": (IDENTIFIER_SEARCH_HANDLER, None)},
                _person_sorts(),
            ),
            _definition("Person", "person", [*_person_handlers(), ID_HANDLER], PERSON_PARAMS, _person_sorts()),
            _definition(
                "RelatedPerson",
                "relationship",
                [
                    *_person_handlers(("person_b",)),
                    ID_HANDLER,
                    _handler(PATIENT_REFERENCE_SEARCH_HANDLER, REFERENCE, ("person_a",)),
                ],
                {**PERSON_PARAMS, "patient": (PATIENT_REFERENCE_SEARCH_HANDLER, None)},
                _person_sorts(("person_b",)),
            ),
            _definition(
                "Practitioner",
                "provider",
                [
                    *_person_handlers(("person",)),
                    ID_HANDLER,
                    _handler(IDENTIFIER_SEARCH_HANDLER, TOKEN, (), ("identifier",)),
                ],
                {**PERSON_PARAMS, "identifier": (IDENTIFIER_SEARCH_HANDLER, None)},
                {**_person_sorts(("person",)), "identifier": [((), "identifier")]},
            ),
            _definition(
                "Location",
                "location",
                [
                    _handler(NAME_SEARCH_HANDLER, STRING, (), ("name",)),
                    _handler(ADDRESS_SEARCH_HANDLER, STRING, (), ADDRESS_FIELDS),
                    ID_HANDLER,
                ],
                {"name": (NAME_SEARCH_HANDLER, None), "_id": (ID_SEARCH_HANDLER, None), **ADDRESS_PARAMS},
                {
                    "name": [((), "name")],
                    "address-city": [((), "city_village")],
                    "address-state": [((), "state_province")],
                    "address-postalcode": [((), "postal_code")],
                    "address-country": [((), "country")],
                },
            ),
            _definition(
                "Encounter",
                "encounter",
                [
                    _handler(DATE_RANGE_SEARCH_HANDLER, DATE, (), ("encounter_datetime",)),
                    _handler(PATIENT_REFERENCE_SEARCH_HANDLER, REFERENCE, ("patient",)),
                    _handler(
                        PARTICIPANT_REFERENCE_SEARCH_HANDLER, REFERENCE, ("participants", "individual")
                    ),
                    _handler(LOCATION_REFERENCE_SEARCH_HANDLER, REFERENCE, ("location",)),
                    _handler(
                        QUANTITY_SEARCH_HANDLER,
                        QUANTITY,
                        (),
                        ("length.value",),
                        unit_field="length.unit",
                    ),
                    ID_HANDLER,
                ],
                {
                    "date": (DATE_RANGE_SEARCH_HANDLER, None),
                    "subject": (PATIENT_REFERENCE_SEARCH_HANDLER, None),
                    "patient": (PATIENT_REFERENCE_SEARCH_HANDLER, None),
                    "participant": (PARTICIPANT_REFERENCE_SEARCH_HANDLER, None),
                    "location": (LOCATION_REFERENCE_SEARCH_HANDLER, None),
                    "length": (QUANTITY_SEARCH_HANDLER, None),
                    "_id": (ID_SEARCH_HANDLER, None),
                },
                {
                    "date": [((), "encounter_datetime")],
                    "length": [((), "length.value")],
                    "location": [(("location",), "name")],
                },
            ),
        )
    }
)


def get_definition(resource_type) -> Optional[ResourceDefinition]:
    return RESOURCES.get(resource_type)
