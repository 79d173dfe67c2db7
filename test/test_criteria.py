from datetime import datetime

import pytest
from pytest import raises

from fhirsearch.errors import AmbiguousReferenceError, JoinResolutionError, UnsupportedParameterError
from fhirsearch.search.catalog import (
    ADDRESS_SEARCH_HANDLER,
    CITY_PROPERTY,
    DATE_RANGE_SEARCH_HANDLER,
    GENDER_SEARCH_HANDLER,
    IDENTIFIER_SEARCH_HANDLER,
    NAME_SEARCH_HANDLER,
    PARTICIPANT_REFERENCE_SEARCH_HANDLER,
    PATIENT_REFERENCE_SEARCH_HANDLER,
    QUANTITY_SEARCH_HANDLER,
    RESOURCES,
)
from fhirsearch.search.criteria import CriteriaBuilder, and_, or_, parse_date_bounds, split_token
from fhirsearch.search.joins import JoinResolver
from fhirsearch.search.params import (
    DateRange,
    QuantityMatch,
    ReferenceMatch,
    StringMatch,
    TokenMatch,
)


def builder_for(resource_type):
    definition = RESOURCES[resource_type]
    resolver = JoinResolver(definition.schema)
    return definition, resolver, CriteriaBuilder(resolver)


def build(resource_type, handler_key, criterion, sub_key=None):
    definition, resolver, builder = builder_for(resource_type)
    predicate, _ = builder.build(definition.handlers[handler_key], sub_key, criterion)
    return predicate, resolver


######
## DATES
##
######


def test_parse_date_bounds_precisions():
    assert parse_date_bounds("1999") == (datetime(1999, 1, 1), datetime(2000, 1, 1))
    assert parse_date_bounds("1999-12") == (datetime(1999, 12, 1), datetime(2000, 1, 1))
    assert parse_date_bounds("2000-02") == (datetime(2000, 2, 1), datetime(2000, 3, 1))
    assert parse_date_bounds("2008-08-15") == (datetime(2008, 8, 15), datetime(2008, 8, 16))
    assert parse_date_bounds("2008-08-15T10:00") == (
        datetime(2008, 8, 15, 10, 0),
        datetime(2008, 8, 15, 10, 1),
    )
    assert parse_date_bounds("2008-08-15T10:00:30") == (
        datetime(2008, 8, 15, 10, 0, 30),
        datetime(2008, 8, 15, 10, 0, 31),
    )
    assert parse_date_bounds("2008-08-15T10:00:30.5") == (
        datetime(2008, 8, 15, 10, 0, 30, 500000),
        datetime(2008, 8, 15, 10, 0, 30, 600000),
    )


def test_parse_date_bounds_offsets():
    assert parse_date_bounds("2008-08-15T10:00:00Z")[0] == datetime(2008, 8, 15, 10)
    assert parse_date_bounds("2008-08-15T10:00:00+02:00")[0] == datetime(2008, 8, 15, 8)
    assert parse_date_bounds("2008-08-15T22:30:00-03:00")[0] == datetime(2008, 8, 16, 1, 30)


@pytest.mark.parametrize("value", ["", "15-08-2008", "2008-13", "2008-02-30", "yesterday", None])
def test_parse_date_bounds_invalid(value):
    with raises(UnsupportedParameterError, match="invalid date"):
        parse_date_bounds(value)


def test_date_equality_covers_the_whole_precision():
    predicate, _ = build("Encounter", DATE_RANGE_SEARCH_HANDLER, DateRange.on("2008-08-15"))
    assert predicate == {
        "encounter_datetime": {"$gte": datetime(2008, 8, 15), "$lt": datetime(2008, 8, 16)}
    }


def test_date_exclusive_bounds():
    predicate, _ = build(
        "Encounter",
        DATE_RANGE_SEARCH_HANDLER,
        DateRange(lower="2008", upper="2010-03", lower_inclusive=False, upper_inclusive=False),
    )
    assert predicate == {
        "encounter_datetime": {"$gte": datetime(2009, 1, 1), "$lt": datetime(2010, 3, 1)}
    }


def test_date_one_sided():
    predicate, _ = build("Patient", DATE_RANGE_SEARCH_HANDLER, DateRange(upper="1980"))
    assert predicate == {"birthdate": {"$lt": datetime(1981, 1, 1)}}


def test_date_without_bounds():
    with raises(UnsupportedParameterError, match="without bounds"):
        build("Patient", DATE_RANGE_SEARCH_HANDLER, DateRange())


######
## STRINGS
##
######


def test_string_prefix_is_case_insensitive_and_escaped():
    predicate, _ = build("Location", NAME_SEARCH_HANDLER, StringMatch(value="St. Mary"))
    assert predicate == {"name": {"$regex": r"^St\.\ Mary", "$options": "i"}}


def test_string_contains():
    predicate, _ = build("Location", NAME_SEARCH_HANDLER, StringMatch(value="ston", exactness="contains"))
    assert predicate == {"name": {"$regex": "ston", "$options": "i"}}


def test_string_exact():
    predicate, _ = build("Location", NAME_SEARCH_HANDLER, StringMatch(value="Boston", exactness="exact"))
    assert predicate == {"name": "Boston"}


def test_name_is_tokenized_over_every_name_field():
    predicate, resolver = build("Patient", NAME_SEARCH_HANDLER, StringMatch(value="John Doe"))
    assert predicate == {
        "$and": [
            {
                "$or": [
                    {"j0.given_name": {"$regex": "^John", "$options": "i"}},
                    {"j0.middle_name": {"$regex": "^John", "$options": "i"}},
                    {"j0.family_name": {"$regex": "^John", "$options": "i"}},
                ]
            },
            {
                "$or": [
                    {"j0.given_name": {"$regex": "^Doe", "$options": "i"}},
                    {"j0.middle_name": {"$regex": "^Doe", "$options": "i"}},
                    {"j0.family_name": {"$regex": "^Doe", "$options": "i"}},
                ]
            },
        ]
    }
    assert [j.alias for j in resolver.joins()] == ["j0"]


def test_address_sub_key():
    predicate, _ = build("Patient", ADDRESS_SEARCH_HANDLER, StringMatch(value="Bos"), CITY_PROPERTY)
    assert predicate == {"j0.city_village": {"$regex": "^Bos", "$options": "i"}}


def test_address_unknown_sub_key():
    with raises(UnsupportedParameterError, match="no property 'planet'"):
        build("Patient", ADDRESS_SEARCH_HANDLER, StringMatch(value="Mars"), "planet")


######
## TOKENS
##
######


def test_gender_codes_are_mapped():
    assert build("Patient", GENDER_SEARCH_HANDLER, TokenMatch(code="male"))[0] == {"gender": "M"}
    assert build("Patient", GENDER_SEARCH_HANDLER, TokenMatch(code="female"))[0] == {"gender": "F"}
    assert build("Patient", GENDER_SEARCH_HANDLER, TokenMatch(code="unknown"))[0] == {"gender": None}
    assert build("Patient", GENDER_SEARCH_HANDLER, TokenMatch(code="robot"))[0] == {"gender": "robot"}


def test_missing_token():
    assert build("Patient", GENDER_SEARCH_HANDLER, TokenMatch())[0] == {"gender": None}


def test_token_with_system():
    predicate, _ = build(
        "Patient", IDENTIFIER_SEARCH_HANDLER, TokenMatch(system="OpenMRS ID", code="101-6")
    )
    assert predicate == {"$and": [{"j0.identifier": "101-6"}, {"j0.identifier_type": "OpenMRS ID"}]}


def test_token_system_without_system_field():
    with raises(UnsupportedParameterError, match="coding systems"):
        build("Patient", GENDER_SEARCH_HANDLER, TokenMatch(system="http://hl7.org", code="male"))


def test_criterion_kind_not_accepted():
    with raises(UnsupportedParameterError, match="does not accept date criteria"):
        build("Patient", GENDER_SEARCH_HANDLER, DateRange.on("2000"))


######
## QUANTITIES
##
######


def test_quantity_comparators():
    predicate, _ = build("Encounter", QUANTITY_SEARCH_HANDLER, QuantityMatch(value=40, comparator="gt"))
    assert predicate == {"length.value": {"$gt": 40.0}}
    predicate, _ = build("Encounter", QUANTITY_SEARCH_HANDLER, QuantityMatch(value=40, comparator="le"))
    assert predicate == {"length.value": {"$lte": 40.0}}


def test_quantity_with_unit():
    predicate, _ = build("Encounter", QUANTITY_SEARCH_HANDLER, QuantityMatch(value=45, unit="min"))
    assert predicate == {"$and": [{"length.value": {"$eq": 45.0}}, {"length.unit": "min"}]}


######
## REFERENCES
##
######


def test_direct_reference_does_not_join():
    predicate, resolver = build(
        "Encounter", PATIENT_REFERENCE_SEARCH_HANDLER, ReferenceMatch(target_id="Patient/pat-1")
    )
    assert predicate == {"patient_id": "pat-1"}
    assert resolver.joins() == []


def test_direct_reference_type_mismatch():
    with raises(UnsupportedParameterError, match="does not point to a Location"):
        build(
            "Encounter",
            PATIENT_REFERENCE_SEARCH_HANDLER,
            ReferenceMatch(target_id="Patient/pat-1", resource_type="Location"),
        )


def test_direct_ambiguous_reference_checks_every_foreign_key():
    predicate, resolver = build(
        "Encounter", PARTICIPANT_REFERENCE_SEARCH_HANDLER, ReferenceMatch(target_id="rel-2")
    )
    assert predicate == {"$or": [{"j0.provider_id": "rel-2"}, {"j0.related_person_id": "rel-2"}]}
    assert [j.relation for j in resolver.joins()] == ["participants"]


def test_direct_reference_with_type():
    predicate, _ = build(
        "Encounter",
        PARTICIPANT_REFERENCE_SEARCH_HANDLER,
        ReferenceMatch(target_id="prov-2", resource_type="Practitioner"),
    )
    assert predicate == {"j0.provider_id": "prov-2"}


def test_chained_reference():
    predicate, resolver = build(
        "Encounter",
        PATIENT_REFERENCE_SEARCH_HANDLER,
        ReferenceMatch(chain="gender", value="male"),
    )
    assert predicate == {"j0.gender": "M"}
    (join,) = resolver.joins()
    assert join.stages[0] == {
        "$lookup": {"from": "patient", "localField": "patient_id", "foreignField": "uuid", "as": "j0"}
    }


def test_chained_reference_through_several_joins():
    predicate, resolver = build(
        "Encounter",
        PARTICIPANT_REFERENCE_SEARCH_HANDLER,
        ReferenceMatch(resource_type="Practitioner", chain="family", value="Dyson"),
    )
    assert predicate == {"j3.family_name": {"$regex": "^Dyson", "$options": "i"}}
    assert [(j.alias, j.source, j.relation) for j in resolver.joins()] == [
        ("j0", "", "participants"),
        ("j1", "j0", "individual"),
        ("j2", "j1", "person"),
        ("j3", "j2", "names"),
    ]


def test_chained_ambiguous_reference_needs_a_type():
    with raises(AmbiguousReferenceError, match="Practitioner, RelatedPerson"):
        build(
            "Encounter",
            PARTICIPANT_REFERENCE_SEARCH_HANDLER,
            ReferenceMatch(chain="name", value="Miles"),
        )


def test_chained_reference_wrong_type():
    with raises(JoinResolutionError, match="cannot point to Location"):
        build(
            "Encounter",
            PATIENT_REFERENCE_SEARCH_HANDLER,
            ReferenceMatch(resource_type="Location", chain="name", value="Boston"),
        )


def test_chained_reference_unknown_parameter():
    with raises(UnsupportedParameterError, match="Patient has no search parameter 'shoe-size'"):
        build(
            "Encounter",
            PATIENT_REFERENCE_SEARCH_HANDLER,
            ReferenceMatch(chain="shoe-size", value="42"),
        )


def test_chain_of_chains():
    predicate, resolver = build(
        "Encounter",
        PARTICIPANT_REFERENCE_SEARCH_HANDLER,
        ReferenceMatch(resource_type="RelatedPerson", chain="patient:Patient.family", value="Doe"),
    )
    assert predicate == {"j3.family_name": {"$regex": "^Doe", "$options": "i"}}
    assert [(j.alias, j.relation, j.resource_type) for j in resolver.joins()] == [
        ("j0", "participants", None),
        ("j1", "individual", "RelatedPerson"),
        ("j2", "person_a", "Patient"),
        ("j3", "names", None),
    ]

    predicate, _ = build(
        "Encounter",
        PARTICIPANT_REFERENCE_SEARCH_HANDLER,
        ReferenceMatch(resource_type="RelatedPerson", chain="patient", value="Patient/pat-2"),
    )
    assert predicate == {"j1.person_a_id": "pat-2"}


def test_only_references_can_be_chained_further():
    with raises(UnsupportedParameterError, match="'gender' on Patient is not a reference"):
        build(
            "Encounter",
            PATIENT_REFERENCE_SEARCH_HANDLER,
            ReferenceMatch(chain="gender.name", value="x"),
        )
    with raises(UnsupportedParameterError, match="modifier 'Patient' is not supported"):
        build(
            "Encounter",
            PATIENT_REFERENCE_SEARCH_HANDLER,
            ReferenceMatch(chain="gender:Patient", value="male"),
        )


######
## HELPERS
##
######


def test_and_or_collapse():
    assert and_([]) == {}
    assert and_([{"a": 1}]) == {"a": 1}
    assert and_([{"a": 1}, {}, {"b": 2}]) == {"$and": [{"a": 1}, {"b": 2}]}
    assert or_([{"a": 1}]) == {"a": 1}
    assert or_([{"a": 1}, {}]) == {}
    assert or_([{"a": 1}, {"b": 2}]) == {"$or": [{"a": 1}, {"b": 2}]}


def test_split_token():
    assert split_token("male") == (None, "male")
    assert split_token("OpenMRS ID|101-6") == ("OpenMRS ID", "101-6")
    assert split_token("|101-6") == (None, "101-6")
    assert split_token("OpenMRS ID|") == ("OpenMRS ID", None)
