"""Renders stored records as FHIR R4B resources, built with fhir.resources.

Translators are pure functions of one record: references to other records are
rendered from the foreign keys, without loading the referenced records.
"""
from datetime import date, datetime
from typing import Optional

from fhir.resources import FHIRAbstractModel
from fhir.resources.R4B import construct_fhir_element

from fhirsearch.errors import NotSupportedError
from fhirsearch.search.catalog import ID_FIELD
from fhirsearch.utils import compact, get_from_path

GENDERS = {"M": "male", "F": "female"}

# records do not store the encounter class
UNKNOWN_CLASS = {"system": "http://terminology.hl7.org/CodeSystem/v3-NullFlavor", "code": "UNK"}


def reference(resource_type, record_id) -> Optional[dict]:
    if record_id is None:
        return None
    return {"reference": f"{resource_type}/{record_id}"}


def format_date(value, with_time=False):
    if isinstance(value, datetime):
        # stored datetimes are naive UTC
        return f"{value.isoformat()}Z" if with_time else value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def human_names(record):
    return [
        {
            "family": name.get("family_name"),
            "given": [n for n in (name.get("given_name"), name.get("middle_name")) if n],
        }
        for name in record.get("names") or []
    ]


def address(record):
    return {
        "city": record.get("city_village"),
        "state": record.get("state_province"),
        "postalCode": record.get("postal_code"),
        "country": record.get("country"),
    }


class Translator:
    resource_type = None

    def to_wire_resource(self, record: dict) -> FHIRAbstractModel:
        resource = {"id": record[ID_FIELD], **self.translate(record)}
        return construct_fhir_element(self.resource_type, compact(resource))

    def translate(self, record: dict) -> dict:
        raise NotImplementedError


class PersonTranslator(Translator):
    resource_type = "Person"

    def translate(self, record):
        return {
            "name": human_names(record),
            "gender": GENDERS.get(record.get("gender"), "unknown"),
            "birthDate": format_date(record.get("birthdate")),
            "address": [address(a) for a in record.get("addresses") or []],
        }


class PatientTranslator(PersonTranslator):
    resource_type = "Patient"

    def translate(self, record):
        return {
            **super().translate(record),
            "identifier": [
                {"type": {"text": identifier.get("identifier_type")}, "value": identifier.get("identifier")}
                for identifier in record.get("identifiers") or []
            ],
        }


class RelatedPersonTranslator(Translator):
    resource_type = "RelatedPerson"

    def translate(self, record):
        return {"patient": reference("Patient", record.get("person_a_id"))}


class PractitionerTranslator(Translator):
    resource_type = "Practitioner"

    def translate(self, record):
        return {"identifier": [{"value": record.get("identifier")}]}


class LocationTranslator(Translator):
    resource_type = "Location"

    def translate(self, record):
        return {"name": record.get("name"), "address": address(record)}


class EncounterTranslator(Translator):
    resource_type = "Encounter"

    def translate(self, record):
        participants = []
        for participant in record.get("providers") or []:
            if participant.get("provider_id"):
                individual = reference("Practitioner", participant["provider_id"])
            else:
                individual = reference("RelatedPerson", participant.get("related_person_id"))
            participants.append({"individual": individual})

        return {
            "status": "unknown",
            "class": UNKNOWN_CLASS,
            "subject": reference("Patient", record.get("patient_id")),
            "period": {"start": format_date(record.get("encounter_datetime"), with_time=True)},
            "location": [{"location": reference("Location", record.get("location_id"))}],
            "participant": participants,
            "length": {
                "value": get_from_path(record, "length.value"),
                "unit": get_from_path(record, "length.unit"),
            },
        }


TRANSLATORS = {
    t.resource_type: t()
    for t in (
        PatientTranslator,
        PersonTranslator,
        RelatedPersonTranslator,
        PractitionerTranslator,
        LocationTranslator,
        EncounterTranslator,
    )
}


def get_translator(resource_type) -> Translator:
    translator = TRANSLATORS.get(resource_type)
    if translator is None:
        raise NotSupportedError(f'unsupported FHIR resource: "{resource_type}"')
    return translator
