from datetime import date

import pytest
from pydantic import ValidationError

from zzld_form.app.schemas.personal_data import FormGenerationRequest, PersonalData


def test_request_accepts_camel_case_keys():
    request = FormGenerationRequest.model_validate(
        {
            "firstName": " Иван ",
            "lastName": "Петров",
            "egn": "1234567890",
            "postalCode": "1000",
            "phoneNumber": "+359888123456",
            "dateOfBirth": "1990-01-31",
            "unknownField": "ignored",
        }
    )

    assert request.first_name == "Иван"
    assert request.postal_code == "1000"
    assert request.phone_number == "+359888123456"
    assert request.date_of_birth == date(1990, 1, 31)


def test_request_accepts_snake_case_and_nulls():
    request = FormGenerationRequest.model_validate(
        {"first_name": "Иван", "middleName": None, "city": None}
    )

    assert request.first_name == "Иван"
    assert request.middle_name == ""
    assert request.city == ""


def test_personal_data_is_immutable():
    record = PersonalData(first_name="Иван")
    with pytest.raises(ValidationError):
        record.first_name = "Петър"


def test_full_name_skips_blank_parts():
    assert PersonalData(first_name="Иван", last_name="Петров").full_name() == "Иван Петров"
    assert (
        PersonalData(first_name="Иван", middle_name="Георгиев", last_name="Петров").full_name()
        == "Иван Георгиев Петров"
    )


def test_full_address_composes_structured_parts():
    record = PersonalData(
        city="София",
        postal_code="1000",
        community="Младост 1",
        street="Александър Малинов",
        number="12",
        block="5",
        entrance="А",
        floor="3",
        apartment="14",
    )

    assert record.full_address() == (
        "гр.(с) София 1000, ж.к. Младост 1, ул. Александър Малинов 12, "
        "бл. 5, вх. А, ет. 3, ап. 14"
    )


def test_full_address_omits_blank_parts():
    record = PersonalData(city="Пловдив", postal_code="4000", street="Главна", number="1")
    assert record.full_address() == "гр.(с) Пловдив 4000, ул. Главна 1"


def test_free_form_address_wins():
    record = PersonalData(city="София", postal_code="1000", address="бул. Витоша 1, София")
    assert record.full_address() == "бул. Витоша 1, София"


def test_from_request_copies_every_field():
    request = FormGenerationRequest(first_name="Иван", egn="1234567890", floor="2")
    record = PersonalData.from_request(request)

    assert record.first_name == "Иван"
    assert record.egn == "1234567890"
    assert record.floor == "2"
