"""
Personal data schemas.

FormGenerationRequest is the JSON body accepted on the wire (camelCase
keys). PersonalData is the request-scoped domain record that validation,
rendering and metadata construction operate on. It is never persisted;
only the rendered PDF and a metadata subset are.

The structured-address shape is canonical. Fields of the older flat
revision (free-form address, email, date of birth, identity document) are
optional and only validated when populated.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _blank_to_empty(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return value


class _PersonalDataFields(BaseModel):
    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    first_name: str = Field(default="", description="Given name (Име)")
    middle_name: str = Field(default="", description="Middle name (Презиме)")
    last_name: str = Field(default="", description="Family name (Фамилия)")
    egn: str = Field(
        default="",
        description="Bulgarian national identifier, exactly 10 digits",
    )
    date_of_birth: Optional[date] = None

    # ------------------------------------------------------------------
    # Structured address
    # ------------------------------------------------------------------
    city: str = ""
    postal_code: str = Field(default="", description="Exactly 4 digits")
    community: str = Field(default="", description="Residential complex (ж.к.)")
    street: str = ""
    number: str = ""
    block: str = ""
    entrance: str = ""
    floor: str = ""
    apartment: str = ""

    # ------------------------------------------------------------------
    # Free-form address and contacts
    # ------------------------------------------------------------------
    address: str = Field(
        default="",
        description="Free-form address; overrides the structured address on the form",
    )
    phone_number: str = ""
    email: str = ""

    # ------------------------------------------------------------------
    # Identity document
    # ------------------------------------------------------------------
    document_number: str = ""
    document_issue_date: Optional[date] = None
    document_issued_by: str = ""

    @field_validator(
        "first_name",
        "middle_name",
        "last_name",
        "egn",
        "city",
        "postal_code",
        "community",
        "street",
        "number",
        "block",
        "entrance",
        "floor",
        "apartment",
        "address",
        "phone_number",
        "email",
        "document_number",
        "document_issued_by",
        mode="before",
    )
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return _blank_to_empty(v)


class FormGenerationRequest(_PersonalDataFields):
    """
    Body of ``POST /api/form/generate``.

    Keys are camelCase on the wire; snake_case names are accepted as well.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class PersonalData(_PersonalDataFields):
    """
    The subject of the declaration form.

    Constructed fresh per request and immutable afterwards.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def from_request(cls, request: FormGenerationRequest) -> "PersonalData":
        return cls(**request.model_dump(by_alias=False))

    def full_name(self) -> str:
        parts = (self.first_name, self.middle_name, self.last_name)
        return " ".join(part for part in parts if part)

    def full_address(self) -> str:
        """
        Address line as printed on the form.

        A free-form address wins. Otherwise the structured parts are joined
        with their Bulgarian prefixes, skipping the ones left blank.
        """
        if self.address:
            return self.address

        parts = [
            f"гр.(с) {self.city} {self.postal_code}".strip(),
            f"ж.к. {self.community}" if self.community else "",
            f"ул. {self.street} {self.number}".strip() if self.street else "",
            f"бл. {self.block}" if self.block else "",
            f"вх. {self.entrance}" if self.entrance else "",
            f"ет. {self.floor}" if self.floor else "",
            f"ап. {self.apartment}" if self.apartment else "",
        ]
        return ", ".join(part for part in parts if part)
