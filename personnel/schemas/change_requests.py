import uuid
from datetime import date
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, TypeAdapter, field_validator


REQUEST_TYPES = (
    "DELETE_PERSON",
    "TRANSFER_PERSON",
    "CHANGE_GRADE",
    "CHANGE_UNIT",
    "DEACTIVATE_PERSON",
    "UPDATE_PERSON",
    "CREATE_USER",
)
REQUEST_STATUSES = ("PENDING", "APPROVED", "REJECTED", "CANCELLED")
TERMINAL_STATUSES = ("APPROVED", "REJECTED", "CANCELLED")

# Person fields an UPDATE_PERSON patch may touch; anything else is dropped
PERSON_PATCH_FIELDS = (
    "service_no",
    "first_name",
    "last_name",
    "personal_number",
    "birth_date",
    "gender",
    "city",
    "address",
    "phone",
    "position",
    "service_start_date",
    "notes",
    "photo_url",
)
REQUIRED_PERSON_FIELDS = {"service_no", "first_name", "last_name"}
DATE_PERSON_FIELDS = {"birth_date", "service_start_date"}
GENDERS = {"M", "F", "O"}


def pick_allowed_patch(patch: Any) -> Dict[str, Any]:
    if not isinstance(patch, dict):
        return {}
    return {k: patch[k] for k in PERSON_PATCH_FIELDS if k in patch}


def _check_patch_values(patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if value is None:
            if key in REQUIRED_PERSON_FIELDS:
                raise ValueError(f"{key} cannot be cleared")
            continue
        if not isinstance(value, str):
            raise ValueError(f"{key} must be a string or null")
        if key in REQUIRED_PERSON_FIELDS and not value.strip():
            raise ValueError(f"{key} cannot be empty")
        if key in DATE_PERSON_FIELDS and value.strip():
            try:
                date.fromisoformat(value.strip()[:10])
            except ValueError:
                raise ValueError(f"{key} must be an ISO date")
        if key == "gender" and value not in GENDERS:
            raise ValueError("gender must be one of M, F, O")


class _PayloadBase(BaseModel):
    reason: str = ""


class DeletePersonPayload(_PayloadBase):
    type: Literal["DELETE_PERSON"]


class DeactivatePersonPayload(_PayloadBase):
    type: Literal["DEACTIVATE_PERSON"]


class MovePersonPayload(_PayloadBase):
    type: Literal["TRANSFER_PERSON", "CHANGE_UNIT"]
    to_unit_id: uuid.UUID


class ChangeGradePayload(_PayloadBase):
    type: Literal["CHANGE_GRADE"]
    new_grade_id: str = Field(min_length=1)


class PersonPatchMeta(BaseModel):
    patch: Dict[str, Any]

    @field_validator("patch", mode="before")
    @classmethod
    def _allowed_only(cls, v):
        picked = pick_allowed_patch(v)
        if not picked:
            raise ValueError("meta.patch is required (at least one field)")
        _check_patch_values(picked)
        return picked


class UpdatePersonPayload(_PayloadBase):
    type: Literal["UPDATE_PERSON"]
    meta: PersonPatchMeta


class NewUser(BaseModel):
    username: str = Field(min_length=1)
    email: EmailStr
    role: Literal["ADMIN", "OFFICER", "OPERATOR", "COMMANDER", "AUDITOR"]
    unit_id: Optional[uuid.UUID] = None
    contract_valid_from: Optional[date] = None
    contract_valid_to: Optional[date] = None
    never_expires: bool = True
    must_change_password: bool = True

    @field_validator("username", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class CreateUserPayload(_PayloadBase):
    type: Literal["CREATE_USER"]
    user: NewUser
    meta: Dict[str, Any] = Field(default_factory=dict)


RequestPayload = Annotated[
    Union[
        DeletePersonPayload,
        DeactivatePersonPayload,
        MovePersonPayload,
        ChangeGradePayload,
        UpdatePersonPayload,
        CreateUserPayload,
    ],
    Field(discriminator="type"),
]

payload_adapter = TypeAdapter(RequestPayload)


def parse_payload(request_type: str, payload: Optional[Dict[str, Any]]):
    """Validate a raw payload dict against the variant selected by ``request_type``."""
    data = dict(payload or {})
    data["type"] = request_type
    return payload_adapter.validate_python(data)


def dump_payload(variant) -> Dict[str, Any]:
    return variant.model_dump(mode="json", exclude={"type"})


class ChangeRequestCreate(BaseModel):
    type: str
    person_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class DecisionBody(BaseModel):
    note: Optional[str] = None
