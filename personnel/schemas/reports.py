import uuid
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReportCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    report_date: date = Field(alias="date")
    unit_id: Optional[uuid.UUID] = None  # defaults to the caller's unit


class RowBase(BaseModel):
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    emergency: bool = False


class RowCreate(RowBase):
    person_id: uuid.UUID
    category_id: uuid.UUID


class RowUpdate(BaseModel):
    category_id: Optional[uuid.UUID] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    emergency: Optional[bool] = None


class ReviewBody(BaseModel):
    comment: Optional[str] = None
