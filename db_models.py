from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator
from pydantic.networks import validate_email


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: datetime
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY

    @property
    def order_key(self):
        return (self.createdAt, self.id)


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def coerce_phone(cls, value):
        # clients commonly post the phone as a JSON number
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("email", "phoneNumber", mode="before")
    @classmethod
    def blank_as_missing(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        # EmailStr semantics, but the stored value stays exactly as sent
        if value is not None:
            validate_email(value)
        return value


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str


class HealthResponse(BaseModel):
    success: bool = True
    message: str
    timestamp: datetime
    version: str


# Domain events returned by the reconciler for the caller to publish.

class ContactCreated(BaseModel):
    event: Literal["ContactCreated"] = "ContactCreated"
    contactId: int
    linkPrecedence: LinkPrecedence
    linkedId: Optional[int] = None


class ContactMerged(BaseModel):
    event: Literal["ContactMerged"] = "ContactMerged"
    primaryContactId: int
    demotedContactId: int
    relinkedContactIds: List[int] = Field(default_factory=list)


class ContactRelinked(BaseModel):
    event: Literal["ContactRelinked"] = "ContactRelinked"
    contactId: int
    previousLinkedId: Optional[int] = None
    linkedId: int


DomainEvent = Union[ContactCreated, ContactMerged, ContactRelinked]
