from pydantic import BaseModel
from typing import Optional


class VisibilityChoice(BaseModel):
    visibility: str
    scope: Optional[str] = "this_note"


class ClaimVisibilityRequest(VisibilityChoice):
    token: str


class RespondVisibilityRequest(VisibilityChoice):
    invite_id: int


class ReferenceVisibilityUpdate(BaseModel):
    visibility: str


class ChatContextRequest(BaseModel):
    event_ids: list[int]


class ConsentContextRequest(BaseModel):
    names: list[str]
    contributor_id: Optional[int] = None


class InviteCreate(BaseModel):
    event_id: int
    recipient_name: str
    recipient_contact: Optional[str] = None
    parent_invite_id: Optional[int] = None
    message: Optional[str] = None


class InviteResponse(BaseModel):
    id: int
    created: bool
    depth: int
    status: str


class VisibilityWriteResponse(BaseModel):
    reference_id: int
    person_id: Optional[int]
    scope: str
    visibility: str
    preference_contributor_id: Optional[int] = None
