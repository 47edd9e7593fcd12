from typing import Literal

from pydantic import BaseModel

ActivityAction = Literal["created", "updated", "deleted"]


class ActivityLogEntry(BaseModel):
    id: str
    action: ActivityAction
    patient_name: str
    changes: str | None = None
    timestamp: str
    user: str


class SessionCreate(BaseModel):
    email: str


class SessionResponse(BaseModel):
    username: str
    email: str
