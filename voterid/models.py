from pydantic import BaseModel, Field
from typing import Dict, Any, List, Optional


class VoterProfile(BaseModel):
    gender: Optional[str] = None
    dob: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    national_id: str = Field(min_length=1, max_length=64)
    profile: Optional[VoterProfile] = None


class VerifyRequest(BaseModel):
    verified_by: Optional[str] = None


class IssueRequest(BaseModel):
    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=86400)


class RedeemRequest(BaseModel):
    credential: Dict[str, Any]


class IssueResponse(BaseModel):
    credential: Dict[str, Any]
    artifact_url: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    env: str
    config: Dict[str, bool]
    errors: List[str] = Field(default_factory=list)
