"""
Portal domain models - identities, profiles, audit events and API payloads
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, List

Role = Literal["internal", "client"]
Severity = Literal["info", "warning", "critical"]

# ============ IDENTITY & AUTHORIZATION ============

class Identity(BaseModel):
    """Verified subject resolved from request credentials"""
    user_id: str
    email: Optional[str] = None
    auth_method: str = "email"

class SessionTokens(BaseModel):
    """Session issued by the identity provider"""
    access_token: str
    refresh_token: str
    expires_in: int = 3600

class Profile(BaseModel):
    id: str
    role: Role
    client_id: Optional[str] = None

    @property
    def is_internal(self) -> bool:
        return self.role == "internal"

# ============ AUDIT ============

class SecurityEvent(BaseModel):
    event_id: str
    event_type: str
    user_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    severity: Severity = "info"
    created_at: str

# ============ FILE STORAGE ============

class FileMetadata(BaseModel):
    mime_type: Optional[str] = None
    name: Optional[str] = None

class GrantPermissionRequest(BaseModel):
    file_id: Optional[str] = None
    access_token: Optional[str] = None

class UploadResponse(BaseModel):
    file_id: str
    web_view_link: Optional[str] = None
    download_link: Optional[str] = None

# ============ AI PARSING ============

class ParseResumeRequest(BaseModel):
    file_id: Optional[str] = None
    candidate_id: Optional[str] = None

class ExperienceEntry(BaseModel):
    title: str = ""
    company: str = ""
    duration: str = ""

class EducationEntry(BaseModel):
    degree: str = ""
    institution: str = ""
    year: str = ""

class ParsedResume(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    country_emoji: Optional[str] = None
    summary: Optional[str] = None
    skills: List[str] = Field(default_factory=list)
    experience: List[ExperienceEntry] = Field(default_factory=list)
    education: List[EducationEntry] = Field(default_factory=list)

class ExtractSkillsRequest(BaseModel):
    description: Optional[str] = None

class JobSkills(BaseModel):
    skills: List[str] = Field(min_length=1)
    seniority: Optional[str] = None

# ============ PORTAL ============

class PortalAccountResponse(BaseModel):
    client_id: str
    name: Optional[str] = None
    has_contract: bool = False
    impersonating: bool = False
