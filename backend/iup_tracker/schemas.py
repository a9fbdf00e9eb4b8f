"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and provide validation for the
controllers and tests. User creation is a union discriminated by `role`
so each role carries exactly the fields it needs: an education program
for students, a degree list for supervisors and a password for
administrators.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

from .models import Degree, EducationProgram, Language, StageStatus

WHATSAPP_PATTERN = r"^\+?[1-9]\d{1,14}$"


class LoginIn(BaseModel):
    """Payload for the login endpoint."""
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class _UserBase(BaseModel):
    lastname: str = Field(min_length=1, max_length=50)
    firstname: str = Field(min_length=1, max_length=50)
    fathername: str = Field(default="", max_length=50)
    whatsapp: str = Field(pattern=WHATSAPP_PATTERN)
    email: EmailStr
    language: Language
    username: Optional[str] = Field(default=None, max_length=100)


class StudentCreate(_UserBase):
    """Master's (`magistrants`) or doctoral (`doctorants`) student."""
    role: Literal["magistrants", "doctorants"]
    education_program: EducationProgram
    supervisor_id: Optional[int] = None


class SupervisorCreate(_UserBase):
    role: Literal["leaders"]
    degree: List[Degree] = Field(min_length=1)
    supervisee_ids: List[int] = Field(default_factory=list)


class AdminCreate(_UserBase):
    role: Literal["admins"]
    password: str = Field(min_length=6)


UserCreate = Annotated[
    Union[StudentCreate, SupervisorCreate, AdminCreate],
    Field(discriminator="role"),
]


class UserUpdate(BaseModel):
    """Partial user update; only fields present in the request are applied."""
    lastname: Optional[str] = Field(default=None, min_length=1, max_length=50)
    firstname: Optional[str] = Field(default=None, min_length=1, max_length=50)
    fathername: Optional[str] = Field(default=None, max_length=50)
    whatsapp: Optional[str] = Field(default=None, pattern=WHATSAPP_PATTERN)
    email: Optional[EmailStr] = None
    language: Optional[Language] = None
    role: Optional[Literal["magistrants", "doctorants", "leaders", "admins"]] = None
    education_program: Optional[EducationProgram] = None
    degree: Optional[List[Degree]] = None
    password: Optional[str] = Field(default=None, min_length=6)
    supervisor_id: Optional[int] = None
    supervisee_ids: Optional[List[int]] = None


class TopicIn(BaseModel):
    """Dissertation topic; missing languages are left unchanged on merge."""
    kazakh: Optional[str] = None
    russian: Optional[str] = None
    english: Optional[str] = None


class FileRefIn(BaseModel):
    """Reference to an already uploaded file. Contents are never read."""
    file_name: str
    file_path: str
    file_size: Optional[int] = Field(default=None, ge=0)


class StudentDataIn(BaseModel):
    dissertation_topic: Optional[TopicIn] = None
    text_data: Optional[str] = None
    files: Optional[List[FileRefIn]] = None
    additional_data: Optional[Dict[str, Any]] = None


class SupervisorEditsIn(BaseModel):
    dissertation_topic: Optional[TopicIn] = None
    text_data: Optional[str] = None
    comments: Optional[str] = None


class StageUpdateIn(BaseModel):
    """Body of `PUT /iup/{id}/stage/{n}`."""
    student_data: Optional[StudentDataIn] = None
    supervisor_edits: Optional[SupervisorEditsIn] = None
    status: Optional[StageStatus] = None
    comment: Optional[str] = None

