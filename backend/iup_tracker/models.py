"""SQLModel data models.

This module defines the application's database tables using SQLModel
together with the literal enum tokens shared with clients. Enum columns
store the token values (`"magistrants"`, `"admin_review"`, ...), never the
Python member names.

The supervisor relationship is deliberately stored twice: a student's
`User.supervisor_id` backlink and the supervisor's rows in
`SuperviseeLink`. Nothing in the schema ties the two together; the
relationship services keep them consistent.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlalchemy import Enum as SAEnum
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_year() -> int:
    """Academic year used for plan lookups and creation."""
    return utcnow().year


class Role(str, Enum):
    MAGISTRANT = "magistrants"
    DOCTORANT = "doctorants"
    LEADER = "leaders"
    ADMIN = "admins"


STUDENT_ROLES = frozenset({Role.MAGISTRANT, Role.DOCTORANT})
# only master's students carry an individual plan
PLAN_BEARING_ROLE = Role.MAGISTRANT


class EducationProgram(str, Enum):
    P_7M01503 = "7M01503"
    P_7M06101 = "7M06101"
    P_7M06104 = "7M06104"
    P_8D01103 = "8D01103"


class Language(str, Enum):
    KAZAKH = "Қазақша"
    RUSSIAN = "Русский"


class Degree(str, Enum):
    PHD_ASSOC_PROF = "phd_assoc_prof"
    CANDIDATE_PROF = "candidate_prof"
    ASSOC_PROF = "assoc_prof"
    PHD = "phd"
    CANDIDATE = "candidate"
    PROFESSOR = "professor"
    DOCTOR = "doctor"


class StageType(str, Enum):
    DISSERTATION_TOPIC = "dissertation_topic"
    DISSERTATION_APPLICATION = "dissertation_application"


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    SUPERVISOR_REVIEW = "supervisor_review"
    SUPERVISOR_APPROVED = "supervisor_approved"
    ADMIN_REVIEW = "admin_review"
    ADMIN_APPROVED = "admin_approved"
    COMPLETED = "completed"
    REJECTED = "rejected"


DONE_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.ADMIN_APPROVED})


class OverallStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    SUPERVISOR_REVIEW = "supervisor_review"
    ADMIN_REVIEW = "admin_review"
    COMPLETED = "completed"
    APPROVED = "approved"


TOPIC_LANGUAGES = ("kazakh", "russian", "english")


def _enum_column(enum_cls, *, nullable: bool = False, index: bool = False, default=None) -> Column:
    return Column(
        SAEnum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=nullable,
        index=index,
        default=default,
    )


class User(SQLModel, table=True):
    """A registered user of any role.

    Role-specific fields:
    - students (`magistrants`, `doctorants`): `education_program`, `supervisor_id`
    - supervisors (`leaders`): `degree`, supervisee links
    - administrators (`admins`): `password_hash`; everyone else signs in
      with the shared password
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    lastname: str = Field(index=True, max_length=50)
    firstname: str = Field(max_length=50)
    fathername: str = Field(default="", max_length=50)
    role: Role = Field(sa_column=_enum_column(Role, index=True))
    whatsapp: str
    email: str = Field(index=True, unique=True)
    degree: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    education_program: Optional[EducationProgram] = Field(
        default=None, sa_column=_enum_column(EducationProgram, nullable=True)
    )
    language: Language = Field(sa_column=_enum_column(Language))
    username: Optional[str] = Field(default=None, index=True, unique=True)
    password_hash: Optional[str] = None
    is_active: bool = Field(default=True, index=True)
    last_login: Optional[datetime] = None
    created_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    supervisor_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        parts = [self.lastname, self.firstname]
        if self.fathername:
            parts.append(self.fathername)
        return " ".join(parts)

    @property
    def is_student(self) -> bool:
        return self.role in STUDENT_ROLES


class SuperviseeLink(SQLModel, table=True):
    """One entry of a supervisor's supervisee set."""
    supervisor_id: int = Field(foreign_key="user.id", primary_key=True)
    student_id: int = Field(foreign_key="user.id", primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)


class Plan(SQLModel, table=True):
    """An individual academic plan (IUP) of one student for one year.

    `supervisor_id` is a snapshot taken at creation and may go stale when
    the student's supervisor changes later.
    """
    __table_args__ = (
        Index(
            "ux_plan_student_year_active",
            "student_id",
            "year",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active = true"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    year: int = Field(default_factory=current_year, index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    supervisor_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    overall_status: OverallStatus = Field(
        default=OverallStatus.DRAFT,
        sa_column=_enum_column(OverallStatus, index=True, default=OverallStatus.DRAFT),
    )
    current_stage: int = Field(default=1, ge=1)
    total_stages: int = Field(default=2)
    education_program: Optional[EducationProgram] = Field(
        default=None, sa_column=_enum_column(EducationProgram, nullable=True, index=True)
    )
    language: Optional[Language] = Field(default=None, sa_column=_enum_column(Language, nullable=True))
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    stages: List["Stage"] = Relationship(
        back_populates="plan",
        sa_relationship_kwargs={"order_by": "Stage.stage_number", "cascade": "all, delete-orphan"},
    )

    @property
    def progress(self) -> int:
        """Percentage of finished stages, rounded half up."""
        if not self.stages or not self.total_stages:
            return 0
        done = sum(1 for s in self.stages if s.status in DONE_STATUSES)
        return int(done * 100 / self.total_stages + 0.5)

    @property
    def current_stage_data(self) -> Optional["Stage"]:
        for stage in self.stages:
            if stage.stage_number == self.current_stage:
                return stage
        return None

    def get_stage(self, stage_number: int) -> Optional["Stage"]:
        for stage in self.stages:
            if stage.stage_number == stage_number:
                return stage
        return None


class Stage(SQLModel, table=True):
    """A single milestone of a `Plan` with its own approval workflow.

    Student data lives in the plain columns (`topic_*`, `text_data`,
    `files`, `additional_data`); the supervisor's suggested edits live in
    the `edit_*` columns.
    """
    __table_args__ = (UniqueConstraint("plan_id", "stage_number", name="uq_stage_plan_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    plan_id: Optional[int] = Field(default=None, foreign_key="plan.id", index=True)
    stage_number: int = Field(ge=1)
    stage_type: StageType = Field(
        default=StageType.DISSERTATION_TOPIC, sa_column=_enum_column(StageType)
    )
    title: str
    description: Optional[str] = None

    topic_kazakh: Optional[str] = None
    topic_russian: Optional[str] = None
    topic_english: Optional[str] = None
    text_data: Optional[str] = None
    files: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    additional_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    edit_topic_kazakh: Optional[str] = None
    edit_topic_russian: Optional[str] = None
    edit_topic_english: Optional[str] = None
    edit_text_data: Optional[str] = None
    edit_comments: Optional[str] = None
    edited_at: Optional[datetime] = None
    edited_by_id: Optional[int] = Field(default=None, foreign_key="user.id")

    status: StageStatus = Field(
        default=StageStatus.NOT_STARTED,
        sa_column=_enum_column(StageStatus, default=StageStatus.NOT_STARTED),
    )
    submitted_at: Optional[datetime] = None
    supervisor_reviewed_at: Optional[datetime] = None
    admin_reviewed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    requires_supervisor_approval: bool = True
    requires_admin_approval: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    plan: Optional[Plan] = Relationship(back_populates="stages")
    history: List["StageStatusEvent"] = Relationship(
        back_populates="stage",
        sa_relationship_kwargs={"order_by": "StageStatusEvent.id", "cascade": "all, delete-orphan"},
    )

    def topic(self, prefix: str = "topic") -> Dict[str, Optional[str]]:
        return {lang: getattr(self, f"{prefix}_{lang}") for lang in TOPIC_LANGUAGES}


class StageStatusEvent(SQLModel, table=True):
    """Append-only status history entry of a `Stage`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    stage_id: Optional[int] = Field(default=None, foreign_key="stage.id", index=True)
    status: StageStatus = Field(sa_column=_enum_column(StageStatus))
    changed_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    changed_at: datetime = Field(default_factory=utcnow)
    comment: Optional[str] = None
    stage: Optional[Stage] = Relationship(back_populates="history")
