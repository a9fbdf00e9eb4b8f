"""Business logic services used by HTTP controllers and CLI scripts.

This module holds the service classes that coordinate repositories and
domain rules:

- `AuthService`: sign-in and token issuance
- `UserService`: user administration
- `RelationshipService`: keeps `User.supervisor_id` and the supervisor's
  supervisee links in agreement, and creates plans for newly linked
  master's students
- `PlanService`: individual plans, stage updates and the status workflow
- `StatisticsService`: admin dashboard aggregates

Multi-step operations commit step by step. A failure part way through
leaves the earlier commits in place; `RelationshipService.repair_links`
is the reconciliation pass for the supervision links.
"""

import hmac
import json
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from .models import OverallStatus, Role, StageStatus
from .utils.transitions import can_transition

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("iup_tracker.services")

DEFAULT_STAGES = (
    {
        "stage_number": 1,
        "stage_type": models.StageType.DISSERTATION_TOPIC,
        "title": "Dissertation topic",
        "description": "Choose and formulate the dissertation topic in three languages",
        "requires_supervisor_approval": True,
        "requires_admin_approval": True,
    },
    {
        "stage_number": 2,
        "stage_type": models.StageType.DISSERTATION_APPLICATION,
        "title": "Dissertation topic application",
        "description": "Submit the official application for approval of the dissertation topic",
        "requires_supervisor_approval": True,
        "requires_admin_approval": True,
    },
)

# status -> stage timestamps stamped when a stage enters it
MILESTONE_FIELDS = {
    StageStatus.SUBMITTED: ("submitted_at",),
    StageStatus.SUPERVISOR_APPROVED: ("supervisor_reviewed_at",),
    StageStatus.ADMIN_APPROVED: ("completed_at", "admin_reviewed_at"),
    StageStatus.COMPLETED: ("completed_at",),
}

SUBMIT_COMMENT = "Submitted for review"
STARTED_COMMENT = "Started filling in data"
NEXT_STAGE_COMMENT = "Previous stage completed"
FORWARDED_COMMENT = "Approved by supervisor and forwarded to the program administrator for final approval"


def _log_event(event: str, **fields):
    logger.info("%s %s", event, json.dumps(fields, ensure_ascii=True, default=str))


class AuthService:
    """Authentication related operations."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def authenticate(self, username: str, password: str) -> Optional[Tuple[str, models.User]]:
        """Verify credentials and return `(token, user)` on success.

        Administrators check their own password hash; every other role
        signs in with the shared password. Returns `None` on failure.
        """
        user = self.user_repo.get_by_username(username, active_only=True)
        if not user:
            return None
        if user.role == Role.ADMIN:
            ok = bool(user.password_hash) and PWD_CTX.verify(password, user.password_hash)
        else:
            ok = hmac.compare_digest(password.encode("utf-8"), settings.SHARED_PASSWORD.encode("utf-8"))
        if not ok:
            return None
        user.last_login = models.utcnow()
        user = self.user_repo.save(user)
        return self.issue_token(user), user

    def issue_token(self, user: models.User) -> str:
        expire = models.utcnow() + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "role": user.role.value,
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def ensure_default_admin(self) -> models.User:
        """Create the bootstrap administrator when no administrator exists."""
        admins = self.user_repo.list_by_role(Role.ADMIN)
        if admins:
            return admins[0]
        admin = models.User(
            lastname="Administrator",
            firstname="System",
            role=Role.ADMIN,
            whatsapp="+77000000000",
            email=f"{settings.DEFAULT_ADMIN_USERNAME}@iup.local",
            language=models.Language.RUSSIAN,
            username=settings.DEFAULT_ADMIN_USERNAME,
            password_hash=PWD_CTX.hash(settings.DEFAULT_ADMIN_PASSWORD),
        )
        admin = self.user_repo.create(admin)
        logger.warning("created default administrator %r; change its password", admin.username)
        return admin


class UserService:
    """User administration: create, update, (de)activate and counts."""

    PROFILE_FIELDS = frozenset({"firstname", "lastname", "fathername", "email", "whatsapp", "language"})
    LEADER_FIELDS = frozenset({"degree", "supervisee_ids"})
    STUDENT_FIELDS = frozenset({"education_program", "supervisor_id"})

    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.relationships = RelationshipService(session)

    def get(self, actor: models.User, user_id: int) -> models.User:
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFoundError("user not found")
        if actor.role != Role.ADMIN and actor.id != user.id:
            raise PermissionDeniedError("not allowed to view this user")
        return user

    def list_by_role(self, actor: models.User, role: Role) -> List[models.User]:
        """Active users of `role`.

        Supervisors may list students; other non-admins only their own role.
        """
        if actor.role != Role.ADMIN:
            allowed = models.STUDENT_ROLES if actor.role == Role.LEADER else {actor.role}
            if role not in allowed:
                raise PermissionDeniedError("not allowed to list users of this role")
        return self.user_repo.list_by_role(role)

    def generate_username(self, firstname: str, lastname: str) -> str:
        """Build a unique `firstname.lastname[N]` login name."""
        base = f"{firstname.strip().lower()}.{lastname.strip().lower()}".replace(" ", "")
        username = base
        counter = 1
        while self.user_repo.username_taken(username):
            username = f"{base}{counter}"
            counter += 1
        return username

    def create_user(self, data: Dict[str, Any], created_by: Optional[models.User] = None) -> Tuple[models.User, Optional[models.Plan]]:
        """Create a user from a validated per-role payload.

        Students created with a supervisor are linked through
        `RelationshipService.set_supervisor`, which also creates the plan
        of a master's student. Supervisors created with supervisees go
        through `set_supervisees`. Returns `(user, plan_or_None)`.
        """
        role = Role(data["role"])
        email = data["email"].strip().lower()
        if self.user_repo.get_by_email(email):
            raise ConflictError("a user with this email already exists")
        username = (data.get("username") or "").strip().lower() or self.generate_username(data["firstname"], data["lastname"])
        if self.user_repo.username_taken(username):
            raise ConflictError("a user with this username already exists")
        # link targets are checked before anything is stored
        if role in models.STUDENT_ROLES and data.get("supervisor_id"):
            self.relationships.resolve_supervisor(data["supervisor_id"])
        if role == Role.LEADER and data.get("supervisee_ids"):
            self.relationships.resolve_supervisees(data["supervisee_ids"])
        user = models.User(
            lastname=data["lastname"].strip(),
            firstname=data["firstname"].strip(),
            fathername=(data.get("fathername") or "").strip(),
            role=role,
            whatsapp=data["whatsapp"],
            email=email,
            degree=[getattr(d, "value", d) for d in data.get("degree") or []],
            education_program=models.EducationProgram(data["education_program"]) if data.get("education_program") else None,
            language=models.Language(data["language"]),
            username=username,
            created_by_id=created_by.id if created_by else None,
        )
        if role == Role.ADMIN:
            user.password_hash = PWD_CTX.hash(data["password"])
        try:
            user = self.user_repo.create(user)
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("a user with this email or username already exists")
        _log_event("user_created", user_id=user.id, role=role.value, created_by=user.created_by_id)

        plan = None
        if user.is_student and data.get("supervisor_id"):
            plan = self.relationships.set_supervisor(user, data["supervisor_id"])
        if role == Role.LEADER and data.get("supervisee_ids"):
            self.relationships.set_supervisees(user, data["supervisee_ids"])
        return user, plan

    def update_user(self, actor: models.User, user_id: int, changes: Dict[str, Any]) -> models.User:
        """Apply a partial update and synchronise supervision links.

        Administrators may change any field. Other users may change only
        their own profile, plus `degree`/`supervisee_ids` for supervisors
        and `education_program`/`supervisor_id` for students.
        """
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFoundError("user not found")
        if actor.role != Role.ADMIN:
            if actor.id != user.id:
                raise PermissionDeniedError("not allowed to edit this user")
            allowed = set(self.PROFILE_FIELDS)
            if user.role == Role.LEADER:
                allowed |= self.LEADER_FIELDS
            if user.is_student:
                allowed |= self.STUDENT_FIELDS
            forbidden = set(changes) - allowed
            if forbidden:
                raise PermissionDeniedError(f"not allowed to change: {', '.join(sorted(forbidden))}")

        # explicit nulls only clear nullable fields
        changes = {k: v for k, v in changes.items() if v is not None or k in ("supervisor_id", "education_program")}
        missing = object()
        supervisee_ids = changes.pop("supervisee_ids", missing)
        supervisor_id = changes.pop("supervisor_id", missing)
        password = changes.pop("password", None)
        new_role = Role(changes["role"]) if changes.get("role") else user.role
        if "role" in changes:
            changes["role"] = new_role

        if supervisee_ids is not missing and new_role != Role.LEADER:
            raise ValidationFailedError("supervisees can only be assigned to supervisors")
        if supervisor_id is not missing and supervisor_id is not None and new_role not in models.STUDENT_ROLES:
            raise ValidationFailedError("a supervisor can only be assigned to students")
        if password and new_role != Role.ADMIN:
            raise ValidationFailedError("only administrators have their own password")
        if "email" in changes and changes["email"]:
            changes["email"] = changes["email"].strip().lower()
            other = self.user_repo.get_by_email(changes["email"])
            if other and other.id != user.id:
                raise ConflictError("a user with this email already exists")
        if "degree" in changes and changes["degree"] is not None:
            changes["degree"] = [getattr(d, "value", d) for d in changes["degree"]]
        if supervisee_ids is not missing and supervisee_ids:
            self.relationships.resolve_supervisees(supervisee_ids)
        if supervisor_id is not missing and supervisor_id is not None:
            self.relationships.resolve_supervisor(supervisor_id)

        for field, value in changes.items():
            setattr(user, field, value)
        if password:
            user.password_hash = PWD_CTX.hash(password)
        user = self.user_repo.save(user)

        if supervisee_ids is not missing:
            self.relationships.set_supervisees(user, supervisee_ids or [])
        if supervisor_id is not missing:
            self.relationships.set_supervisor(user, supervisor_id)
        return user

    def set_active(self, actor: models.User, user_id: int, active: bool) -> models.User:
        """Soft-delete or restore a user."""
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFoundError("user not found")
        if not active and actor.id == user.id:
            raise ValidationFailedError("you cannot deactivate yourself")
        user.is_active = active
        return self.user_repo.save(user)

    def dashboard_stats(self) -> Dict[str, Any]:
        by_role = {role.value: self.user_repo.count(role=role, is_active=True) for role in Role}
        active = self.user_repo.count(is_active=True)
        inactive = self.user_repo.count(is_active=False)
        return {
            "by_role": by_role,
            "totals": {"active": active, "inactive": inactive, "total": active + inactive},
        }


class RelationshipService:
    """Keep supervisor backlinks and supervisee links consistent.

    The two sides are written in separate commits, so concurrent requests
    touching the same pair can leave them disagreeing until the next
    `repair_links` run.
    """
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.plan_repo = repositories.PlanRepository(session)
        self.plans = PlanService(session)

    def _ensure_plan(self, student: models.User, supervisor_id: int) -> Optional[models.Plan]:
        """Create this year's plan for a master's student that has none."""
        if student.role != models.PLAN_BEARING_ROLE:
            return None
        existing = self.plan_repo.get_active_for_year(student.id, models.current_year())
        if existing:
            return existing
        plan = self.plans.create_with_default_stages(
            student.id, supervisor_id, student.education_program, student.language
        )
        _log_event("plan_created_for_link", student_id=student.id, supervisor_id=supervisor_id, plan_id=plan.id)
        return plan

    def resolve_supervisor(self, supervisor_id: int) -> models.User:
        """Return the supervisor with `supervisor_id` or raise."""
        supervisor = self.user_repo.get(supervisor_id)
        if not supervisor:
            raise NotFoundError("supervisor not found")
        if supervisor.role != Role.LEADER:
            raise ValidationFailedError("the assigned supervisor must have the leaders role")
        return supervisor

    def resolve_supervisees(self, student_ids: Iterable[int]) -> Dict[int, models.User]:
        """Load the given students, raising when any is unknown or not a student."""
        ids = {int(i) for i in student_ids}
        students = self.user_repo.get_many(ids)
        unknown = ids - set(students)
        if unknown:
            raise NotFoundError(f"users not found: {', '.join(str(i) for i in sorted(unknown))}")
        not_students = [u.id for u in students.values() if not u.is_student]
        if not_students:
            raise ValidationFailedError(f"only students can be supervisees: {', '.join(str(i) for i in sorted(not_students))}")
        return students

    def set_supervisees(self, supervisor: models.User, student_ids: Iterable[int]) -> Dict[str, List[int]]:
        """Replace a supervisor's supervisee set and fix the backlinks.

        Removed students lose their supervisor, added students point at
        this supervisor and master's students among them get a plan. The
        given set is then stored as is.
        """
        if supervisor.role != Role.LEADER:
            raise ValidationFailedError("supervisees can only be assigned to supervisors")
        students = self.resolve_supervisees(student_ids)
        new_ids = set(students)

        current = self.user_repo.supervisee_ids(supervisor.id)
        to_add = new_ids - current
        to_remove = current - new_ids
        if to_remove:
            self.user_repo.set_supervisor_for(to_remove, None)
        if to_add:
            self.user_repo.set_supervisor_for(to_add, supervisor.id)
            for student_id in sorted(to_add):
                self._ensure_plan(students[student_id], supervisor.id)
        self.user_repo.replace_supervisees(supervisor.id, new_ids)
        _log_event(
            "supervisees_updated",
            supervisor_id=supervisor.id,
            added=sorted(to_add),
            removed=sorted(to_remove),
        )
        return {"added": sorted(to_add), "removed": sorted(to_remove)}

    def set_supervisor(self, student: models.User, supervisor_id: Optional[int]) -> Optional[models.Plan]:
        """Point a student at a supervisor and add them to its supervisee set.

        The student is not removed from a previous supervisor's set; the
        stale link stays until `repair_links` resolves it. `None` clears
        the backlink only. Returns the student's plan when one exists or
        was created.
        """
        if not student.is_student:
            raise ValidationFailedError("a supervisor can only be assigned to students")
        if supervisor_id is None:
            student.supervisor_id = None
            self.user_repo.save(student)
            return None
        supervisor = self.resolve_supervisor(supervisor_id)
        student.supervisor_id = supervisor.id
        student = self.user_repo.save(student)
        self.user_repo.add_supervisee(supervisor.id, student.id)
        _log_event("supervisor_set", student_id=student.id, supervisor_id=supervisor.id)
        return self._ensure_plan(student, supervisor.id)

    def repair_links(self) -> Dict[str, int]:
        """Reconcile supervisee links and supervisor backlinks.

        Pass 1 walks every supervisee link and forces the student's
        backlink to the listing supervisor. When several supervisors list
        the same student, the one the student already points at wins,
        otherwise the most recent link; the other links are dropped.
        Pass 2 walks every student with a backlink and adds the missing
        link on the supervisor's side.
        """
        checked = 0
        repaired = 0

        listed_by: Dict[int, List[models.SuperviseeLink]] = {}
        for link in self.user_repo.list_links():
            listed_by.setdefault(link.student_id, []).append(link)
        supervisors = self.user_repo.get_many(
            link.supervisor_id for links in listed_by.values() for link in links
        )

        for student_id in sorted(listed_by):
            owners = [
                link.supervisor_id for link in listed_by[student_id]
                if link.supervisor_id in supervisors and supervisors[link.supervisor_id].role == Role.LEADER
            ]
            checked += len(owners)
            student = self.user_repo.get(student_id)
            if student is None:
                logger.warning("supervisee %s listed by %s does not exist", student_id, owners)
                continue
            if not owners:
                continue
            if student.supervisor_id in owners:
                keep = student.supervisor_id
            else:
                keep = owners[-1]
            for owner in owners:
                if owner != keep:
                    self.user_repo.remove_supervisee(owner, student_id)
                    repaired += 1
            if student.supervisor_id != keep:
                student.supervisor_id = keep
                self.user_repo.save(student)
                repaired += 1

        for student in self.user_repo.list_students_with_supervisor():
            checked += 1
            supervisor = self.user_repo.get(student.supervisor_id)
            if supervisor is None:
                logger.warning("student %s points at missing supervisor %s", student.id, student.supervisor_id)
                continue
            if self.user_repo.add_supervisee(supervisor.id, student.id):
                repaired += 1

        _log_event("links_repaired", checked=checked, repaired=repaired)
        return {"checked": checked, "repaired": repaired}


class PlanService:
    """Plan lifecycle: creation, stage edits and the approval workflow."""
    def __init__(self, session: Session):
        self.session = session
        self.plan_repo = repositories.PlanRepository(session)
        self.user_repo = repositories.UserRepository(session)

    # creation and lookup

    def create_with_default_stages(
        self,
        student_id: int,
        supervisor_id: Optional[int],
        education_program: Optional[str],
        language: Optional[str],
    ) -> models.Plan:
        """Create this year's plan with the default stage template.

        A concurrent request may have created the plan first; the unique
        (student, year) index then rejects this insert and the existing
        active plan is returned instead of an error.
        """
        year = models.current_year()
        plan = models.Plan(
            year=year,
            student_id=student_id,
            supervisor_id=supervisor_id,
            education_program=models.EducationProgram(education_program) if education_program else None,
            language=models.Language(language) if language else None,
            total_stages=len(DEFAULT_STAGES),
            stages=[models.Stage(**template) for template in DEFAULT_STAGES],
        )
        try:
            return self.plan_repo.create(plan)
        except IntegrityError:
            self.session.rollback()
            existing = self.plan_repo.get_active_for_year(student_id, year)
            if existing is None:
                raise
            _log_event("plan_exists", student_id=student_id, year=year, plan_id=existing.id)
            return existing

    def get_or_create_for_student(self, student: models.User, year: Optional[int] = None) -> models.Plan:
        """Return the student's plan for `year`, creating this year's lazily."""
        this_year = models.current_year()
        year = year or this_year
        plan = self.plan_repo.get_active_for_year(student.id, year)
        if plan:
            return plan
        if year != this_year:
            raise NotFoundError(f"no plan for {year}")
        if not student.supervisor_id or not self.user_repo.get(student.supervisor_id):
            raise ValidationFailedError("no supervisor assigned; contact the administrator")
        return self.create_with_default_stages(
            student.id, student.supervisor_id, student.education_program, student.language
        )

    def list_plans(
        self,
        actor: models.User,
        year: Optional[int] = None,
        student_id: Optional[int] = None,
        overall_status: Optional[str] = None,
        education_program: Optional[str] = None,
        language: Optional[str] = None,
    ) -> List[models.Plan]:
        """List plans visible to a supervisor or administrator."""
        year = year or models.current_year()
        if actor.role == Role.LEADER:
            supervisees = self.user_repo.supervisee_ids(actor.id)
            ids = [student_id] if student_id in supervisees else supervisees
            plans = self.plan_repo.list(year=year, student_ids=ids)
        elif actor.role == Role.ADMIN:
            plans = self.plan_repo.list(
                year=year,
                student_ids=[student_id] if student_id else None,
                overall_status=OverallStatus(overall_status) if overall_status else None,
                education_program=models.EducationProgram(education_program) if education_program else None,
                language=models.Language(language) if language else None,
            )
        else:
            raise PermissionDeniedError("no access to plan listings")
        students = self.user_repo.get_many(p.student_id for p in plans)
        return sorted(plans, key=lambda p: (students[p.student_id].lastname if p.student_id in students else "", p.id))

    def get_plan(self, plan_id: int) -> models.Plan:
        plan = self.plan_repo.get(plan_id)
        if not plan:
            raise NotFoundError("plan not found")
        return plan

    def get_for(self, actor: models.User, plan_id: int) -> models.Plan:
        """Fetch a plan if `actor` is its student, its supervisor or an admin."""
        plan = self.get_plan(plan_id)
        has_access = (
            actor.role == Role.ADMIN
            or (actor.role == Role.MAGISTRANT and plan.student_id == actor.id)
            or (actor.role == Role.LEADER and plan.supervisor_id == actor.id)
        )
        if not has_access:
            raise PermissionDeniedError("no access to this plan")
        return plan

    def deactivate(self, plan_id: int) -> models.Plan:
        plan = self.get_plan(plan_id)
        plan.is_active = False
        _log_event("plan_deactivated", plan_id=plan.id, student_id=plan.student_id)
        return self.plan_repo.save(plan)

    def supervisee_overview(self, supervisor: models.User, year: Optional[int] = None) -> List[Dict[str, Any]]:
        """Supervisees of `supervisor` with their plan and review backlog."""
        year = year or models.current_year()
        students = self.user_repo.get_many(self.user_repo.supervisee_ids(supervisor.id))
        out = []
        for student in sorted(students.values(), key=lambda u: (u.lastname, u.firstname)):
            if not student.is_active:
                continue
            plan = self.plan_repo.get_active_for_year(student.id, year)
            entry = {"student": student, "plan": plan, "has_plan": plan is not None}
            if plan:
                current = plan.current_stage_data
                entry["progress"] = plan.progress
                entry["current_stage_title"] = current.title if current else None
                entry["stages_requiring_attention"] = sum(
                    1 for s in plan.stages
                    if s.status in (StageStatus.SUBMITTED, StageStatus.SUPERVISOR_REVIEW)
                )
            out.append(entry)
        return out

    def create_missing_plans(self) -> Dict[str, Any]:
        """Backfill this year's plan for every linked master's student."""
        year = models.current_year()
        created = existing = failed = 0
        for student in self.user_repo.list_plan_bearing_students(with_supervisor=True):
            if self.plan_repo.get_active_for_year(student.id, year):
                existing += 1
                continue
            try:
                self.create_with_default_stages(
                    student.id, student.supervisor_id, student.education_program, student.language
                )
                created += 1
            except SQLAlchemyError:
                logger.exception("could not create plan for student %s", student.id)
                self.session.rollback()
                failed += 1
        without = self.user_repo.list_plan_bearing_students(with_supervisor=False)
        _log_event("plans_backfilled", created=created, existing=existing, failed=failed, without_supervisor=len(without))
        return {
            "created": created,
            "existing": existing,
            "failed": failed,
            "without_supervisor": [{"id": u.id, "name": u.full_name, "email": u.email} for u in without],
        }

    # stage workflow

    def _get_stage(self, plan: models.Plan, stage_number: int) -> models.Stage:
        stage = plan.get_stage(stage_number)
        if stage is None:
            raise NotFoundError("stage not found")
        return stage

    def _record_status(self, stage: models.Stage, status: StageStatus, actor_id: Optional[int], comment: Optional[str] = None):
        """Append a history entry, set the status and stamp milestones."""
        now = models.utcnow()
        stage.history.append(models.StageStatusEvent(
            status=status, changed_by_id=actor_id, changed_at=now, comment=comment or None
        ))
        stage.status = status
        for field in MILESTONE_FIELDS.get(status, ()):
            setattr(stage, field, now)
        stage.updated_at = now

    def _refresh_overall_status(self, plan: models.Plan):
        if plan.overall_status == OverallStatus.APPROVED:
            return
        statuses = [s.status for s in plan.stages]
        if statuses and all(s in models.DONE_STATUSES for s in statuses):
            plan.overall_status = OverallStatus.COMPLETED
        elif any(s in (StageStatus.ADMIN_REVIEW, StageStatus.SUPERVISOR_APPROVED) for s in statuses):
            plan.overall_status = OverallStatus.ADMIN_REVIEW
        elif any(s in (StageStatus.SUBMITTED, StageStatus.SUPERVISOR_REVIEW) for s in statuses):
            plan.overall_status = OverallStatus.SUPERVISOR_REVIEW
        elif any(s != StageStatus.NOT_STARTED for s in statuses):
            plan.overall_status = OverallStatus.IN_PROGRESS
        else:
            plan.overall_status = OverallStatus.DRAFT

    def _move_to_next_stage(self, plan: models.Plan, actor_id: Optional[int]) -> models.Plan:
        if plan.current_stage >= plan.total_stages:
            return plan
        plan.current_stage += 1
        nxt = plan.get_stage(plan.current_stage)
        if nxt is not None and nxt.status == StageStatus.NOT_STARTED:
            self._record_status(nxt, StageStatus.IN_PROGRESS, actor_id, NEXT_STAGE_COMMENT)
        self._refresh_overall_status(plan)
        return self.plan_repo.save(plan)

    @staticmethod
    def _merge_topic(stage: models.Stage, prefix: str, patch: Optional[Dict[str, Optional[str]]]):
        if not patch:
            return
        for lang in models.TOPIC_LANGUAGES:
            if lang in patch:
                value = patch[lang]
                setattr(stage, f"{prefix}_{lang}", value.strip() if isinstance(value, str) else value)

    @staticmethod
    def _check_topic_complete(stage: models.Stage, patch: Optional[Dict[str, Optional[str]]] = None):
        """Topic stages need the topic in every language, counting a pending patch."""
        if stage.stage_type != models.StageType.DISSERTATION_TOPIC:
            return
        topic = stage.topic("topic")
        topic.update(patch or {})
        missing = [lang for lang in models.TOPIC_LANGUAGES if not (topic.get(lang) or "").strip()]
        if missing:
            raise ValidationFailedError(
                f"the dissertation topic must be filled in all three languages (missing: {', '.join(missing)})"
            )

    def _merge_student_data(self, stage: models.Stage, patch: Dict[str, Any]):
        self._merge_topic(stage, "topic", patch.get("dissertation_topic"))
        if "text_data" in patch:
            value = patch["text_data"]
            stage.text_data = value.strip() if isinstance(value, str) else value
        if patch.get("additional_data"):
            stage.additional_data = {**(stage.additional_data or {}), **patch["additional_data"]}
        if "files" in patch and patch["files"] is not None:
            now = models.utcnow().isoformat()
            stage.files = [
                {
                    "file_name": f["file_name"],
                    "file_path": f["file_path"],
                    "file_size": f.get("file_size"),
                    "uploaded_at": f.get("uploaded_at") or now,
                }
                for f in patch["files"]
            ]

    def _merge_supervisor_edits(self, stage: models.Stage, patch: Dict[str, Any], actor_id: int):
        self._merge_topic(stage, "edit_topic", patch.get("dissertation_topic"))
        if "text_data" in patch:
            stage.edit_text_data = patch["text_data"]
        if "comments" in patch:
            stage.edit_comments = patch["comments"]
        stage.edited_at = models.utcnow()
        stage.edited_by_id = actor_id

    def apply_stage_update(
        self,
        plan_id: int,
        stage_number: int,
        actor: models.User,
        student_data: Optional[Dict[str, Any]] = None,
        supervisor_edits: Optional[Dict[str, Any]] = None,
        status: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> models.Plan:
        """Patch stage data and optionally move the stage to `status`.

        Authorization and the transition are checked before anything is
        changed, so a rejected request leaves the stage untouched. A
        supervisor approval is forwarded to `admin_review` in the same
        call; an `admin_approved` current stage advances the plan.
        """
        plan = self.get_plan(plan_id)
        stage = self._get_stage(plan, stage_number)

        is_student = actor.role == Role.MAGISTRANT and plan.student_id == actor.id
        is_supervisor = actor.role == Role.LEADER and plan.supervisor_id == actor.id
        is_admin = actor.role == Role.ADMIN
        if not (is_student or is_supervisor or is_admin):
            raise PermissionDeniedError("no access to this plan")
        if student_data is not None and not (is_student or is_supervisor):
            raise PermissionDeniedError("only the student or the assigned supervisor may edit stage data")
        if supervisor_edits is not None and not is_supervisor:
            raise PermissionDeniedError("only the assigned supervisor may add supervisor edits")

        auto_start = is_student and student_data is not None and stage.status == StageStatus.NOT_STARTED
        source = StageStatus.IN_PROGRESS if auto_start else stage.status
        target = StageStatus(status) if status else None
        if target is not None and target != source:
            if not can_transition(actor.role, source, target):
                raise InvalidTransitionError(source, target)
            if target == StageStatus.SUBMITTED:
                self._check_topic_complete(stage, (student_data or {}).get("dissertation_topic"))
        else:
            target = None

        if student_data is not None:
            self._merge_student_data(stage, student_data)
        if auto_start:
            self._record_status(stage, StageStatus.IN_PROGRESS, actor.id, STARTED_COMMENT)
        if supervisor_edits is not None:
            self._merge_supervisor_edits(stage, supervisor_edits, actor.id)

        if target is None:
            stage.updated_at = models.utcnow()
            if auto_start:
                self._refresh_overall_status(plan)
            return self.plan_repo.save(plan)

        if target == StageStatus.SUPERVISOR_APPROVED:
            self._record_status(stage, StageStatus.SUPERVISOR_APPROVED, actor.id, comment)
            forwarded = f"Approved by supervisor. {comment}" if comment else FORWARDED_COMMENT
            self._record_status(stage, StageStatus.ADMIN_REVIEW, actor.id, forwarded)
        else:
            self._record_status(stage, target, actor.id, comment)
        final_status = stage.status
        self._refresh_overall_status(plan)
        plan = self.plan_repo.save(plan)
        _log_event(
            "stage_status_changed",
            plan_id=plan.id,
            stage=stage_number,
            actor_id=actor.id,
            source=source.value,
            target=final_status.value,
        )

        if final_status == StageStatus.ADMIN_APPROVED and stage_number == plan.current_stage:
            plan = self._move_to_next_stage(plan, actor.id)
        return plan

    def submit_stage(self, plan_id: int, stage_number: int, actor: models.User) -> models.Plan:
        """Send a stage for review on behalf of its student."""
        plan = self.get_plan(plan_id)
        if actor.role != Role.MAGISTRANT or plan.student_id != actor.id:
            raise PermissionDeniedError("only the student may submit stages for review")
        stage = self._get_stage(plan, stage_number)
        if stage.status not in (StageStatus.IN_PROGRESS, StageStatus.REJECTED):
            raise InvalidTransitionError(stage.status, StageStatus.SUBMITTED)
        self._check_topic_complete(stage)
        source = stage.status
        self._record_status(stage, StageStatus.SUBMITTED, actor.id, SUBMIT_COMMENT)
        self._refresh_overall_status(plan)
        plan = self.plan_repo.save(plan)
        _log_event("stage_submitted", plan_id=plan.id, stage=stage_number, actor_id=actor.id, source=source.value)
        return plan


class StatisticsService:
    """Admin dashboard aggregates over active plans."""
    def __init__(self, session: Session):
        self.session = session
        self.plan_repo = repositories.PlanRepository(session)
        self.user_repo = repositories.UserRepository(session)

    def get_statistics(
        self,
        year: Optional[int] = None,
        education_program: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Group active plans by overall status with a per-student snapshot.

        Plans whose student record is gone are left out, mirroring an
        inner join on the student.
        """
        year = year or models.current_year()
        program = models.EducationProgram(education_program) if education_program else None
        lang = models.Language(language) if language else None
        plans = self.plan_repo.list(year=year, education_program=program, language=lang)
        users = self.user_repo.get_many(
            [p.student_id for p in plans] + [p.supervisor_id for p in plans if p.supervisor_id]
        )

        groups: Dict[str, Dict[str, Any]] = {}
        for plan in plans:
            student = users.get(plan.student_id)
            if student is None:
                continue
            supervisor = users.get(plan.supervisor_id)
            status = plan.overall_status.value
            group = groups.setdefault(status, {"status": status, "count": 0, "students": []})
            group["count"] += 1
            group["students"].append({
                "id": student.id,
                "name": student.full_name,
                "education_program": getattr(student.education_program, "value", student.education_program),
                "language": getattr(student.language, "value", student.language),
                "supervisor": supervisor.full_name if supervisor else None,
                "current_stage": plan.current_stage,
                "progress": plan.progress,
            })

        def _counts(column):
            rows = self.plan_repo.count_by(column, year=year, education_program=program, language=lang)
            return [{"value": getattr(key, "value", key), "count": n} for key, n in rows]

        return {
            "status_statistics": list(groups.values()),
            "total": len(plans),
            "by_education_program": _counts(models.Plan.education_program),
            "by_language": _counts(models.Plan.language),
        }
