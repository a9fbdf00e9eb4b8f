"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users and
their supervision links, plans with their stages). Repositories return
SQLModel objects and perform commits/refreshes where appropriate.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, or_
from sqlmodel import Session, select

from . import models


class UserRepository:
    """CRUD operations for `User` objects and supervisee links."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        user.updated_at = models.utcnow()
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        if user_id is None:
            return None
        return self.session.get(models.User, user_id)

    def get_many(self, user_ids: Iterable[int]) -> Dict[int, models.User]:
        """Return a `{id: User}` map for the given ids, skipping unknown ones."""
        ids = {i for i in user_ids if i is not None}
        if not ids:
            return {}
        stmt = select(models.User).where(models.User.id.in_(ids))
        return {u.id: u for u in self.session.exec(stmt).all()}

    def get_by_username(self, username: str, active_only: bool = False) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username.lower())
        if active_only:
            stmt = stmt.where(models.User.is_active == True)  # noqa: E712
        return self.session.exec(stmt).first()

    def get_by_email(self, email: str) -> Optional[models.User]:
        stmt = select(models.User).where(models.User.email == email.lower())
        return self.session.exec(stmt).first()

    def username_taken(self, username: str) -> bool:
        stmt = select(models.User.id).where(models.User.username == username)
        return self.session.exec(stmt).first() is not None

    def list_by_role(self, role: models.Role) -> List[models.User]:
        """Active users of `role` sorted by last then first name."""
        stmt = (
            select(models.User)
            .where(models.User.role == role, models.User.is_active == True)  # noqa: E712
            .order_by(models.User.lastname, models.User.firstname)
        )
        return self.session.exec(stmt).all()

    def list_active(self) -> List[models.User]:
        stmt = (
            select(models.User)
            .where(models.User.is_active == True)  # noqa: E712
            .order_by(models.User.role, models.User.lastname, models.User.firstname)
        )
        return self.session.exec(stmt).all()

    def search(
        self,
        role: Optional[models.Role] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[models.User], int]:
        """Paginated search over active users; returns `(page, total)`."""
        conditions = [models.User.is_active == True]  # noqa: E712
        if role is not None:
            conditions.append(models.User.role == role)
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(or_(
                func.lower(models.User.firstname).like(pattern),
                func.lower(models.User.lastname).like(pattern),
                func.lower(models.User.username).like(pattern),
            ))
        stmt = (
            select(models.User)
            .where(*conditions)
            .order_by(models.User.created_at.desc(), models.User.id.desc())
            .offset(offset)
            .limit(limit)
        )
        total = self.session.exec(select(func.count(models.User.id)).where(*conditions)).one()
        return self.session.exec(stmt).all(), total

    def count(self, role: Optional[models.Role] = None, is_active: Optional[bool] = None) -> int:
        stmt = select(func.count(models.User.id))
        if role is not None:
            stmt = stmt.where(models.User.role == role)
        if is_active is not None:
            stmt = stmt.where(models.User.is_active == is_active)
        return self.session.exec(stmt).one()

    def set_supervisor_for(self, student_ids: Iterable[int], supervisor_id: Optional[int]) -> int:
        """Bulk-assign (or clear with `None`) the supervisor backlink."""
        ids = set(student_ids)
        if not ids:
            return 0
        students = self.session.exec(select(models.User).where(models.User.id.in_(ids))).all()
        now = models.utcnow()
        for student in students:
            student.supervisor_id = supervisor_id
            student.updated_at = now
            self.session.add(student)
        self.session.commit()
        return len(students)

    def list_students_with_supervisor(self) -> List[models.User]:
        stmt = select(models.User).where(
            models.User.role.in_(list(models.STUDENT_ROLES)),
            models.User.supervisor_id != None,  # noqa: E711
        )
        return self.session.exec(stmt).all()

    def list_plan_bearing_students(self, with_supervisor: bool) -> List[models.User]:
        """Active master's students that do (or do not) have a supervisor."""
        stmt = select(models.User).where(
            models.User.role == models.PLAN_BEARING_ROLE,
            models.User.is_active == True,  # noqa: E712
        )
        if with_supervisor:
            stmt = stmt.where(models.User.supervisor_id != None)  # noqa: E711
        else:
            stmt = stmt.where(models.User.supervisor_id == None)  # noqa: E711
        return self.session.exec(stmt.order_by(models.User.lastname)).all()

    # supervisee links

    def supervisee_ids(self, supervisor_id: int) -> Set[int]:
        stmt = select(models.SuperviseeLink.student_id).where(
            models.SuperviseeLink.supervisor_id == supervisor_id
        )
        return set(self.session.exec(stmt).all())

    def list_links(self) -> List[models.SuperviseeLink]:
        """All supervisee links, oldest first."""
        stmt = select(models.SuperviseeLink).order_by(
            models.SuperviseeLink.created_at, models.SuperviseeLink.supervisor_id
        )
        return self.session.exec(stmt).all()

    def remove_supervisee(self, supervisor_id: int, student_id: int) -> bool:
        link = self.session.get(models.SuperviseeLink, (supervisor_id, student_id))
        if link is None:
            return False
        self.session.delete(link)
        self.session.commit()
        return True

    def replace_supervisees(self, supervisor_id: int, student_ids: Iterable[int]) -> None:
        """Make the stored supervisee set exactly `student_ids`."""
        wanted = set(student_ids)
        existing = self.session.exec(
            select(models.SuperviseeLink).where(models.SuperviseeLink.supervisor_id == supervisor_id)
        ).all()
        for link in existing:
            if link.student_id not in wanted:
                self.session.delete(link)
        have = {link.student_id for link in existing}
        for student_id in wanted - have:
            self.session.add(models.SuperviseeLink(supervisor_id=supervisor_id, student_id=student_id))
        self.session.commit()

    def add_supervisee(self, supervisor_id: int, student_id: int) -> bool:
        """Add one link with set semantics; returns False when it already existed."""
        if self.session.get(models.SuperviseeLink, (supervisor_id, student_id)):
            return False
        self.session.add(models.SuperviseeLink(supervisor_id=supervisor_id, student_id=student_id))
        self.session.commit()
        return True


class PlanRepository:
    """Persist and query `Plan` aggregates including their stages."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, plan: models.Plan) -> models.Plan:
        """Insert a plan with its stages.

        The unique (student, year) index may reject the insert; the
        resulting `IntegrityError` is left for the caller to handle.
        """
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def save(self, plan: models.Plan) -> models.Plan:
        plan.updated_at = models.utcnow()
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def get(self, plan_id: int) -> Optional[models.Plan]:
        return self.session.get(models.Plan, plan_id)

    def get_active_for_year(self, student_id: int, year: int) -> Optional[models.Plan]:
        """Return the student's active plan for `year`, if any."""
        stmt = select(models.Plan).where(
            models.Plan.student_id == student_id,
            models.Plan.year == year,
            models.Plan.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).first()

    def list(
        self,
        year: Optional[int] = None,
        student_ids: Optional[Iterable[int]] = None,
        overall_status: Optional[models.OverallStatus] = None,
        education_program: Optional[models.EducationProgram] = None,
        language: Optional[models.Language] = None,
    ) -> List[models.Plan]:
        """List active plans matching every filter that is not `None`."""
        stmt = select(models.Plan).where(models.Plan.is_active == True)  # noqa: E712
        if year is not None:
            stmt = stmt.where(models.Plan.year == year)
        if student_ids is not None:
            ids = list(student_ids)
            if not ids:
                return []
            stmt = stmt.where(models.Plan.student_id.in_(ids))
        if overall_status is not None:
            stmt = stmt.where(models.Plan.overall_status == overall_status)
        if education_program is not None:
            stmt = stmt.where(models.Plan.education_program == education_program)
        if language is not None:
            stmt = stmt.where(models.Plan.language == language)
        return self.session.exec(stmt.order_by(models.Plan.id)).all()

    def count_by(self, column, year=None, education_program=None, language=None) -> List[Tuple[object, int]]:
        """Group active plans by `column` and count them."""
        stmt = select(column, func.count(models.Plan.id)).where(models.Plan.is_active == True)  # noqa: E712
        if year is not None:
            stmt = stmt.where(models.Plan.year == year)
        if education_program is not None:
            stmt = stmt.where(models.Plan.education_program == education_program)
        if language is not None:
            stmt = stmt.where(models.Plan.language == language)
        stmt = stmt.group_by(column).order_by(func.count(models.Plan.id).desc())
        return [(key, n) for key, n in self.session.exec(stmt).all()]
