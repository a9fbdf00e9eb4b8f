"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the individual academic plan
(IUP) backend. Controllers are intentionally thin: they accept requests,
delegate to services, and shape JSON responses.

Endpoints implemented:
- POST /auth/login, GET /auth/me, POST /auth/refresh, GET /auth/users
- GET/POST /users, GET /users/by-role/{role}, GET /users/stats/dashboard,
  POST /users/repair-links, GET/PUT/DELETE /users/{id},
  POST /users/{id}/restore
- GET /iup, GET /iup/stats/dashboard, GET /iup/supervisees,
  POST /iup/backfill, GET/DELETE /iup/{id},
  PUT /iup/{id}/stage/{n}, POST /iup/{id}/stage/{n}/submit
- GET /health
"""

import json
import logging
import math
import os
import time
import uuid
from typing import Annotated, Any, Dict, Iterable, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session

from . import models, repositories, schemas, services
from .auth import get_current_user, require_roles
from .config import settings
from .database import create_db_and_tables, engine, get_session
from .errors import DomainError
from .models import Role
from .utils.rate_limit import LoginRateLimiter

app = FastAPI(title="Individual Academic Plan API")
logger = logging.getLogger("iup_tracker.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_login_limiter = LoginRateLimiter()

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()
with Session(engine) as _bootstrap_session:
    services.AuthService(_bootstrap_session).ensure_default_admin()

admin_only = require_roles(Role.ADMIN)
supervisor_only = require_roles(Role.LEADER)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    log_fields = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    try:
        response = await call_next(request)
    except Exception:
        log_fields["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", json.dumps(log_fields, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    log_fields["status_code"] = response.status_code
    log_fields["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", json.dumps(log_fields, ensure_ascii=True))
    return response


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    logger.info(
        "request_rejected %s",
        json.dumps(
            {
                "request_id": getattr(request.state, "request_id", ""),
                "path": request.url.path,
                "error": type(exc).__name__,
                "detail": exc.message,
            },
            ensure_ascii=True,
        ),
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# response shaping

def _value(v):
    return getattr(v, "value", v)


def _user_brief(user: Optional[models.User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {
        "id": user.id,
        "lastname": user.lastname,
        "firstname": user.firstname,
        "fathername": user.fathername,
        "full_name": user.full_name,
        "role": _value(user.role),
    }


def _user_out(db: Session, user: models.User) -> Dict[str, Any]:
    """Full user representation with supervisor and supervisees expanded."""
    repo = repositories.UserRepository(db)
    out = {
        "id": user.id,
        "lastname": user.lastname,
        "firstname": user.firstname,
        "fathername": user.fathername,
        "full_name": user.full_name,
        "role": _value(user.role),
        "whatsapp": user.whatsapp,
        "email": user.email,
        "language": _value(user.language),
        "username": user.username,
        "is_active": user.is_active,
        "last_login": user.last_login,
        "created_by_id": user.created_by_id,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }
    if user.is_student:
        out["education_program"] = _value(user.education_program)
        out["supervisor"] = _user_brief(repo.get(user.supervisor_id))
    if user.role == Role.LEADER:
        out["degree"] = list(user.degree or [])
        supervisees = repo.get_many(repo.supervisee_ids(user.id))
        out["supervisees"] = [
            {**_user_brief(s), "education_program": _value(s.education_program), "language": _value(s.language)}
            for s in sorted(supervisees.values(), key=lambda u: (u.lastname, u.firstname))
        ]
    return out


def _plan_user_ids(plans: Iterable[models.Plan]) -> set:
    ids = set()
    for plan in plans:
        ids.update({plan.student_id, plan.supervisor_id})
        for stage in plan.stages:
            ids.add(stage.edited_by_id)
            ids.update(event.changed_by_id for event in stage.history)
    ids.discard(None)
    return ids


def _stage_out(stage: models.Stage, users: Dict[int, models.User]) -> Dict[str, Any]:
    return {
        "stage_number": stage.stage_number,
        "stage_type": _value(stage.stage_type),
        "title": stage.title,
        "description": stage.description,
        "status": _value(stage.status),
        "student_data": {
            "dissertation_topic": stage.topic("topic"),
            "text_data": stage.text_data,
            "files": stage.files or [],
            "additional_data": stage.additional_data or {},
        },
        "supervisor_edits": {
            "dissertation_topic": stage.topic("edit_topic"),
            "text_data": stage.edit_text_data,
            "comments": stage.edit_comments,
            "edited_at": stage.edited_at,
            "edited_by": _user_brief(users.get(stage.edited_by_id)),
        },
        "status_history": [
            {
                "status": _value(event.status),
                "changed_by": _user_brief(users.get(event.changed_by_id)),
                "changed_at": event.changed_at,
                "comment": event.comment,
            }
            for event in stage.history
        ],
        "submitted_at": stage.submitted_at,
        "supervisor_reviewed_at": stage.supervisor_reviewed_at,
        "admin_reviewed_at": stage.admin_reviewed_at,
        "completed_at": stage.completed_at,
        "requires_supervisor_approval": stage.requires_supervisor_approval,
        "requires_admin_approval": stage.requires_admin_approval,
    }


def _plan_out(plan: models.Plan, users: Dict[int, models.User]) -> Dict[str, Any]:
    current = plan.current_stage_data
    student = users.get(plan.student_id)
    student_out = _user_brief(student)
    if student_out is not None:
        student_out["education_program"] = _value(student.education_program)
        student_out["language"] = _value(student.language)
    return {
        "id": plan.id,
        "year": plan.year,
        "student": student_out,
        "supervisor": _user_brief(users.get(plan.supervisor_id)),
        "overall_status": _value(plan.overall_status),
        "current_stage": plan.current_stage,
        "progress": plan.progress,
        "current_stage_data": _stage_out(current, users) if current else None,
        "stages": [_stage_out(s, users) for s in plan.stages],
        "metadata": {
            "total_stages": plan.total_stages,
            "education_program": _value(plan.education_program),
            "language": _value(plan.language),
        },
        "is_active": plan.is_active,
        "created_at": plan.created_at,
        "updated_at": plan.updated_at,
    }


def _plans_out(db: Session, plans: List[models.Plan]) -> List[Dict[str, Any]]:
    users = repositories.UserRepository(db).get_many(_plan_user_ids(plans))
    return [_plan_out(p, users) for p in plans]


# auth

@app.post('/auth/login')
def login(payload: schemas.LoginIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate a user and return a JWT token with the user profile.

    Administrators sign in with their own password; all other roles use
    the shared password. Failed attempts are rate limited per client and
    login.
    """
    key = f"{request.client.host if request.client else 'unknown'}:{payload.username.lower()}"
    retry_after = _login_limiter.check(
        key, settings.LOGIN_RATE_LIMIT_PER_MIN, settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
    )
    if retry_after:
        raise HTTPException(
            status_code=429,
            detail=f"too many failed login attempts; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )
    result = services.AuthService(db).authenticate(payload.username, payload.password)
    if not result:
        _login_limiter.record_failure(key)
        raise HTTPException(status_code=401, detail='invalid credentials')
    _login_limiter.reset(key)
    token, user = result
    return {'access_token': token, 'user': _user_out(db, user)}


@app.get('/auth/me')
def me(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return the authenticated user's profile."""
    return {'user': _user_out(db, user)}


@app.post('/auth/refresh')
def refresh_token(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Issue a fresh token for the authenticated user."""
    return {'access_token': services.AuthService(db).issue_token(user)}


@app.get('/auth/users')
def login_choices(db: Session = Depends(get_session)):
    """Public list of active users for the login picker.

    Returned both flat and grouped by role.
    """
    users = repositories.UserRepository(db).list_active()
    flat = [
        {'value': u.username, 'label': u.full_name, 'role': _value(u.role), 'id': u.id}
        for u in users
    ]
    grouped: Dict[str, list] = {}
    for item in flat:
        grouped.setdefault(item['role'], []).append(item)
    return {'users': flat, 'grouped_users': grouped, 'total': len(flat)}


# users

@app.get('/users')
def list_users(
    role: Optional[Role] = None,
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Paginated list of active users.

    Administrators see everyone and may filter by `role`; other users only
    see users of their own role.
    """
    page = max(1, page)
    limit = min(max(1, limit), 100)
    if user.role != Role.ADMIN:
        role = user.role
    users, total = repositories.UserRepository(db).search(
        role=role, search=search, offset=(page - 1) * limit, limit=limit
    )
    return {
        'users': [_user_out(db, u) for u in users],
        'pagination': {
            'current': page,
            'page_size': limit,
            'total': total,
            'pages': math.ceil(total / limit),
        },
    }


@app.get('/users/by-role/{role}')
def users_by_role(role: Role, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Active users of one role, sorted by name."""
    users = services.UserService(db).list_by_role(user, role)
    return {'users': [_user_out(db, u) for u in users], 'total': len(users)}


@app.get('/users/stats/dashboard')
def user_stats(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    """User counts by role and activity for the admin dashboard."""
    return services.UserService(db).dashboard_stats()


@app.post('/users/repair-links')
def repair_links(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    """Run the supervisor/supervisee reconciliation pass."""
    return services.RelationshipService(db).repair_links()


@app.get('/users/{user_id}')
def get_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Fetch a user; non-admins may only fetch themselves."""
    return {'user': _user_out(db, services.UserService(db).get(user, user_id))}


@app.post('/users', status_code=201)
def create_user(
    payload: Annotated[schemas.UserCreate, Body(discriminator="role")],
    db: Session = Depends(get_session),
    user: models.User = Depends(admin_only),
):
    """Create a user of any role.

    A master's student created with a supervisor gets this year's plan
    right away; `plan_created` reports whether that happened.
    """
    created, plan = services.UserService(db).create_user(payload.model_dump(), created_by=user)
    out = {'user': _user_out(db, created)}
    if created.role == Role.MAGISTRANT:
        out['plan_created'] = plan is not None
        if plan is not None:
            out['plan_id'] = plan.id
    return out


@app.put('/users/{user_id}')
def update_user(
    user_id: int,
    payload: schemas.UserUpdate,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Update a user and synchronise supervisor links.

    `supervisee_ids` replaces a supervisor's supervisee set;
    `supervisor_id` assigns a student's supervisor.
    """
    updated = services.UserService(db).update_user(user, user_id, payload.model_dump(exclude_unset=True))
    return {'user': _user_out(db, updated)}


@app.delete('/users/{user_id}')
def deactivate_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    """Soft-delete a user."""
    services.UserService(db).set_active(user, user_id, False)
    return {'status': 'ok'}


@app.post('/users/{user_id}/restore')
def restore_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    """Reactivate a soft-deleted user."""
    restored = services.UserService(db).set_active(user, user_id, True)
    return {'user': _user_out(db, restored)}


# plans

@app.get('/iup')
def list_plans(
    year: Optional[int] = None,
    student_id: Optional[int] = None,
    status: Optional[models.OverallStatus] = None,
    education_program: Optional[models.EducationProgram] = None,
    language: Optional[models.Language] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Plans visible to the caller.

    A master's student gets their own plan (created on first access when
    a supervisor is assigned); supervisors get their supervisees' plans;
    administrators get every plan matching the filters.
    """
    plan_service = services.PlanService(db)
    if user.role == Role.MAGISTRANT:
        plan = plan_service.get_or_create_for_student(user, year)
        return {'iup': _plans_out(db, [plan])[0]}
    plans = plan_service.list_plans(
        user,
        year=year,
        student_id=student_id,
        overall_status=status,
        education_program=education_program,
        language=language,
    )
    return {'iups': _plans_out(db, plans)}


@app.get('/iup/stats/dashboard')
def plan_stats(
    year: Optional[int] = None,
    education_program: Optional[models.EducationProgram] = None,
    language: Optional[models.Language] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(admin_only),
):
    """Plan statistics grouped by overall status, program and language."""
    return services.StatisticsService(db).get_statistics(
        year=year, education_program=education_program, language=language
    )


@app.get('/iup/supervisees')
def supervisees_overview(
    year: Optional[int] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(supervisor_only),
):
    """The caller's supervisees with plan progress and review backlog."""
    entries = services.PlanService(db).supervisee_overview(user, year)
    plans = [e['plan'] for e in entries if e['plan'] is not None]
    users = repositories.UserRepository(db).get_many(_plan_user_ids(plans))
    out = []
    for entry in entries:
        student = entry['student']
        item = {
            **_user_brief(student),
            'education_program': _value(student.education_program),
            'language': _value(student.language),
            'whatsapp': student.whatsapp,
            'email': student.email,
            'has_iup': entry['has_plan'],
            'iup': _plan_out(entry['plan'], users) if entry['plan'] else None,
        }
        if entry['has_plan']:
            item['progress'] = entry['progress']
            item['current_stage_title'] = entry['current_stage_title']
            item['stages_requiring_attention'] = entry['stages_requiring_attention']
        out.append(item)
    return {'supervisees': out}


@app.post('/iup/backfill')
def backfill_plans(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    """Create this year's plan for every linked master's student missing one."""
    return services.PlanService(db).create_missing_plans()


@app.get('/iup/{plan_id}')
def get_plan(plan_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Fetch one plan with stage history and editor details."""
    plan = services.PlanService(db).get_for(user, plan_id)
    return {'iup': _plans_out(db, [plan])[0]}


@app.delete('/iup/{plan_id}')
def deactivate_plan(plan_id: int, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    """Soft-deactivate a plan. Plans are never deleted."""
    plan = services.PlanService(db).deactivate(plan_id)
    return {'iup': _plans_out(db, [plan])[0]}


@app.put('/iup/{plan_id}/stage/{stage_number}')
def update_stage(
    plan_id: int,
    stage_number: int,
    payload: schemas.StageUpdateIn,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Edit stage data and/or change the stage status.

    Field patches merge into the stored data. A status change must be
    allowed for the caller's role; disallowed changes return 400 and
    leave the stage untouched.
    """
    body = payload.model_dump(exclude_unset=True)
    plan = services.PlanService(db).apply_stage_update(
        plan_id,
        stage_number,
        user,
        student_data=body.get('student_data'),
        supervisor_edits=body.get('supervisor_edits'),
        status=body.get('status'),
        comment=body.get('comment'),
    )
    return {'message': 'stage updated', 'iup': _plans_out(db, [plan])[0]}


@app.post('/iup/{plan_id}/stage/{stage_number}/submit')
def submit_stage(
    plan_id: int,
    stage_number: int,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Send a stage for review; only the plan's student may do this."""
    plan = services.PlanService(db).submit_stage(plan_id, stage_number, user)
    return {'message': 'stage submitted for review', 'iup': _plans_out(db, [plan])[0]}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
