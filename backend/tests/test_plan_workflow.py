import pytest

from iup_tracker import models, services
from iup_tracker.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from iup_tracker.models import OverallStatus, Role, StageStatus

FULL_TOPIC = {"kazakh": "Тақырып", "russian": "Тема", "english": "Topic"}


@pytest.fixture
def actors(make_user, link):
    admin = make_user(Role.ADMIN)
    leader = make_user(Role.LEADER)
    student = make_user(Role.MAGISTRANT)
    plan = link(student, leader)
    return admin, leader, student, plan


def _statuses(stage):
    return [event.status for event in stage.history]


def test_linking_creates_plan_with_default_stages(actors):
    _, leader, student, plan = actors
    assert plan is not None
    assert plan.student_id == student.id
    assert plan.supervisor_id == leader.id
    assert plan.year == models.current_year()
    assert [s.stage_number for s in plan.stages] == [1, 2]
    assert [s.stage_type for s in plan.stages] == [
        models.StageType.DISSERTATION_TOPIC,
        models.StageType.DISSERTATION_APPLICATION,
    ]
    assert all(s.status == StageStatus.NOT_STARTED for s in plan.stages)
    assert plan.overall_status == OverallStatus.DRAFT
    assert plan.current_stage == 1
    assert plan.progress == 0


def test_plan_creation_is_idempotent(session, actors):
    _, leader, student, plan = actors
    svc = services.PlanService(session)
    again = svc.create_with_default_stages(student.id, leader.id, student.education_program, student.language)
    assert again.id == plan.id
    assert svc.get_or_create_for_student(student).id == plan.id


def test_get_or_create_requires_supervisor(session, make_user):
    student = make_user(Role.MAGISTRANT)
    with pytest.raises(ValidationFailedError):
        services.PlanService(session).get_or_create_for_student(student)


def test_get_or_create_does_not_create_past_years(session, actors):
    _, _, student, _ = actors
    with pytest.raises(NotFoundError):
        services.PlanService(session).get_or_create_for_student(student, models.current_year() - 1)


def test_new_year_gets_a_new_plan(session, actors, monkeypatch):
    _, _, student, plan = actors
    monkeypatch.setattr(models, "current_year", lambda: plan.year + 1)
    fresh = services.PlanService(session).get_or_create_for_student(student)
    assert fresh.id != plan.id
    assert fresh.year == plan.year + 1


def test_student_patch_starts_stage(session, actors):
    _, _, student, plan = actors
    svc = services.PlanService(session)
    plan = svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": {"english": " Topic "}})
    stage = plan.get_stage(1)
    assert stage.status == StageStatus.IN_PROGRESS
    assert stage.topic_english == "Topic"
    assert stage.topic_russian is None
    assert _statuses(stage) == [StageStatus.IN_PROGRESS]
    assert stage.history[0].comment == services.STARTED_COMMENT
    assert plan.overall_status == OverallStatus.IN_PROGRESS


def test_topic_merge_keeps_other_languages(session, actors):
    _, _, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": FULL_TOPIC})
    plan = svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": {"russian": "Новая тема"}})
    stage = plan.get_stage(1)
    assert stage.topic() == {"kazakh": "Тақырып", "russian": "Новая тема", "english": "Topic"}
    # second patch does not restart the stage
    assert _statuses(stage) == [StageStatus.IN_PROGRESS]


def test_full_two_stage_workflow(session, actors):
    admin, leader, student, plan = actors
    svc = services.PlanService(session)

    svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": FULL_TOPIC})
    plan = svc.submit_stage(plan.id, 1, student)
    stage = plan.get_stage(1)
    assert stage.status == StageStatus.SUBMITTED
    assert stage.submitted_at is not None
    assert plan.overall_status == OverallStatus.SUPERVISOR_REVIEW

    plan = svc.apply_stage_update(plan.id, 1, leader, status="supervisor_approved", comment="Good")
    stage = plan.get_stage(1)
    assert stage.status == StageStatus.ADMIN_REVIEW
    assert _statuses(stage) == [
        StageStatus.IN_PROGRESS,
        StageStatus.SUBMITTED,
        StageStatus.SUPERVISOR_APPROVED,
        StageStatus.ADMIN_REVIEW,
    ]
    assert stage.history[-1].comment == "Approved by supervisor. Good"
    assert stage.supervisor_reviewed_at is not None
    assert plan.overall_status == OverallStatus.ADMIN_REVIEW

    plan = svc.apply_stage_update(plan.id, 1, admin, status="admin_approved")
    assert plan.get_stage(1).status == StageStatus.ADMIN_APPROVED
    assert plan.get_stage(1).completed_at is not None
    assert plan.current_stage == 2
    second = plan.get_stage(2)
    assert second.status == StageStatus.IN_PROGRESS
    assert second.history[-1].comment == services.NEXT_STAGE_COMMENT
    assert plan.progress == 50
    assert plan.overall_status == OverallStatus.IN_PROGRESS

    svc.submit_stage(plan.id, 2, student)
    svc.apply_stage_update(plan.id, 2, leader, status="supervisor_approved")
    plan = svc.apply_stage_update(plan.id, 2, admin, status="admin_approved")
    assert plan.current_stage == 2
    assert plan.progress == 100
    assert plan.overall_status == OverallStatus.COMPLETED


def test_supervisor_approval_without_comment_uses_default(session, actors):
    _, leader, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": FULL_TOPIC})
    svc.submit_stage(plan.id, 1, student)
    plan = svc.apply_stage_update(plan.id, 1, leader, status="supervisor_approved")
    assert plan.get_stage(1).history[-1].comment == services.FORWARDED_COMMENT


def test_invalid_transition_changes_nothing(session, actors):
    _, _, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 1, student, student_data={"text_data": "draft"})
    with pytest.raises(InvalidTransitionError) as exc:
        svc.apply_stage_update(plan.id, 1, student, student_data={"text_data": "changed"}, status="admin_approved")
    assert exc.value.status_code == 400
    session.expire_all()
    stage = svc.get_plan(plan.id).get_stage(1)
    assert stage.text_data == "draft"
    assert stage.status == StageStatus.IN_PROGRESS
    assert len(stage.history) == 1


def test_submit_requires_topic_in_all_languages(session, actors):
    _, _, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": {"kazakh": "Тақырып", "russian": "Тема"}})
    with pytest.raises(ValidationFailedError) as exc:
        svc.submit_stage(plan.id, 1, student)
    assert "english" in exc.value.message
    assert svc.get_plan(plan.id).get_stage(1).status == StageStatus.IN_PROGRESS


def test_submit_guards(session, actors):
    _, leader, student, plan = actors
    svc = services.PlanService(session)
    with pytest.raises(InvalidTransitionError):
        svc.submit_stage(plan.id, 1, student)
    with pytest.raises(PermissionDeniedError):
        svc.submit_stage(plan.id, 1, leader)
    with pytest.raises(NotFoundError):
        svc.submit_stage(plan.id, 5, student)


def test_rejected_stage_can_be_resubmitted(session, actors):
    _, leader, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": FULL_TOPIC})
    svc.submit_stage(plan.id, 1, student)
    plan = svc.apply_stage_update(plan.id, 1, leader, status="rejected", comment="Rework the topic")
    assert plan.get_stage(1).status == StageStatus.REJECTED
    plan = svc.submit_stage(plan.id, 1, student)
    assert plan.get_stage(1).status == StageStatus.SUBMITTED


def test_admin_can_reject_in_progress_stage(session, actors):
    admin, _, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 1, student, student_data={"text_data": "x"})
    plan = svc.apply_stage_update(plan.id, 1, admin, status="rejected")
    assert plan.get_stage(1).status == StageStatus.REJECTED


def test_edit_permissions(session, actors, make_user):
    admin, leader, student, plan = actors
    svc = services.PlanService(session)
    other_leader = make_user(Role.LEADER)
    with pytest.raises(PermissionDeniedError):
        svc.apply_stage_update(plan.id, 1, admin, student_data={"text_data": "x"})
    with pytest.raises(PermissionDeniedError):
        svc.apply_stage_update(plan.id, 1, student, supervisor_edits={"comments": "x"})
    with pytest.raises(PermissionDeniedError):
        svc.apply_stage_update(plan.id, 1, other_leader, supervisor_edits={"comments": "x"})


def test_supervisor_edits_are_stored_separately(session, actors):
    _, leader, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": FULL_TOPIC})
    plan = svc.apply_stage_update(
        plan.id, 1, leader,
        supervisor_edits={"dissertation_topic": {"english": "Better topic"}, "comments": "Shorten it"},
    )
    stage = plan.get_stage(1)
    assert stage.topic_english == "Topic"
    assert stage.edit_topic_english == "Better topic"
    assert stage.edit_comments == "Shorten it"
    assert stage.edited_by_id == leader.id
    assert stage.edited_at is not None


def test_files_and_additional_data_merge(session, actors):
    _, _, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 2, student, student_data={"additional_data": {"a": 1}})
    plan = svc.apply_stage_update(plan.id, 2, student, student_data={
        "additional_data": {"b": 2},
        "files": [{"file_name": "app.pdf", "file_path": "/uploads/app.pdf", "file_size": 10}],
    })
    stage = plan.get_stage(2)
    assert stage.additional_data == {"a": 1, "b": 2}
    assert stage.files[0]["file_name"] == "app.pdf"
    assert stage.files[0]["uploaded_at"]


def test_approved_plan_is_never_demoted(session, actors):
    _, leader, student, plan = actors
    svc = services.PlanService(session)
    plan.overall_status = OverallStatus.APPROVED
    svc.plan_repo.save(plan)
    plan = svc.apply_stage_update(plan.id, 1, student, student_data={"text_data": "x"})
    assert plan.overall_status == OverallStatus.APPROVED


def test_list_plans_scoping(session, actors, make_user, link):
    admin, leader, student, plan = actors
    other_leader = make_user(Role.LEADER)
    other_student = make_user(Role.MAGISTRANT, education_program=models.EducationProgram.P_7M06101)
    link(other_student, other_leader)
    svc = services.PlanService(session)

    assert [p.id for p in svc.list_plans(leader)] == [plan.id]
    assert len(svc.list_plans(admin)) == 2
    only = svc.list_plans(admin, education_program="7M06101")
    assert [p.student_id for p in only] == [other_student.id]
    with pytest.raises(PermissionDeniedError):
        svc.list_plans(student)


def test_deactivated_plan_is_hidden_and_replaceable(session, actors):
    admin, _, student, plan = actors
    svc = services.PlanService(session)
    svc.deactivate(plan.id)
    assert svc.list_plans(admin) == []
    fresh = svc.get_or_create_for_student(student)
    assert fresh.id != plan.id


def test_create_missing_plans(session, make_user):
    leader = make_user(Role.LEADER)
    linked = make_user(Role.MAGISTRANT, supervisor_id=leader.id)
    lonely = make_user(Role.MAGISTRANT)
    make_user(Role.DOCTORANT, supervisor_id=leader.id)

    result = services.PlanService(session).create_missing_plans()
    assert result["created"] == 1
    assert result["existing"] == 0
    assert [s["id"] for s in result["without_supervisor"]] == [lonely.id]
    assert services.PlanService(session).plan_repo.get_active_for_year(linked.id, models.current_year())

    again = services.PlanService(session).create_missing_plans()
    assert again["created"] == 0
    assert again["existing"] == 1


def test_statistics(session, actors, make_user, link):
    admin, leader, student, plan = actors
    kazakh = make_user(Role.MAGISTRANT, language=models.Language.KAZAKH)
    link(kazakh, leader)
    services.PlanService(session).apply_stage_update(plan.id, 1, student, student_data={"text_data": "x"})

    stats = services.StatisticsService(session).get_statistics()
    assert stats["total"] == 2
    by_status = {g["status"]: g for g in stats["status_statistics"]}
    assert by_status["in_progress"]["count"] == 1
    assert by_status["in_progress"]["students"][0]["id"] == student.id
    assert by_status["draft"]["students"][0]["supervisor"] == leader.full_name
    assert {row["value"]: row["count"] for row in stats["by_language"]} == {"Русский": 1, "Қазақша": 1}

    filtered = services.StatisticsService(session).get_statistics(language="Қазақша")
    assert filtered["total"] == 1


def test_stage_update_to_submitted_checks_topic(session, actors):
    _, _, student, plan = actors
    svc = services.PlanService(session)
    with pytest.raises(ValidationFailedError):
        svc.apply_stage_update(
            plan.id, 1, student,
            student_data={"dissertation_topic": {"english": "only one"}}, status="submitted",
        )
    plan = svc.apply_stage_update(plan.id, 1, student, student_data={"dissertation_topic": FULL_TOPIC}, status="submitted")
    assert plan.get_stage(1).status == StageStatus.SUBMITTED


def test_approving_a_later_stage_keeps_the_pointer(session, actors):
    admin, _, student, plan = actors
    svc = services.PlanService(session)
    svc.apply_stage_update(plan.id, 2, student, student_data={"text_data": "application"})
    svc.submit_stage(plan.id, 2, student)
    plan = svc.apply_stage_update(plan.id, 2, admin, status="admin_approved")
    assert plan.get_stage(2).status == StageStatus.ADMIN_APPROVED
    assert plan.current_stage == 1
    assert plan.get_stage(1).status == StageStatus.NOT_STARTED
    assert plan.progress == 50
