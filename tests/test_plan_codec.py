"""Tests for plan parsing, serialization and scoped body patches."""

from __future__ import annotations

import pytest

from plan_coordinator.models import PlanDefinition, PlanStatus, TaskDefinition, TaskStatus
from plan_coordinator.plan_codec import (
    UNSET,
    are_dependencies_met,
    generate_plan_markdown,
    get_claimable_tasks,
    parse_plan,
    serialize_plan,
    update_task_in_plan_body,
)


class TestParsePlan:
    def test_non_plan_issue_returns_none(self):
        assert parse_plan("Just a bug report", "Crash on startup") is None
        assert parse_plan("", "[PLAN] Empty") is None

    def test_marker_in_title_is_enough(self):
        body = "## Tasks\n\n### Task 1: Only task\n**Status:** pending\n"
        plan = parse_plan(body, "[PLAN] Title marker")
        assert plan is not None
        assert plan.title == "Title marker"
        assert [t.title for t in plan.tasks] == ["Only task"]

    def test_sections_and_metadata(self, sample_plan_body):
        plan = parse_plan(sample_plan_body, "")

        assert plan.title == "Widget parser"
        assert plan.goal == "Parse widget files into structured records."
        assert plan.context == "Widgets are stored as plain text."
        assert [t.number for t in plan.tasks] == [1, 2, 3]

        first = plan.tasks[0]
        assert first.status == TaskStatus.PENDING
        assert first.assignee is None
        assert first.estimate == "2h"
        assert first.dependencies == []
        assert first.files == ["widget/parser.py"]
        assert first.description == "Implement the widget parser."

        assert [(v.checked, v.text) for v in plan.verification] == [
            (False, "All tasks completed"),
            (True, "Tests pass"),
        ]

    def test_prose_dependency_resolves_to_exact_title(self, sample_plan_body):
        plan = parse_plan(sample_plan_body, "")
        assert plan.task(2).dependencies == ["Task 1"]
        assert plan.task(3).dependencies == ["Task 1", "Task 2"]
        assert plan.unresolved_dependencies == []

    def test_numeric_dependency_forms_normalize(self):
        body = (
            "# [PLAN] Forms\n\n## Tasks\n\n"
            "### Task 1: A\n**Status:** completed\n\n---\n\n"
            "### Task 2: B\n**Status:** completed\n\n---\n\n"
            "### Task 3: C\n**Status:** pending\n**Dependencies:** #1, task-2\n"
        )
        plan = parse_plan(body, "")
        assert plan.task(3).dependencies == ["Task 1", "Task 2"]
        assert are_dependencies_met(plan.task(3), plan)

    def test_semicolon_separated_prose_dependencies(self):
        body = (
            "# [PLAN] Prose\n\n## Tasks\n\n"
            "### Task 1: Build the lexer\n**Status:** pending\n\n---\n\n"
            "### Task 2: Build the emitter\n**Status:** pending\n\n---\n\n"
            "### Task 3: Glue\n**Status:** pending\n**Dependencies:** Build the lexer; Build the emitter\n"
        )
        plan = parse_plan(body, "")
        assert plan.task(3).dependencies == ["Task 1", "Task 2"]

    def test_unmatched_prose_dependency_is_recorded_and_blocks(self):
        body = (
            "# [PLAN] Missing\n\n## Tasks\n\n"
            "### Task 1: Lexer\n**Status:** completed\n\n---\n\n"
            "### Task 2: Emitter\n**Status:** pending\n**Dependencies:** Something that does not exist\n"
        )
        plan = parse_plan(body, "")
        assert plan.task(2).dependencies == ["Something that does not exist"]
        assert [r.task_number for r in plan.unresolved_dependencies] == [2]
        assert get_claimable_tasks(plan) == []

    def test_ambiguous_title_match_is_flagged(self):
        body = (
            "# [PLAN] Collide\n\n## Tasks\n\n"
            "### Task 1: Parser core\n**Status:** pending\n\n---\n\n"
            "### Task 2: Parser tests\n**Status:** pending\n\n---\n\n"
            "### Task 3: Docs\n**Status:** pending\n**Dependencies:** Parser\n"
        )
        plan = parse_plan(body, "")
        assert plan.task(3).dependencies == ["Parser"]
        assert len(plan.dependency_collisions) == 1
        assert "several task titles" in plan.unresolved_dependencies[0].reason

    def test_unknown_status_falls_back_to_pending(self):
        body = "# [PLAN] S\n\n## Tasks\n\n### Task 1: A\n**Status:** maybe-later\n"
        plan = parse_plan(body, "")
        assert plan.task(1).status == TaskStatus.PENDING

    def test_horizontal_rule_inside_description_is_kept(self):
        body = (
            "# [PLAN] Rule\n\n## Tasks\n\n"
            "### Task 1: A\n**Status:** pending\n\n**Description:**\nBefore\n---\nAfter\n\n---\n\n"
            "### Task 2: B\n**Status:** pending\n"
        )
        plan = parse_plan(body, "")
        assert plan.task(1).description == "Before\n---\nAfter"
        assert plan.task(2).title == "B"

    def test_heading_inside_description_is_kept(self):
        body = (
            "# [PLAN] Notes\n\n## Tasks\n\n"
            "### Task 1: Parser\n**Status:** pending\n\n**Description:**\nImplement the parser.\n"
            "## Notes for implementers\nKeep it small.\n\n---\n\n"
            "### Task 2: Emitter\n**Status:** pending\n**Dependencies:** Task 1\n\n"
            "## Verification\n- [ ] Tests pass\n"
        )
        plan = parse_plan(body, "")

        assert [t.number for t in plan.tasks] == [1, 2]
        assert plan.task(1).description == "Implement the parser.\n## Notes for implementers\nKeep it small."
        assert plan.task(2).dependencies == ["Task 1"]
        assert [v.text for v in plan.verification] == ["Tests pass"]


class TestPlanStatus:
    def test_status_follows_tasks(self, sample_plan_body):
        plan = parse_plan(sample_plan_body, "")
        assert plan.status == PlanStatus.ACTIVE

        body = update_task_in_plan_body(sample_plan_body, 2, status=TaskStatus.BLOCKED)
        assert parse_plan(body, "").status == PlanStatus.BLOCKED

        for number in (1, 2, 3):
            body = update_task_in_plan_body(body, number, status=TaskStatus.COMPLETED)
        assert parse_plan(body, "").status == PlanStatus.COMPLETE


class TestSerialization:
    def test_round_trip_preserves_structure(self, sample_plan_body):
        plan = parse_plan(sample_plan_body, "")
        plan.tasks[0].status = TaskStatus.IN_PROGRESS
        plan.tasks[0].assignee = "alice"

        reparsed = parse_plan(serialize_plan(plan), "")

        assert reparsed.title == plan.title
        assert reparsed.goal == plan.goal
        assert [(t.number, t.title, t.status, t.assignee, t.dependencies, t.files) for t in reparsed.tasks] == [
            (t.number, t.title, t.status, t.assignee, t.dependencies, t.files) for t in plan.tasks
        ]
        assert [t.description for t in reparsed.tasks] == [t.description for t in plan.tasks]

    def test_generate_plan_markdown_starts_everything_pending(self):
        definition = PlanDefinition(
            title="Billing export",
            goal="Export invoices as CSV",
            context="Finance asked for it",
            tasks=(
                TaskDefinition(title="Query invoices", description="Select rows", files=("billing/query.py",)),
                TaskDefinition(title="Write CSV", description="Render rows", dependencies=("1",)),
            ),
        )
        body = generate_plan_markdown(definition)
        plan = parse_plan(body, "")

        assert body.startswith("# [PLAN] Billing export")
        assert "**Assignee:** (empty if unclaimed)" in body
        assert "**Dependencies:** none" in body
        assert all(t.status == TaskStatus.PENDING for t in plan.tasks)
        assert plan.task(2).dependencies == ["Task 1"]
        assert [v.text for v in plan.verification] == ["All tasks completed", "Tests pass", "Integration works"]


class TestScopedPatch:
    def test_only_target_block_changes(self, sample_plan_body):
        patched = update_task_in_plan_body(sample_plan_body, 2, status=TaskStatus.CLAIMED, assignee="bob")

        before = sample_plan_body.split("\n")
        after = patched.split("\n")
        changed = [i for i, (a, b) in enumerate(zip(before, after)) if a != b]
        assert len(before) == len(after)
        assert [after[i] for i in changed] == ["**Status:** claimed", "**Assignee:** @bob"]

        plan = parse_plan(patched, "")
        assert plan.task(2).assignee == "bob"
        assert plan.task(1).assignee is None
        assert plan.task(3).status == TaskStatus.PENDING

    def test_clearing_assignee_renders_placeholder(self, sample_plan_body):
        claimed = update_task_in_plan_body(sample_plan_body, 1, assignee="alice")
        cleared = update_task_in_plan_body(claimed, 1, assignee=None)
        assert cleared == sample_plan_body

    def test_unset_changes_nothing(self, sample_plan_body):
        assert update_task_in_plan_body(sample_plan_body, 1, status=UNSET, assignee=UNSET) == sample_plan_body

    def test_missing_task_leaves_body_alone(self, sample_plan_body):
        assert update_task_in_plan_body(sample_plan_body, 9, status=TaskStatus.CLAIMED) == sample_plan_body

    def test_missing_metadata_lines_are_inserted_after_header(self):
        body = "# [PLAN] Sparse\n\n## Tasks\n\n### Task 1: Bare\nDo it.\n"
        patched = update_task_in_plan_body(body, 1, status=TaskStatus.CLAIMED, assignee="carol")
        assert "### Task 1: Bare\n**Status:** claimed\n**Assignee:** @carol\nDo it." in patched

    def test_crlf_and_indentation_are_preserved(self):
        body = "# [PLAN] Win\r\n\r\n## Tasks\r\n\r\n### Task 1: A\r\n  **Status:** pending\r\n  **Assignee:** (empty if unclaimed)\r\n"
        patched = update_task_in_plan_body(body, 1, status=TaskStatus.CLAIMED, assignee="dave")
        assert "  **Status:** claimed\r\n  **Assignee:** @dave\r\n" in patched

    def test_heading_inside_block_does_not_end_it(self):
        body = (
            "# [PLAN] Notes\n\n## Tasks\n\n"
            "### Task 1: A\n## Notes\nRead the RFC first.\n**Status:** pending\n**Assignee:** (empty if unclaimed)\n"
            "\n## Verification\n- [ ] Tests pass\n"
        )
        patched = update_task_in_plan_body(body, 1, status=TaskStatus.CLAIMED, assignee="erin")

        assert patched.count("**Status:**") == 1
        assert "Read the RFC first.\n**Status:** claimed\n**Assignee:** @erin\n" in patched
        assert patched.endswith("## Verification\n- [ ] Tests pass\n")


class TestClaimability:
    def test_only_dependency_free_unassigned_tasks(self, sample_plan_body):
        plan = parse_plan(sample_plan_body, "")
        assert [t.number for t in get_claimable_tasks(plan)] == [1]

    def test_completion_unlocks_dependents(self, sample_plan_body):
        body = update_task_in_plan_body(sample_plan_body, 1, status=TaskStatus.COMPLETED)
        plan = parse_plan(body, "")
        assert [t.number for t in get_claimable_tasks(plan)] == [2]

    @pytest.mark.parametrize(
        "status,assignee,claimable",
        [
            (TaskStatus.BLOCKED, None, True),
            (TaskStatus.BLOCKED, "erin", False),
            (TaskStatus.CLAIMED, None, False),
            (TaskStatus.IN_PROGRESS, None, False),
        ],
    )
    def test_status_and_assignee_gate_claims(self, sample_plan_body, status, assignee, claimable):
        body = update_task_in_plan_body(sample_plan_body, 1, status=status, assignee=assignee)
        plan = parse_plan(body, "")
        assert (plan.task(1) in get_claimable_tasks(plan)) is claimable
