"""Tests for Project reconciliation."""

import pytest
from tfc_mock import FakeTerraformCloud, MockOperatorContext, manifest

from tfc_operator.models import Project, ProjectPermissions, RecordKey
from tfc_operator.project import ProjectReconciler
from tfc_operator.reconciler import Outcome

KEY = RecordKey("default", "platform")


async def _converged(mock: MockOperatorContext, **spec: object) -> tuple[ProjectReconciler, str]:
    await mock.create(manifest("Project", "platform", {"name": "platform", **spec}))
    reconciler = ProjectReconciler(mock.deps)
    result = await mock.converge(reconciler, KEY)
    assert result.outcome == Outcome.CONVERGED, result.error
    record = await mock.get("Project", KEY)
    assert isinstance(record, Project)
    return reconciler, record.status.external_id


class TestProjectReconciler:
    """Tests for ProjectReconciler."""

    @pytest.mark.asyncio
    async def test_status_reports_name(self) -> None:
        mock = MockOperatorContext()

        await _converged(mock)

        record = await mock.get("Project", KEY)
        assert record.status.name == "platform"

    @pytest.mark.asyncio
    async def test_force_deletes_workspaces_first(self) -> None:
        """Test that only the project's own workspaces are removed, across pages."""
        mock = MockOperatorContext(cloud=FakeTerraformCloud(page_size=1))
        reconciler, project_id = await _converged(mock, deletionPolicy="force")
        for name in ("app", "db", "cache"):
            mock.cloud.add_workspace(name, project_id=project_id)
        outsider = mock.cloud.add_workspace("elsewhere")

        await mock.store.request_deletion("Project", KEY)
        result = await reconciler.reconcile(KEY)

        assert result.outcome == Outcome.DELETED
        assert mock.cloud.projects == {}
        assert list(mock.cloud.workspaces) == [outsider.id]
        assert len(mock.cloud.calls_to("delete_workspace")) == 3
        assert mock.cloud.calls[-1].method == "delete_project"

    @pytest.mark.asyncio
    async def test_soft_delete_of_vanished_project(self) -> None:
        mock = MockOperatorContext()
        reconciler, _ = await _converged(mock, deletionPolicy="soft")
        mock.cloud.projects.clear()

        await mock.store.request_deletion("Project", KEY)
        result = await reconciler.reconcile(KEY)

        assert result.outcome == Outcome.DELETED
        assert await mock.store.get("Project", KEY) is None


class TestProjectTeamAccess:
    """Tests for team access on projects."""

    @pytest.mark.asyncio
    async def test_grants_by_name_and_id(self) -> None:
        mock = MockOperatorContext()
        ops = mock.cloud.add_team("ops")
        dev = mock.cloud.add_team("dev")

        _, project_id = await _converged(
            mock,
            teamAccess=[
                {"team": {"name": "ops"}, "access": "maintain"},
                {
                    "team": {"id": dev.id},
                    "access": "custom",
                    "custom": {"createWorkspace": True, "runs": "plan"},
                },
            ],
        )

        grants = mock.cloud.grants_of(project_id)
        assert grants[ops.id].access == "maintain"
        assert grants[ops.id].permissions == {}
        expected = ProjectPermissions(createWorkspace=True, runs="plan").to_attributes()
        assert grants[dev.id].permissions == expected
        assert expected["workspace-access"]["create"] is True

    @pytest.mark.asyncio
    async def test_undeclared_grants_are_removed(self) -> None:
        mock = MockOperatorContext()
        ops = mock.cloud.add_team("ops")
        intruder = mock.cloud.add_team("intruder")
        reconciler, project_id = await _converged(
            mock, teamAccess=[{"team": {"name": "ops"}, "access": "read"}]
        )
        await mock.cloud.add_project_team_access(project_id, intruder.id, "admin", {})

        await reconciler.reconcile(KEY)

        assert list(mock.cloud.grants_of(project_id)) == [ops.id]

    @pytest.mark.asyncio
    async def test_converged_grants_are_left_alone(self) -> None:
        mock = MockOperatorContext()
        mock.cloud.add_team("ops")
        reconciler, _ = await _converged(
            mock, teamAccess=[{"team": {"name": "ops"}, "access": "custom"}]
        )
        mock.cloud.reset_calls()

        await reconciler.reconcile(KEY)

        assert mock.cloud.mutating_calls == []
