"""Tests for the settings a Workspace converges after the workspace itself."""

from typing import Any

import pytest
from tfc_mock import MockOperatorContext, manifest

from tfc_operator.models import RecordKey, Workspace, WorkspacePermissions, parse_record
from tfc_operator.reconciler import Outcome
from tfc_operator.remote import NotificationOptions, RemoteTeamAccess
from tfc_operator.workspace import WorkspaceReconciler

KEY = RecordKey("default", "demo")


@pytest.fixture
def mock() -> MockOperatorContext:
    return MockOperatorContext()


async def _converged(mock: MockOperatorContext, **spec: Any) -> tuple[WorkspaceReconciler, str]:
    await mock.create(manifest("Workspace", "demo", {"name": "demo", **spec}))
    reconciler = WorkspaceReconciler(mock.deps)
    result = await mock.converge(reconciler, KEY)
    assert result.outcome == Outcome.CONVERGED, result.error
    record = await mock.get("Workspace", KEY)
    return reconciler, record.status.external_id


async def _respec(mock: MockOperatorContext, **spec: Any) -> None:
    document = manifest("Workspace", "demo", {"name": "demo", **spec})
    await mock.store.update_spec("Workspace", KEY, parse_record(document).spec)


async def _workspace(mock: MockOperatorContext) -> Workspace:
    record = await mock.get("Workspace", KEY)
    assert isinstance(record, Workspace)
    return record


class TestProjectReference:
    """Tests for placing the workspace in a project."""

    @pytest.mark.asyncio
    async def test_project_by_name(self, mock: MockOperatorContext) -> None:
        """Test that the exact name wins over a name sharing its prefix."""
        mock.cloud.add_project("platform-legacy")
        project = mock.cloud.add_project("platform")

        _, workspace_id = await _converged(mock, project={"name": "platform"})

        assert mock.cloud.workspaces[workspace_id].project_id == project.id

    @pytest.mark.asyncio
    async def test_unknown_project_fails_before_create(self, mock: MockOperatorContext) -> None:
        await mock.create(manifest("Workspace", "demo", {"name": "demo", "project": {"name": "x"}}))

        result = await mock.converge(WorkspaceReconciler(mock.deps), KEY)

        assert result.outcome == Outcome.FAILED
        assert "Project 'x' not found" in str(result.error)
        assert mock.cloud.workspaces == {}


class TestVariables:
    """Tests for Terraform and environment variables."""

    @pytest.mark.asyncio
    async def test_variables_are_created(self, mock: MockOperatorContext) -> None:
        await mock.secrets.write("default", "db", {"password": "pw"})

        _, workspace_id = await _converged(
            mock,
            terraformVariables=[{"name": "region", "value": "eu-west-1", "description": "AWS"}],
            environmentVariables=[
                {
                    "name": "DB_PASSWORD",
                    "sensitive": True,
                    "valueFrom": {"secretKeyRef": {"name": "db", "key": "password"}},
                }
            ],
        )

        variables = mock.cloud.variables_of(workspace_id)
        assert variables["region"].category == "terraform"
        assert variables["region"].value == "eu-west-1"
        assert variables["DB_PASSWORD"].category == "env"
        assert variables["DB_PASSWORD"].value == "pw"
        assert variables["DB_PASSWORD"].sensitive
        record = await _workspace(mock)
        assert sorted(s.name for s in record.status.variables) == ["DB_PASSWORD", "region"]
        assert all(s.version_id and s.value_id for s in record.status.variables)

    @pytest.mark.asyncio
    async def test_unchanged_variables_are_not_pushed(self, mock: MockOperatorContext) -> None:
        reconciler, _ = await _converged(
            mock, terraformVariables=[{"name": "region", "value": "eu"}]
        )
        mock.cloud.reset_calls()

        await reconciler.reconcile(KEY)

        assert mock.cloud.mutating_calls == []

    @pytest.mark.asyncio
    async def test_out_of_band_edit_is_reverted(self, mock: MockOperatorContext) -> None:
        """Test that a new remote version forces a push even with an unchanged spec."""
        reconciler, workspace_id = await _converged(
            mock, terraformVariables=[{"name": "region", "value": "eu"}]
        )
        variable = mock.cloud.variables_of(workspace_id)["region"]
        variable.value = "us"
        variable.version_id = "version-edited"

        await reconciler.reconcile(KEY)

        assert mock.cloud.variables_of(workspace_id)["region"].value == "eu"
        assert len(mock.cloud.calls_to("update_variable")) == 1

    @pytest.mark.asyncio
    async def test_secret_change_is_pushed(self, mock: MockOperatorContext) -> None:
        await mock.secrets.write("default", "db", {"password": "old"})
        reconciler, workspace_id = await _converged(
            mock,
            environmentVariables=[
                {"name": "PW", "valueFrom": {"secretKeyRef": {"name": "db", "key": "password"}}}
            ],
        )

        await mock.secrets.write("default", "db", {"password": "new"})
        await reconciler.reconcile(KEY)

        assert mock.cloud.variables_of(workspace_id)["PW"].value == "new"

    @pytest.mark.asyncio
    async def test_undeclared_variables_are_deleted(self, mock: MockOperatorContext) -> None:
        reconciler, workspace_id = await _converged(
            mock,
            terraformVariables=[{"name": "region", "value": "eu"}, {"name": "size", "value": "2"}],
        )

        await _respec(mock, terraformVariables=[{"name": "region", "value": "eu"}])
        await reconciler.reconcile(KEY)

        assert list(mock.cloud.variables_of(workspace_id)) == ["region"]
        record = await _workspace(mock)
        assert [s.name for s in record.status.variables] == ["region"]

    @pytest.mark.asyncio
    async def test_sensitive_variable_is_recreated_when_no_longer_sensitive(
        self, mock: MockOperatorContext
    ) -> None:
        reconciler, workspace_id = await _converged(
            mock, terraformVariables=[{"name": "key", "value": "a", "sensitive": True}]
        )
        old_id = mock.cloud.variables_of(workspace_id)["key"].id

        await _respec(mock, terraformVariables=[{"name": "key", "value": "a"}])
        result = await reconciler.reconcile(KEY)

        assert result.outcome == Outcome.CONVERGED, result.error
        variable = mock.cloud.variables_of(workspace_id)["key"]
        assert variable.id != old_id
        assert not variable.sensitive
        assert mock.cloud.calls_to("delete_variable")[0].args == (workspace_id, old_id)

    @pytest.mark.asyncio
    async def test_missing_value_secret_fails_pass(self, mock: MockOperatorContext) -> None:
        await mock.create(
            manifest(
                "Workspace",
                "demo",
                {
                    "name": "demo",
                    "environmentVariables": [
                        {"name": "PW", "valueFrom": {"secretKeyRef": {"name": "db", "key": "pw"}}}
                    ],
                },
            )
        )

        result = await mock.converge(WorkspaceReconciler(mock.deps), KEY)

        assert result.outcome == Outcome.FAILED
        assert "ReconcileError" in mock.reasons("Workspace", KEY)
        assert mock.cloud.variables == {}


class TestVariableSets:
    """Tests for applying variable sets."""

    @pytest.mark.asyncio
    async def test_apply_and_remove(self, mock: MockOperatorContext) -> None:
        shared = mock.cloud.add_variable_set("shared")
        everywhere = mock.cloud.add_variable_set("everywhere", is_global=True)

        reconciler, workspace_id = await _converged(
            mock, variableSets=[{"name": "shared"}, {"id": everywhere.id}]
        )

        assert shared.workspace_ids == [workspace_id]
        assert everywhere.workspace_ids == []
        record = await _workspace(mock)
        assert [s.name for s in record.status.variable_sets] == ["shared", "everywhere"]

        await _respec(mock, variableSets=[{"id": everywhere.id}])
        await reconciler.reconcile(KEY)

        assert shared.workspace_ids == []
        assert len(mock.cloud.calls_to("remove_variable_set")) == 1

    @pytest.mark.asyncio
    async def test_sets_applied_elsewhere_are_kept(self, mock: MockOperatorContext) -> None:
        """Test that sets this record never applied are left alone."""
        reconciler, workspace_id = await _converged(mock)
        foreign = mock.cloud.add_variable_set("foreign")
        foreign.workspace_ids.append(workspace_id)

        await reconciler.reconcile(KEY)

        assert foreign.workspace_ids == [workspace_id]

    @pytest.mark.asyncio
    async def test_unknown_set_fails_pass(self, mock: MockOperatorContext) -> None:
        await mock.create(
            manifest("Workspace", "demo", {"name": "demo", "variableSets": [{"name": "absent"}]})
        )

        result = await mock.converge(WorkspaceReconciler(mock.deps), KEY)

        assert result.outcome == Outcome.FAILED
        assert "Variable set 'absent' not found" in str(result.error)


class TestNotifications:
    """Tests for notification configurations."""

    @pytest.mark.asyncio
    async def test_create_update_delete(self, mock: MockOperatorContext) -> None:
        member = mock.cloud.add_member("ops@example.com")
        slack = {
            "name": "chat",
            "type": "slack",
            "url": "https://hooks.slack.com/a",
            "triggers": ["run:errored"],
        }
        email = {
            "name": "mail",
            "type": "email",
            "emailAddresses": ["oncall@example.com"],
            "emailUsers": ["ops@example.com"],
        }

        reconciler, workspace_id = await _converged(mock, notifications=[slack, email])

        by_name = {n.name: n for n in mock.cloud.notifications.values()}
        assert by_name["chat"].destination_type == "slack"
        assert by_name["chat"].triggers == ["run:errored"]
        assert by_name["mail"].email_user_ids == [member.user_id]
        assert by_name["mail"].email_addresses == ["oncall@example.com"]

        stray = await mock.cloud.create_notification(
            workspace_id,
            NotificationOptions(name="stray", destination_type="slack", url="https://x"),
        )
        await _respec(mock, notifications=[{**slack, "url": "https://hooks.slack.com/b"}, email])
        mock.cloud.reset_calls()
        await reconciler.reconcile(KEY)

        assert stray.id not in mock.cloud.notifications
        assert len(mock.cloud.calls_to("update_notification")) == 1
        assert mock.cloud.calls_to("create_notification") == []
        by_name = {n.name: n for n in mock.cloud.notifications.values()}
        assert by_name["chat"].url == "https://hooks.slack.com/b"

    @pytest.mark.asyncio
    async def test_generic_token_is_sent(self, mock: MockOperatorContext) -> None:
        await _converged(
            mock,
            notifications=[
                {"name": "hook", "type": "generic", "url": "https://ci.example.com", "token": "t"}
            ],
        )

        assert list(mock.cloud.notification_tokens.values()) == ["t"]

    @pytest.mark.asyncio
    async def test_unknown_email_user_fails_pass(self, mock: MockOperatorContext) -> None:
        await mock.create(
            manifest(
                "Workspace",
                "demo",
                {
                    "name": "demo",
                    "notifications": [
                        {"name": "mail", "type": "email", "emailUsers": ["ghost@example.com"]}
                    ],
                },
            )
        )

        result = await mock.converge(WorkspaceReconciler(mock.deps), KEY)

        assert result.outcome == Outcome.FAILED
        assert "ghost@example.com" in str(result.error)
        assert mock.cloud.notifications == {}


class TestTeamAccess:
    """Tests for workspace team access."""

    @pytest.mark.asyncio
    async def test_grants_follow_declaration(self, mock: MockOperatorContext) -> None:
        ops = mock.cloud.add_team("ops")
        dev = mock.cloud.add_team("dev")
        auditors = mock.cloud.add_team("auditors")

        reconciler, workspace_id = await _converged(
            mock,
            teamAccess=[
                {"team": {"name": "ops"}, "access": "admin"},
                {"team": {"id": dev.id}, "access": "custom", "custom": {"runs": "apply"}},
            ],
        )

        grants = mock.cloud.grants_of(workspace_id)
        assert grants[ops.id].access == "admin"
        assert grants[dev.id].access == "custom"
        assert grants[dev.id].permissions == WorkspacePermissions(runs="apply").to_attributes()

        await mock.cloud.add_workspace_team_access(workspace_id, auditors.id, "read", {})
        await _respec(mock, teamAccess=[{"team": {"name": "ops"}, "access": "write"}])
        await reconciler.reconcile(KEY)

        grants = mock.cloud.grants_of(workspace_id)
        assert list(grants) == [ops.id]
        assert grants[ops.id].access == "write"

    @pytest.mark.asyncio
    async def test_custom_permission_drift_is_corrected(self, mock: MockOperatorContext) -> None:
        dev = mock.cloud.add_team("dev")
        reconciler, workspace_id = await _converged(
            mock,
            teamAccess=[{"team": {"name": "dev"}, "access": "custom", "custom": {"runs": "plan"}}],
        )
        grant: RemoteTeamAccess = mock.cloud.grants_of(workspace_id)[dev.id]
        mock.cloud.workspace_team_access[grant.id].permissions["runs"] = "apply"
        mock.cloud.reset_calls()

        await reconciler.reconcile(KEY)

        assert len(mock.cloud.calls_to("update_workspace_team_access")) == 1
        assert mock.cloud.grants_of(workspace_id)[dev.id].permissions["runs"] == "plan"

    @pytest.mark.asyncio
    async def test_unknown_team_fails_pass(self, mock: MockOperatorContext) -> None:
        await mock.create(
            manifest(
                "Workspace",
                "demo",
                {"name": "demo", "teamAccess": [{"team": {"name": "ghosts"}, "access": "read"}]},
            )
        )

        result = await mock.converge(WorkspaceReconciler(mock.deps), KEY)

        assert result.outcome == Outcome.FAILED
        assert "Team 'ghosts' not found" in str(result.error)


class TestWorkspaceRelationships:
    """Tests for run triggers, state sharing, SSH keys and run tasks."""

    @pytest.mark.asyncio
    async def test_run_triggers(self, mock: MockOperatorContext) -> None:
        network = mock.cloud.add_workspace("network")
        dns = mock.cloud.add_workspace("dns")

        reconciler, _ = await _converged(
            mock, runTriggers=[{"name": "network"}, {"id": dns.id}]
        )

        assert sorted(t.sourceable_id for t in mock.cloud.run_triggers.values()) == sorted(
            [network.id, dns.id]
        )

        await _respec(mock, runTriggers=[{"id": dns.id}])
        await reconciler.reconcile(KEY)

        assert [t.sourceable_id for t in mock.cloud.run_triggers.values()] == [dns.id]

    @pytest.mark.asyncio
    async def test_run_trigger_source_must_exist(self, mock: MockOperatorContext) -> None:
        await mock.create(
            manifest("Workspace", "demo", {"name": "demo", "runTriggers": [{"name": "absent"}]})
        )

        result = await mock.converge(WorkspaceReconciler(mock.deps), KEY)

        assert result.outcome == Outcome.FAILED
        assert mock.cloud.run_triggers == {}

    @pytest.mark.asyncio
    async def test_global_remote_state(self, mock: MockOperatorContext) -> None:
        _, workspace_id = await _converged(mock, remoteStateSharing={"allWorkspaces": True})

        assert mock.cloud.workspaces[workspace_id].global_remote_state
        assert mock.cloud.calls_to("replace_remote_state_consumers") == []

    @pytest.mark.asyncio
    async def test_remote_state_consumers(self, mock: MockOperatorContext) -> None:
        app = mock.cloud.add_workspace("app")

        reconciler, workspace_id = await _converged(
            mock, remoteStateSharing={"workspaces": [{"name": "app"}]}
        )

        assert mock.cloud.remote_state_consumers[workspace_id] == [app.id]
        assert not mock.cloud.workspaces[workspace_id].global_remote_state

        await reconciler.reconcile(KEY)

        assert len(mock.cloud.calls_to("replace_remote_state_consumers")) == 1

    @pytest.mark.asyncio
    async def test_ssh_key_assign_and_unassign(self, mock: MockOperatorContext) -> None:
        key = mock.cloud.add_ssh_key("deploy")

        reconciler, workspace_id = await _converged(mock, sshKey={"name": "deploy"})

        assert mock.cloud.workspaces[workspace_id].ssh_key_id == key.id
        record = await _workspace(mock)
        assert record.status.ssh_key_id == key.id

        await _respec(mock)
        await reconciler.reconcile(KEY)

        assert mock.cloud.workspaces[workspace_id].ssh_key_id is None
        record = await _workspace(mock)
        assert record.status.ssh_key_id == ""

    @pytest.mark.asyncio
    async def test_run_tasks(self, mock: MockOperatorContext) -> None:
        scan = mock.cloud.add_run_task("scan")
        cost = mock.cloud.add_run_task("cost")

        reconciler, _ = await _converged(
            mock,
            runTasks=[
                {"name": "scan", "enforcementLevel": "advisory"},
                {"id": cost.id, "enforcementLevel": "mandatory", "stage": "pre_plan"},
            ],
        )

        attached = {a.task_id: a for a in mock.cloud.workspace_run_tasks.values()}
        assert attached[scan.id].enforcement_level == "advisory"
        assert attached[scan.id].stage == "post_plan"
        assert attached[cost.id].stage == "pre_plan"

        await _respec(mock, runTasks=[{"name": "scan", "enforcementLevel": "mandatory"}])
        await reconciler.reconcile(KEY)

        attached = {a.task_id: a for a in mock.cloud.workspace_run_tasks.values()}
        assert list(attached) == [scan.id]
        assert attached[scan.id].enforcement_level == "mandatory"

    @pytest.mark.asyncio
    async def test_fully_declared_workspace_is_idempotent(self, mock: MockOperatorContext) -> None:
        """Test that a second pass over every setting changes nothing."""
        mock.cloud.add_team("ops")
        mock.cloud.add_member("ops@example.com")
        mock.cloud.add_ssh_key("deploy")
        mock.cloud.add_run_task("scan")
        mock.cloud.add_variable_set("shared")
        mock.cloud.add_workspace("network")
        mock.cloud.add_project("platform")
        reconciler, _ = await _converged(
            mock,
            project={"name": "platform"},
            sshKey={"name": "deploy"},
            terraformVariables=[{"name": "region", "value": "eu"}],
            environmentVariables=[{"name": "TF_LOG", "value": "info"}],
            variableSets=[{"name": "shared"}],
            notifications=[{"name": "mail", "type": "email", "emailUsers": ["ops@example.com"]}],
            teamAccess=[{"team": {"name": "ops"}, "access": "custom", "custom": {"runs": "apply"}}],
            runTriggers=[{"name": "network"}],
            remoteStateSharing={"workspaces": [{"name": "network"}]},
            runTasks=[{"name": "scan", "enforcementLevel": "advisory"}],
        )
        mock.cloud.reset_calls()

        result = await reconciler.reconcile(KEY)

        assert result.outcome == Outcome.CONVERGED
        assert mock.cloud.mutating_calls == []
