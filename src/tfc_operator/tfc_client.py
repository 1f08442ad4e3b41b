"""HTTP client for the HCP Terraform / Terraform Enterprise API (JSON:API v2).

Implements the RemoteClient protocol on top of httpx.AsyncClient. Status
codes are translated into the two error signals reconciliation knows:
- 404 -> ResourceNotFound
- 409/422 on delete calls -> NotSafeToDelete
- anything else non-2xx, and transport failures -> RemoteError
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

import httpx

from .remote import (
    INIT_PAGE_NUMBER,
    MAX_PAGE_SIZE,
    NotificationOptions,
    NotSafeToDelete,
    Page,
    PlatformInfo,
    RemoteAgentPool,
    RemoteAgentToken,
    RemoteConfigurationVersion,
    RemoteError,
    RemoteMembership,
    RemoteNotification,
    RemoteOutput,
    RemoteProject,
    RemoteRun,
    RemoteRunTask,
    RemoteRunTrigger,
    RemoteSSHKey,
    RemoteTeam,
    RemoteTeamAccess,
    RemoteVariable,
    RemoteVariableSet,
    RemoteWorkspace,
    RemoteWorkspaceRunTask,
    ResourceNotFound,
    RunOptions,
    VariableOptions,
    WorkspaceOptions,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v2"
JSONAPI_CONTENT_TYPE = "application/vnd.api+json"
DEFAULT_TIMEOUT_SECONDS = 30.0

# Ping response headers describing the platform
APP_NAME_HEADER = "TFP-AppName"
TFE_VERSION_HEADER = "X-TFE-Version"
CLOUD_APP_NAMES = frozenset({"HCP Terraform", "Terraform Cloud"})

# Custom permission attributes returned on team access grants
WORKSPACE_PERMISSION_KEYS = (
    "runs",
    "run-tasks",
    "sentinel-mocks",
    "state-versions",
    "variables",
    "workspace-locking",
)
PROJECT_PERMISSION_KEYS = ("project-access", "workspace-access")


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _relationship_id(data: dict[str, Any], name: str) -> str | None:
    rel = (data.get("relationships") or {}).get(name) or {}
    rel_data = rel.get("data")
    if isinstance(rel_data, dict):
        return rel_data.get("id")
    return None


def _next_page(body: dict[str, Any]) -> int | None:
    pagination = (body.get("meta") or {}).get("pagination") or {}
    return pagination.get("next-page") or None


def _parse_run(data: dict[str, Any]) -> RemoteRun:
    attrs = data.get("attributes") or {}
    return RemoteRun(
        id=data["id"],
        status=attrs.get("status", ""),
        workspace_id=_relationship_id(data, "workspace") or "",
        is_destroy=bool(attrs.get("is-destroy", False)),
        plan_only=bool(attrs.get("plan-only", False)),
        refresh_only=bool(attrs.get("refresh-only", False)),
        configuration_version_id=_relationship_id(data, "configuration-version") or "",
        created_at=_parse_time(attrs.get("created-at")),
    )


def _parse_workspace(data: dict[str, Any], included: list[dict[str, Any]]) -> RemoteWorkspace:
    attrs = data.get("attributes") or {}
    current_run = None
    run_id = _relationship_id(data, "current-run")
    if run_id:
        run_data = next(
            (i for i in included if i.get("type") == "runs" and i.get("id") == run_id),
            {"id": run_id, "attributes": {}},
        )
        current_run = _parse_run(run_data)
    return RemoteWorkspace(
        id=data["id"],
        name=attrs.get("name", ""),
        description=attrs.get("description") or "",
        execution_mode=attrs.get("execution-mode") or "remote",
        agent_pool_id=_relationship_id(data, "agent-pool"),
        terraform_version=attrs.get("terraform-version") or "",
        auto_apply=bool(attrs.get("auto-apply", False)),
        project_id=_relationship_id(data, "project"),
        tags=list(attrs.get("tag-names") or []),
        allow_destroy_plan=bool(attrs.get("allow-destroy-plan", True)),
        working_directory=attrs.get("working-directory") or "",
        global_remote_state=bool(attrs.get("global-remote-state", False)),
        ssh_key_id=_relationship_id(data, "ssh-key"),
        current_run=current_run,
    )


def _parse_agent_pool(data: dict[str, Any]) -> RemoteAgentPool:
    attrs = data.get("attributes") or {}
    return RemoteAgentPool(
        id=data["id"],
        name=attrs.get("name", ""),
        organization_scoped=bool(attrs.get("organization-scoped", True)),
    )


def _parse_agent_token(data: dict[str, Any]) -> RemoteAgentToken:
    attrs = data.get("attributes") or {}
    return RemoteAgentToken(
        id=data["id"],
        description=attrs.get("description") or "",
        created_at=_parse_time(attrs.get("created-at")),
        last_used_at=_parse_time(attrs.get("last-used-at")),
        token=attrs.get("token"),
    )


def _parse_configuration_version(data: dict[str, Any]) -> RemoteConfigurationVersion:
    attrs = data.get("attributes") or {}
    return RemoteConfigurationVersion(
        id=data["id"],
        status=attrs.get("status", ""),
        upload_url=attrs.get("upload-url") or "",
        speculative=bool(attrs.get("speculative", False)),
    )


def _parse_project(data: dict[str, Any]) -> RemoteProject:
    return RemoteProject(id=data["id"], name=(data.get("attributes") or {}).get("name", ""))


def _workspace_payload(options: WorkspaceOptions) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        "name": options.name,
        "description": options.description,
        "execution-mode": options.execution_mode,
        "auto-apply": options.auto_apply,
        "tag-names": options.tags,
        "allow-destroy-plan": options.allow_destroy_plan,
        "working-directory": options.working_directory,
    }
    if options.terraform_version:
        attributes["terraform-version"] = options.terraform_version
    if options.global_remote_state is not None:
        attributes["global-remote-state"] = options.global_remote_state
    relationships: dict[str, Any] = {}
    if options.agent_pool_id:
        relationships["agent-pool"] = {"data": {"type": "agent-pools", "id": options.agent_pool_id}}
    if options.project_id:
        relationships["project"] = {"data": {"type": "projects", "id": options.project_id}}
    data: dict[str, Any] = {"type": "workspaces", "attributes": attributes}
    if relationships:
        data["relationships"] = relationships
    return {"data": data}


def _relationship_ids(data: dict[str, Any], name: str) -> list[str]:
    rel = (data.get("relationships") or {}).get(name) or {}
    rel_data = rel.get("data")
    if isinstance(rel_data, list):
        return [item["id"] for item in rel_data if isinstance(item, dict) and "id" in item]
    return []


def _parse_team(data: dict[str, Any]) -> RemoteTeam:
    return RemoteTeam(id=data["id"], name=(data.get("attributes") or {}).get("name", ""))


def _parse_team_access(data: dict[str, Any], permission_keys: tuple[str, ...]) -> RemoteTeamAccess:
    attrs = data.get("attributes") or {}
    return RemoteTeamAccess(
        id=data["id"],
        team_id=_relationship_id(data, "team") or "",
        access=attrs.get("access", ""),
        permissions={key: attrs[key] for key in permission_keys if key in attrs},
    )


def _parse_variable(data: dict[str, Any]) -> RemoteVariable:
    attrs = data.get("attributes") or {}
    return RemoteVariable(
        id=data["id"],
        key=attrs.get("key", ""),
        category=attrs.get("category", ""),
        value=attrs.get("value") or "",
        description=attrs.get("description") or "",
        hcl=bool(attrs.get("hcl", False)),
        sensitive=bool(attrs.get("sensitive", False)),
        version_id=attrs.get("version-id") or "",
    )


def _parse_variable_set(data: dict[str, Any]) -> RemoteVariableSet:
    attrs = data.get("attributes") or {}
    return RemoteVariableSet(
        id=data["id"],
        name=attrs.get("name", ""),
        is_global=bool(attrs.get("global", False)),
        workspace_ids=_relationship_ids(data, "workspaces"),
    )


def _parse_notification(data: dict[str, Any]) -> RemoteNotification:
    attrs = data.get("attributes") or {}
    return RemoteNotification(
        id=data["id"],
        name=attrs.get("name", ""),
        destination_type=attrs.get("destination-type", ""),
        enabled=bool(attrs.get("enabled", False)),
        url=attrs.get("url") or "",
        triggers=list(attrs.get("triggers") or []),
        email_addresses=list(attrs.get("email-addresses") or []),
        email_user_ids=_relationship_ids(data, "users"),
    )


def _parse_membership(data: dict[str, Any]) -> RemoteMembership:
    return RemoteMembership(
        id=data["id"],
        user_id=_relationship_id(data, "user") or "",
        email=(data.get("attributes") or {}).get("email", ""),
    )


def _parse_run_trigger(data: dict[str, Any]) -> RemoteRunTrigger:
    return RemoteRunTrigger(
        id=data["id"],
        sourceable_id=_relationship_id(data, "sourceable") or "",
        sourceable_name=(data.get("attributes") or {}).get("sourceable-name") or "",
    )


def _parse_workspace_run_task(data: dict[str, Any]) -> RemoteWorkspaceRunTask:
    attrs = data.get("attributes") or {}
    return RemoteWorkspaceRunTask(
        id=data["id"],
        task_id=_relationship_id(data, "task") or "",
        enforcement_level=attrs.get("enforcement-level", ""),
        stage=attrs.get("stage") or "post_plan",
    )


def _team_access_payload(
    resource_type: str, access: str, permissions: dict[str, Any]
) -> dict[str, Any]:
    attributes: dict[str, Any] = {"access": access}
    if access == "custom":
        attributes.update(permissions)
    return {"data": {"type": resource_type, "attributes": attributes}}


def _variable_payload(options: VariableOptions, variable_id: str | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": "vars",
        "attributes": {
            "key": options.key,
            "value": options.value,
            "description": options.description,
            "category": options.category,
            "hcl": options.hcl,
            "sensitive": options.sensitive,
        },
    }
    if variable_id:
        data["id"] = variable_id
    return {"data": data}


def _notification_payload(options: NotificationOptions) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        "name": options.name,
        "destination-type": options.destination_type,
        "enabled": options.enabled,
        "triggers": options.triggers,
    }
    if options.url:
        attributes["url"] = options.url
    if options.token:
        attributes["token"] = options.token
    if options.destination_type == "email":
        attributes["email-addresses"] = options.email_addresses
    data: dict[str, Any] = {"type": "notification-configurations", "attributes": attributes}
    if options.email_user_ids:
        data["relationships"] = {
            "users": {"data": [{"type": "users", "id": uid} for uid in options.email_user_ids]}
        }
    return {"data": data}


def _workspace_run_task_payload(
    enforcement_level: str, stage: str, task_id: str | None = None
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": "workspace-tasks",
        "attributes": {"enforcement-level": enforcement_level, "stage": stage},
    }
    if task_id:
        data["relationships"] = {"task": {"data": {"type": "tasks", "id": task_id}}}
    return {"data": data}


class TFCClient:
    """Async JSON:API client for one API token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        verify: bool = True,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + API_PREFIX,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": JSONAPI_CONTENT_TYPE,
                "Accept": JSONAPI_CONTENT_TYPE,
            },
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: Literal["get", "post", "patch", "delete"],
        path: str,
        *,
        on_conflict: Literal["raise", "not_safe"] = "raise",
        **kwargs: Any,
    ) -> httpx.Response:
        """Make HTTP request with common error handling.

        Args:
            method: HTTP method.
            path: URL path below /api/v2.
            on_conflict: How to handle 409/422 responses:
                - "raise": RemoteError (default)
                - "not_safe": NotSafeToDelete
            **kwargs: Additional arguments for httpx request.
        """
        try:
            resp = await self._client.request(method.upper(), path, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteError(f"{method.upper()} {path} failed: {e}") from e

        if resp.status_code == 404:
            raise ResourceNotFound(f"{method.upper()} {path}: not found", status_code=404)
        if resp.status_code in (409, 422) and on_conflict == "not_safe":
            raise NotSafeToDelete(
                f"{method.upper()} {path}: {self._error_detail(resp)}", status_code=resp.status_code
            )
        if resp.is_error:
            raise RemoteError(
                f"{method.upper()} {path} returned {resp.status_code}: {self._error_detail(resp)}",
                status_code=resp.status_code,
            )
        return resp

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            errors = resp.json().get("errors") or []
        except ValueError:
            return resp.text[:200]
        details = [e.get("detail") or e.get("title") or "" for e in errors if isinstance(e, dict)]
        return "; ".join(d for d in details if d) or resp.reason_phrase

    @staticmethod
    def _page_params(page: int) -> dict[str, Any]:
        return {"page[number]": page, "page[size]": MAX_PAGE_SIZE}

    # =========================================================================
    # Platform
    # =========================================================================

    async def platform_info(self) -> PlatformInfo:
        resp = await self._request("get", "/ping")
        app_name = resp.headers.get(APP_NAME_HEADER, "")
        return PlatformInfo(
            is_cloud=app_name in CLOUD_APP_NAMES,
            version=resp.headers.get(TFE_VERSION_HEADER, ""),
        )

    # =========================================================================
    # Agent pools
    # =========================================================================

    async def create_agent_pool(self, organization: str, name: str) -> RemoteAgentPool:
        body = {
            "data": {
                "type": "agent-pools",
                "attributes": {"name": name, "organization-scoped": True},
            }
        }
        resp = await self._request("post", f"/organizations/{organization}/agent-pools", json=body)
        return _parse_agent_pool(resp.json()["data"])

    async def read_agent_pool(self, pool_id: str) -> RemoteAgentPool:
        resp = await self._request("get", f"/agent-pools/{pool_id}")
        return _parse_agent_pool(resp.json()["data"])

    async def update_agent_pool(self, pool_id: str, name: str) -> RemoteAgentPool:
        body = {"data": {"type": "agent-pools", "id": pool_id, "attributes": {"name": name}}}
        resp = await self._request("patch", f"/agent-pools/{pool_id}", json=body)
        return _parse_agent_pool(resp.json()["data"])

    async def delete_agent_pool(self, pool_id: str) -> None:
        await self._request("delete", f"/agent-pools/{pool_id}", on_conflict="not_safe")

    async def list_agent_pools(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteAgentPool]:
        resp = await self._request(
            "get", f"/organizations/{organization}/agent-pools", params=self._page_params(page)
        )
        body = resp.json()
        return Page(
            items=[_parse_agent_pool(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    # =========================================================================
    # Agent tokens
    # =========================================================================

    async def list_agent_tokens(
        self, pool_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteAgentToken]:
        resp = await self._request(
            "get", f"/agent-pools/{pool_id}/authentication-tokens", params=self._page_params(page)
        )
        body = resp.json()
        return Page(
            items=[_parse_agent_token(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def create_agent_token(self, pool_id: str, description: str) -> RemoteAgentToken:
        body = {
            "data": {"type": "authentication-tokens", "attributes": {"description": description}}
        }
        resp = await self._request(
            "post", f"/agent-pools/{pool_id}/authentication-tokens", json=body
        )
        return _parse_agent_token(resp.json()["data"])

    async def delete_agent_token(self, token_id: str) -> None:
        await self._request("delete", f"/authentication-tokens/{token_id}")

    # =========================================================================
    # Workspaces
    # =========================================================================

    async def create_workspace(
        self, organization: str, options: WorkspaceOptions
    ) -> RemoteWorkspace:
        resp = await self._request(
            "post", f"/organizations/{organization}/workspaces", json=_workspace_payload(options)
        )
        body = resp.json()
        return _parse_workspace(body["data"], body.get("included") or [])

    async def read_workspace(self, workspace_id: str) -> RemoteWorkspace:
        resp = await self._request(
            "get", f"/workspaces/{workspace_id}", params={"include": "current_run"}
        )
        body = resp.json()
        return _parse_workspace(body["data"], body.get("included") or [])

    async def read_workspace_by_name(self, organization: str, name: str) -> RemoteWorkspace:
        resp = await self._request(
            "get",
            f"/organizations/{organization}/workspaces/{name}",
            params={"include": "current_run"},
        )
        body = resp.json()
        return _parse_workspace(body["data"], body.get("included") or [])

    async def update_workspace(
        self, workspace_id: str, options: WorkspaceOptions
    ) -> RemoteWorkspace:
        resp = await self._request(
            "patch", f"/workspaces/{workspace_id}", json=_workspace_payload(options)
        )
        body = resp.json()
        return _parse_workspace(body["data"], body.get("included") or [])

    async def delete_workspace(self, workspace_id: str) -> None:
        await self._request("delete", f"/workspaces/{workspace_id}")

    async def safe_delete_workspace(self, workspace_id: str) -> None:
        await self._request(
            "post", f"/workspaces/{workspace_id}/actions/safe-delete", on_conflict="not_safe"
        )

    async def list_workspaces(
        self,
        organization: str,
        *,
        current_run_status: str | None = None,
        project_id: str | None = None,
        page: int = INIT_PAGE_NUMBER,
    ) -> Page[RemoteWorkspace]:
        params = self._page_params(page)
        params["include"] = "current_run"
        if current_run_status:
            params["filter[current-run][status]"] = current_run_status
        if project_id:
            params["filter[project][id]"] = project_id
        resp = await self._request(
            "get", f"/organizations/{organization}/workspaces", params=params
        )
        body = resp.json()
        included = body.get("included") or []
        return Page(
            items=[_parse_workspace(d, included) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def list_outputs(self, workspace_id: str) -> list[RemoteOutput]:
        resp = await self._request(
            "get", f"/workspaces/{workspace_id}/current-state-version-outputs"
        )
        outputs = []
        for data in resp.json().get("data") or []:
            attrs = data.get("attributes") or {}
            value = attrs.get("value")
            if attrs.get("sensitive"):
                # Sensitive values are redacted in the list response
                detail = await self._request("get", f"/state-version-outputs/{data['id']}")
                value = (detail.json()["data"].get("attributes") or {}).get("value")
            outputs.append(
                RemoteOutput(
                    name=attrs.get("name", ""),
                    value=value,
                    sensitive=bool(attrs.get("sensitive", False)),
                )
            )
        return outputs

    # =========================================================================
    # Runs
    # =========================================================================

    async def create_run(self, workspace_id: str, options: RunOptions) -> RemoteRun:
        attributes: dict[str, Any] = {
            "is-destroy": options.is_destroy,
            "plan-only": options.plan_only,
            "refresh-only": options.refresh_only,
            "message": options.message,
        }
        if options.auto_apply is not None:
            attributes["auto-apply"] = options.auto_apply
        if options.terraform_version:
            attributes["terraform-version"] = options.terraform_version
        relationships: dict[str, Any] = {
            "workspace": {"data": {"type": "workspaces", "id": workspace_id}}
        }
        if options.configuration_version_id:
            relationships["configuration-version"] = {
                "data": {"type": "configuration-versions", "id": options.configuration_version_id}
            }
        body = {"data": {"type": "runs", "attributes": attributes, "relationships": relationships}}
        resp = await self._request("post", "/runs", json=body)
        return _parse_run(resp.json()["data"])

    async def read_run(self, run_id: str) -> RemoteRun:
        resp = await self._request("get", f"/runs/{run_id}")
        return _parse_run(resp.json()["data"])

    async def list_organization_runs(
        self,
        organization: str,
        *,
        agent_pool_names: list[str] | None = None,
        status_group: str = "non_final",
        page: int = INIT_PAGE_NUMBER,
    ) -> Page[RemoteRun]:
        params = self._page_params(page)
        params["filter[status_group]"] = status_group
        if agent_pool_names:
            params["filter[agent_pool_names]"] = ",".join(agent_pool_names)
        resp = await self._request("get", f"/organizations/{organization}/runs", params=params)
        body = resp.json()
        return Page(
            items=[_parse_run(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    # =========================================================================
    # Configuration versions
    # =========================================================================

    async def create_configuration_version(
        self, workspace_id: str, *, speculative: bool = False
    ) -> RemoteConfigurationVersion:
        body = {
            "data": {
                "type": "configuration-versions",
                "attributes": {"auto-queue-runs": False, "speculative": speculative},
            }
        }
        resp = await self._request(
            "post", f"/workspaces/{workspace_id}/configuration-versions", json=body
        )
        return _parse_configuration_version(resp.json()["data"])

    async def upload_configuration(
        self, configuration_version: RemoteConfigurationVersion, archive: bytes
    ) -> None:
        if not configuration_version.upload_url:
            raise RemoteError(f"Configuration version {configuration_version.id} has no upload URL")
        try:
            resp = await self._client.put(
                configuration_version.upload_url,
                content=archive,
                headers={"Content-Type": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            raise RemoteError(f"Configuration upload failed: {e}") from e
        if resp.is_error:
            raise RemoteError(
                f"Configuration upload returned {resp.status_code}", status_code=resp.status_code
            )

    async def read_configuration_version(self, cv_id: str) -> RemoteConfigurationVersion:
        resp = await self._request("get", f"/configuration-versions/{cv_id}")
        return _parse_configuration_version(resp.json()["data"])

    # =========================================================================
    # Projects
    # =========================================================================

    async def create_project(self, organization: str, name: str) -> RemoteProject:
        body = {"data": {"type": "projects", "attributes": {"name": name}}}
        resp = await self._request("post", f"/organizations/{organization}/projects", json=body)
        return _parse_project(resp.json()["data"])

    async def read_project(self, project_id: str) -> RemoteProject:
        resp = await self._request("get", f"/projects/{project_id}")
        return _parse_project(resp.json()["data"])

    async def update_project(self, project_id: str, name: str) -> RemoteProject:
        body = {"data": {"type": "projects", "id": project_id, "attributes": {"name": name}}}
        resp = await self._request("patch", f"/projects/{project_id}", json=body)
        return _parse_project(resp.json()["data"])

    async def delete_project(self, project_id: str) -> None:
        await self._request("delete", f"/projects/{project_id}", on_conflict="not_safe")

    async def list_projects(
        self, organization: str, *, name: str | None = None, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteProject]:
        params = self._page_params(page)
        if name:
            params["filter[names]"] = name
        resp = await self._request("get", f"/organizations/{organization}/projects", params=params)
        body = resp.json()
        return Page(
            items=[_parse_project(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    # =========================================================================
    # Teams and team access
    # =========================================================================

    async def list_teams(
        self, organization: str, *, names: list[str] | None = None, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteTeam]:
        params = self._page_params(page)
        if names:
            params["filter[names]"] = ",".join(names)
        resp = await self._request("get", f"/organizations/{organization}/teams", params=params)
        body = resp.json()
        return Page(
            items=[_parse_team(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def list_workspace_team_access(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteTeamAccess]:
        params = self._page_params(page)
        params["filter[workspace][id]"] = workspace_id
        resp = await self._request("get", "/team-workspaces", params=params)
        body = resp.json()
        return Page(
            items=[
                _parse_team_access(d, WORKSPACE_PERMISSION_KEYS) for d in body.get("data") or []
            ],
            next_page=_next_page(body),
        )

    async def add_workspace_team_access(
        self, workspace_id: str, team_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess:
        body = _team_access_payload("team-workspaces", access, permissions)
        body["data"]["relationships"] = {
            "workspace": {"data": {"type": "workspaces", "id": workspace_id}},
            "team": {"data": {"type": "teams", "id": team_id}},
        }
        resp = await self._request("post", "/team-workspaces", json=body)
        return _parse_team_access(resp.json()["data"], WORKSPACE_PERMISSION_KEYS)

    async def update_workspace_team_access(
        self, access_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess:
        body = _team_access_payload("team-workspaces", access, permissions)
        resp = await self._request("patch", f"/team-workspaces/{access_id}", json=body)
        return _parse_team_access(resp.json()["data"], WORKSPACE_PERMISSION_KEYS)

    async def remove_workspace_team_access(self, access_id: str) -> None:
        await self._request("delete", f"/team-workspaces/{access_id}")

    async def list_project_team_access(
        self, project_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteTeamAccess]:
        params = self._page_params(page)
        params["filter[project][id]"] = project_id
        resp = await self._request("get", "/team-projects", params=params)
        body = resp.json()
        return Page(
            items=[_parse_team_access(d, PROJECT_PERMISSION_KEYS) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def add_project_team_access(
        self, project_id: str, team_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess:
        body = _team_access_payload("team-projects", access, permissions)
        body["data"]["relationships"] = {
            "project": {"data": {"type": "projects", "id": project_id}},
            "team": {"data": {"type": "teams", "id": team_id}},
        }
        resp = await self._request("post", "/team-projects", json=body)
        return _parse_team_access(resp.json()["data"], PROJECT_PERMISSION_KEYS)

    async def update_project_team_access(
        self, access_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess:
        body = _team_access_payload("team-projects", access, permissions)
        resp = await self._request("patch", f"/team-projects/{access_id}", json=body)
        return _parse_team_access(resp.json()["data"], PROJECT_PERMISSION_KEYS)

    async def remove_project_team_access(self, access_id: str) -> None:
        await self._request("delete", f"/team-projects/{access_id}")

    # =========================================================================
    # Variables and variable sets
    # =========================================================================

    async def list_variables(self, workspace_id: str) -> list[RemoteVariable]:
        resp = await self._request("get", f"/workspaces/{workspace_id}/vars")
        return [_parse_variable(d) for d in resp.json().get("data") or []]

    async def create_variable(self, workspace_id: str, options: VariableOptions) -> RemoteVariable:
        resp = await self._request(
            "post", f"/workspaces/{workspace_id}/vars", json=_variable_payload(options)
        )
        return _parse_variable(resp.json()["data"])

    async def update_variable(
        self, workspace_id: str, variable_id: str, options: VariableOptions
    ) -> RemoteVariable:
        resp = await self._request(
            "patch",
            f"/workspaces/{workspace_id}/vars/{variable_id}",
            json=_variable_payload(options, variable_id),
        )
        return _parse_variable(resp.json()["data"])

    async def delete_variable(self, workspace_id: str, variable_id: str) -> None:
        await self._request("delete", f"/workspaces/{workspace_id}/vars/{variable_id}")

    async def list_variable_sets(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteVariableSet]:
        resp = await self._request(
            "get", f"/organizations/{organization}/varsets", params=self._page_params(page)
        )
        body = resp.json()
        return Page(
            items=[_parse_variable_set(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def apply_variable_set(self, variable_set_id: str, workspace_id: str) -> None:
        body = {"data": [{"type": "workspaces", "id": workspace_id}]}
        await self._request(
            "post", f"/varsets/{variable_set_id}/relationships/workspaces", json=body
        )

    async def remove_variable_set(self, variable_set_id: str, workspace_id: str) -> None:
        body = {"data": [{"type": "workspaces", "id": workspace_id}]}
        await self._request(
            "delete", f"/varsets/{variable_set_id}/relationships/workspaces", json=body
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    async def list_notifications(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteNotification]:
        resp = await self._request(
            "get",
            f"/workspaces/{workspace_id}/notification-configurations",
            params=self._page_params(page),
        )
        body = resp.json()
        return Page(
            items=[_parse_notification(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def create_notification(
        self, workspace_id: str, options: NotificationOptions
    ) -> RemoteNotification:
        resp = await self._request(
            "post",
            f"/workspaces/{workspace_id}/notification-configurations",
            json=_notification_payload(options),
        )
        return _parse_notification(resp.json()["data"])

    async def update_notification(
        self, notification_id: str, options: NotificationOptions
    ) -> RemoteNotification:
        body = _notification_payload(options)
        body["data"]["id"] = notification_id
        resp = await self._request(
            "patch", f"/notification-configurations/{notification_id}", json=body
        )
        return _parse_notification(resp.json()["data"])

    async def delete_notification(self, notification_id: str) -> None:
        await self._request("delete", f"/notification-configurations/{notification_id}")

    async def list_memberships(
        self, organization: str, *, emails: list[str], page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteMembership]:
        params = self._page_params(page)
        params["filter[email]"] = ",".join(emails)
        resp = await self._request(
            "get", f"/organizations/{organization}/organization-memberships", params=params
        )
        body = resp.json()
        return Page(
            items=[_parse_membership(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    # =========================================================================
    # Run triggers
    # =========================================================================

    async def list_run_triggers(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteRunTrigger]:
        params = self._page_params(page)
        params["filter[run-trigger][type]"] = "inbound"
        resp = await self._request("get", f"/workspaces/{workspace_id}/run-triggers", params=params)
        body = resp.json()
        return Page(
            items=[_parse_run_trigger(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def create_run_trigger(self, workspace_id: str, sourceable_id: str) -> RemoteRunTrigger:
        body = {
            "data": {
                "relationships": {
                    "sourceable": {"data": {"type": "workspaces", "id": sourceable_id}}
                }
            }
        }
        resp = await self._request("post", f"/workspaces/{workspace_id}/run-triggers", json=body)
        return _parse_run_trigger(resp.json()["data"])

    async def delete_run_trigger(self, run_trigger_id: str) -> None:
        await self._request("delete", f"/run-triggers/{run_trigger_id}")

    # =========================================================================
    # Remote state consumers
    # =========================================================================

    async def list_remote_state_consumers(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteWorkspace]:
        resp = await self._request(
            "get",
            f"/workspaces/{workspace_id}/relationships/remote-state-consumers",
            params=self._page_params(page),
        )
        body = resp.json()
        return Page(
            items=[_parse_workspace(d, []) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def replace_remote_state_consumers(
        self, workspace_id: str, consumer_ids: list[str]
    ) -> None:
        body = {"data": [{"type": "workspaces", "id": ws_id} for ws_id in consumer_ids]}
        await self._request(
            "patch", f"/workspaces/{workspace_id}/relationships/remote-state-consumers", json=body
        )

    # =========================================================================
    # SSH keys
    # =========================================================================

    async def list_ssh_keys(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteSSHKey]:
        resp = await self._request(
            "get", f"/organizations/{organization}/ssh-keys", params=self._page_params(page)
        )
        body = resp.json()
        return Page(
            items=[
                RemoteSSHKey(id=d["id"], name=(d.get("attributes") or {}).get("name", ""))
                for d in body.get("data") or []
            ],
            next_page=_next_page(body),
        )

    async def assign_ssh_key(self, workspace_id: str, ssh_key_id: str) -> RemoteWorkspace:
        body = {"data": {"type": "workspaces", "attributes": {"id": ssh_key_id}}}
        resp = await self._request(
            "patch", f"/workspaces/{workspace_id}/relationships/ssh-key", json=body
        )
        body = resp.json()
        return _parse_workspace(body["data"], body.get("included") or [])

    async def unassign_ssh_key(self, workspace_id: str) -> RemoteWorkspace:
        body = {"data": {"type": "workspaces", "attributes": {"id": None}}}
        resp = await self._request(
            "patch", f"/workspaces/{workspace_id}/relationships/ssh-key", json=body
        )
        body = resp.json()
        return _parse_workspace(body["data"], body.get("included") or [])

    # =========================================================================
    # Run tasks
    # =========================================================================

    async def list_run_tasks(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteRunTask]:
        resp = await self._request(
            "get", f"/organizations/{organization}/tasks", params=self._page_params(page)
        )
        body = resp.json()
        return Page(
            items=[
                RemoteRunTask(id=d["id"], name=(d.get("attributes") or {}).get("name", ""))
                for d in body.get("data") or []
            ],
            next_page=_next_page(body),
        )

    async def list_workspace_run_tasks(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteWorkspaceRunTask]:
        resp = await self._request(
            "get", f"/workspaces/{workspace_id}/tasks", params=self._page_params(page)
        )
        body = resp.json()
        return Page(
            items=[_parse_workspace_run_task(d) for d in body.get("data") or []],
            next_page=_next_page(body),
        )

    async def create_workspace_run_task(
        self, workspace_id: str, task_id: str, enforcement_level: str, stage: str
    ) -> RemoteWorkspaceRunTask:
        resp = await self._request(
            "post",
            f"/workspaces/{workspace_id}/tasks",
            json=_workspace_run_task_payload(enforcement_level, stage, task_id),
        )
        return _parse_workspace_run_task(resp.json()["data"])

    async def update_workspace_run_task(
        self, workspace_id: str, attachment_id: str, enforcement_level: str, stage: str
    ) -> RemoteWorkspaceRunTask:
        resp = await self._request(
            "patch",
            f"/workspaces/{workspace_id}/tasks/{attachment_id}",
            json=_workspace_run_task_payload(enforcement_level, stage),
        )
        return _parse_workspace_run_task(resp.json()["data"])

    async def delete_workspace_run_task(self, workspace_id: str, attachment_id: str) -> None:
        await self._request("delete", f"/workspaces/{workspace_id}/tasks/{attachment_id}")
