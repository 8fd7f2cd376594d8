"""Jira Cloud: projects, issues and users through the Atlassian 3LO gateway."""
from __future__ import annotations
from typing import Any

from core.integrations.errors import ValidationError
from core.integrations.providers.base import Credentials, Provider, counted, rate_limit_from_headers
from core.integrations.schemas import JiraConfig
from core.integrations.types import ConnectionTestResult, ResourceCounts

GATEWAY = "https://api.atlassian.com"


class JiraProvider(Provider):
    key = "jira"
    name = "Jira"
    type = "project_management"
    category = "development"
    description = "Sync projects, issues and users and manage issues from workflows"
    website_url = "https://www.atlassian.com/software/jira"
    documentation_url = "https://developer.atlassian.com/cloud/jira/platform/rest/v3/"

    supported_features = ("projects", "issues", "users", "comments", "attachments", "workflows", "sprints", "webhooks")
    default_features = ("projects", "issues", "users", "comments")
    config_model = JiraConfig

    authorize_url = "https://auth.atlassian.com/authorize"
    token_url = "https://auth.atlassian.com/oauth/token"
    token_request_json = True
    default_scopes = ("read:jira-work", "write:jira-work", "read:jira-user", "offline_access")
    available_scopes = (
        "read:jira-work", "write:jira-work", "read:jira-user",
        "manage:jira-project", "manage:jira-configuration",
        "read:audit-log:jira", "read:avatar:jira", "read:group:jira",
        "read:project-role:jira", "read:user:jira",
        "write:comment:jira", "write:issue:jira", "offline_access",
    )
    write_scopes = ("write:jira-work", "write:issue:jira", "write:comment:jira")

    signature_header = "X-Hub-Signature"
    webhook_events = (
        "jira:issue_created", "jira:issue_updated", "jira:issue_deleted",
        "comment_created", "comment_updated", "comment_deleted",
        "project_created", "project_updated", "project_deleted",
        "sprint_started", "sprint_closed",
    )

    sync_interval_minutes = 20

    def _api(self, credentials: Credentials, cfg: JiraConfig, path: str) -> str:
        cloud_id = credentials.get("cloud_id") or cfg.cloud_id
        if not cloud_id:
            raise ValidationError("Cloud ID is required for Jira connection")
        return f"{GATEWAY}/ex/jira/{cloud_id}/rest/api/3/{path.lstrip('/')}"

    async def _test(self, credentials, cfg):
        if not (credentials.get("cloud_id") or cfg.cloud_id):
            return ConnectionTestResult(
                success=False,
                message="Cloud ID is required for Jira connection",
                details={"error": "Missing cloud_id"},
                error_kind="validation",
            )
        resp = await self.send("GET", self._api(credentials, cfg, "serverInfo"), credentials)
        server = resp.json()
        user = await self.request("GET", self._api(credentials, cfg, "myself"), credentials) or {}
        return ConnectionTestResult(
            success=True,
            message=f"Connected to {server.get('serverTitle') or 'Jira'} as {user.get('displayName')}",
            details={
                "server_info": server,
                "user_info": user,
                "cloud_id": credentials.get("cloud_id") or cfg.cloud_id,
                "base_url": server.get("baseUrl"),
            },
            capabilities=list(self.supported_features),
            rate_limit=rate_limit_from_headers(resp.headers),
        )

    # --- OAuth ---

    def _extra_authorization_params(self, cfg):
        return {"audience": "api.atlassian.com", "prompt": "consent"}

    async def _token_extras(self, tokens, cfg):
        # The token does not say which site it is for; take the first accessible one
        resources = await self.request(
            "GET",
            f"{GATEWAY}/oauth/token/accessible-resources",
            {"access_token": tokens["access_token"]},
            headers={"Accept": "application/json"},
        )
        primary = resources[0] if isinstance(resources, list) and resources else {}
        return {
            "cloud_id": primary.get("id"),
            "site_url": primary.get("url"),
            "site_name": primary.get("name"),
        }

    async def refresh_tokens(self, refresh_token, config):
        # Atlassian rotates refresh tokens; the site lookup runs again on the new token
        return await self._refresh_via_token_endpoint(refresh_token, config)

    # --- Sync ---

    def resource_syncers(self):
        return {
            "projects": self._sync_projects,
            "issues": self._sync_issues,
            "users": self._sync_users,
        }

    @staticmethod
    def _page_size(options: dict[str, Any]) -> int:
        return int(options.get("limit") or 100)

    async def _sync_projects(self, credentials, cfg, since, options) -> ResourceCounts:
        data = await self.request(
            "GET", self._api(credentials, cfg, "project/search"), credentials,
            params={"maxResults": self._page_size(options)},
        )
        return counted((data or {}).get("values"), since)

    def build_issue_jql(self, cfg: JiraConfig, since=None) -> str:
        clauses = []
        if cfg.jql:
            clauses.append(f"({cfg.jql})")
        if cfg.project_keys:
            clauses.append(f"project IN ({','.join(cfg.project_keys)})")
        if since is not None:
            clauses.append(f'updated >= "{since.strftime("%Y-%m-%d %H:%M")}"')
        where = " AND ".join(clauses)
        return f"{where} ORDER BY updated DESC" if where else "ORDER BY updated DESC"

    async def _sync_issues(self, credentials, cfg, since, options) -> ResourceCounts:
        data = await self.request(
            "GET", self._api(credentials, cfg, "search"), credentials,
            params={"jql": self.build_issue_jql(cfg, since), "maxResults": self._page_size(options)},
        )
        return counted((data or {}).get("issues"), since)

    async def _sync_users(self, credentials, cfg, since, options) -> ResourceCounts:
        data = await self.request(
            "GET", self._api(credentials, cfg, "users/search"), credentials,
            params={"maxResults": self._page_size(options)},
        )
        return counted(data if isinstance(data, list) else [], since)

    # --- Actions ---

    def actions(self):
        return {
            "create_issue": self._create_issue,
            "update_issue": self._update_issue,
            "transition_issue": self._transition_issue,
            "add_comment": self._add_comment,
            "search_issues": self._search_issues,
            "get_issue": self._get_issue,
        }

    async def _create_issue(self, credentials, cfg, params):
        return await self.request(
            "POST", self._api(credentials, cfg, "issue"), credentials,
            json={"fields": params.get("fields") or {}},
        )

    async def _update_issue(self, credentials, cfg, params):
        data = await self.request(
            "PUT", self._api(credentials, cfg, f"issue/{params['issue']}"), credentials,
            json={"fields": params.get("fields") or {}},
        )
        return data if data is not None else {"success": True}

    async def _transition_issue(self, credentials, cfg, params):
        data = await self.request(
            "POST", self._api(credentials, cfg, f"issue/{params['issue']}/transitions"), credentials,
            json={"transition": {"id": params["transition_id"]}, "fields": params.get("fields") or {}},
        )
        return data if data is not None else {"success": True}

    async def _add_comment(self, credentials, cfg, params):
        body = params["body"]
        if isinstance(body, str):
            # Jira v3 takes Atlassian Document Format
            body = {
                "type": "doc",
                "version": 1,
                "content": [{"type": "paragraph", "content": [{"type": "text", "text": body}]}],
            }
        return await self.request(
            "POST", self._api(credentials, cfg, f"issue/{params['issue']}/comment"), credentials,
            json={"body": body},
        )

    async def _search_issues(self, credentials, cfg, params):
        return await self.request(
            "GET", self._api(credentials, cfg, "search"), credentials,
            params={
                "jql": params["jql"],
                "maxResults": params.get("max_results", 50),
                "startAt": params.get("start_at", 0),
            },
        )

    async def _get_issue(self, credentials, cfg, params):
        query = {}
        if params.get("fields"):
            query["fields"] = ",".join(params["fields"])
        if params.get("expand"):
            query["expand"] = params["expand"]
        return await self.request(
            "GET", self._api(credentials, cfg, f"issue/{params['issue']}"), credentials,
            params=query or None,
        )

    # --- Webhooks ---

    def event_name(self, payload, headers=None):
        return payload.get("webhookEvent") or payload.get("type")

    def _normalize_event(self, event, payload):
        if event and event.startswith("jira:issue_"):
            return {
                "type": event,
                "issue": payload.get("issue"),
                "user": payload.get("user"),
                "changelog": payload.get("changelog"),
                "timestamp": payload.get("timestamp"),
            }
        if event and event.startswith("comment_"):
            return {
                "type": event,
                "comment": payload.get("comment"),
                "issue": payload.get("issue"),
                "user": payload.get("user"),
                "timestamp": payload.get("timestamp"),
            }
        return {"type": event, "payload": dict(payload)}
