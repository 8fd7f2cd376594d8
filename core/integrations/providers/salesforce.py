"""Salesforce: CRM objects over the REST API, OAuth with PKCE and sandbox hosts."""
from __future__ import annotations
from datetime import timedelta
from typing import Any

from core.integrations.errors import ValidationError
from core.integrations.providers.base import Credentials, Provider, counted
from core.integrations.schemas import SalesforceConfig
from core.integrations.signatures import SignatureScheme
from core.integrations.types import ConnectionTestResult, RateLimitInfo, ResourceCounts, utcnow

LOGIN_HOST = "https://login.salesforce.com"
SANDBOX_HOST = "https://test.salesforce.com"

# Sync feature -> sObject type
OBJECTS = {
    "accounts": "Account",
    "contacts": "Contact",
    "leads": "Lead",
    "opportunities": "Opportunity",
}


class SalesforceProvider(Provider):
    key = "salesforce"
    name = "Salesforce"
    type = "crm"
    category = "sales"
    description = "Sync CRM data including accounts, contacts, leads and opportunities"
    website_url = "https://salesforce.com"
    documentation_url = "https://developer.salesforce.com/docs/atlas.en-us.api_rest.meta/api_rest/"

    supported_features = ("accounts", "contacts", "leads", "opportunities", "custom_objects", "webhooks")
    default_features = ("accounts", "contacts", "leads", "opportunities")
    config_model = SalesforceConfig

    uses_pkce = True
    default_scopes = ("api", "refresh_token")
    available_scopes = ("api", "refresh_token", "full", "web", "chatter_api", "id", "openid", "offline_access")
    write_scopes = ("api", "full")

    signature_scheme = SignatureScheme.HMAC_BASE64
    signature_header = "X-Salesforce-Signature"
    webhook_events = ("record_created", "record_updated", "record_deleted", "record_undeleted")

    sync_interval_minutes = 30

    def _host(self, cfg: SalesforceConfig) -> str:
        return SANDBOX_HOST if cfg.sandbox else LOGIN_HOST

    def authorize_endpoint(self, cfg):
        return f"{self._host(cfg)}/services/oauth2/authorize"

    def token_endpoint(self, cfg):
        return f"{self._host(cfg)}/services/oauth2/token"

    def _data_url(self, credentials: Credentials, cfg: SalesforceConfig, path: str = "") -> str:
        instance = credentials.get("instance_url") or cfg.instance_url
        if not instance:
            raise ValidationError("Salesforce instance_url is missing from credentials and config")
        return f"{instance.rstrip('/')}/services/data/{cfg.api_version}/{path.lstrip('/')}"

    async def _query(self, credentials, cfg, soql: str) -> dict[str, Any]:
        return await self.request("GET", self._data_url(credentials, cfg, "query"), credentials, params={"q": soql})

    async def _test(self, credentials, cfg):
        resources = await self.request("GET", self._data_url(credentials, cfg), credentials)
        org_data = await self._query(credentials, cfg, "SELECT Id,Name,OrganizationType FROM Organization LIMIT 1")
        records = (org_data or {}).get("records") or []
        organization = records[0] if records else {}
        return ConnectionTestResult(
            success=True,
            message=(
                f"Connected to {organization.get('Name') or 'Salesforce'} "
                f"({organization.get('OrganizationType') or 'Unknown'})"
            ),
            details={
                "instance_url": credentials.get("instance_url") or cfg.instance_url,
                "organization": organization,
                "api_version": cfg.api_version,
                "available_resources": resources,
            },
            capabilities=list(self.supported_features),
            rate_limit=await self.rate_limit_info(credentials, cfg.model_dump()),
        )

    async def rate_limit_info(self, credentials, config=None):
        cfg = self.parse_config(config)
        data = await self.request("GET", self._data_url(credentials, cfg, "limits"), credentials)
        daily = (data or {}).get("DailyApiRequests") or {}
        if "Remaining" not in daily or "Max" not in daily:
            return None
        return RateLimitInfo(
            remaining=int(daily["Remaining"]),
            limit=int(daily["Max"]),
            reset_at=utcnow() + timedelta(hours=24),
        )

    # --- OAuth ---

    async def _token_extras(self, tokens, cfg):
        return {
            "instance_url": tokens.get("instance_url"),
            "id_url": tokens.get("id"),
            "issued_at": tokens.get("issued_at"),
            "signature": tokens.get("signature"),
        }

    async def refresh_tokens(self, refresh_token, config):
        return await self._refresh_via_token_endpoint(refresh_token, config)

    async def revoke_tokens(self, credentials, config):
        cfg = self.parse_config(config)
        token = credentials.get("refresh_token") or credentials.get("access_token")
        await self.request("POST", f"{self._host(cfg)}/services/oauth2/revoke", data={"token": token})

    # --- Sync ---

    def resource_syncers(self):
        return {feature: self._object_syncer(sobject) for feature, sobject in OBJECTS.items()}

    def _object_syncer(self, sobject: str):
        async def sync_object(credentials, cfg, since, options) -> ResourceCounts:
            soql = f"SELECT Id,Name,CreatedDate,LastModifiedDate FROM {sobject}"
            if since is not None:
                soql += f" WHERE LastModifiedDate > {since.strftime('%Y-%m-%dT%H:%M:%SZ')}"
            soql += f" ORDER BY LastModifiedDate DESC LIMIT {int(options.get('limit') or 1000)}"
            data = await self._query(credentials, cfg, soql)
            return counted((data or {}).get("records"), since)
        return sync_object

    # --- Actions ---

    def actions(self):
        return {
            "create_record": self._create_record,
            "update_record": self._update_record,
            "delete_record": self._delete_record,
            "query_records": self._query_records,
            "get_record": self._get_record,
        }

    def _sobject_url(self, credentials, cfg, params, with_id: bool = True) -> str:
        path = f"sobjects/{params['object_type']}"
        if with_id:
            path += f"/{params['record_id']}"
        return self._data_url(credentials, cfg, path)

    async def _create_record(self, credentials, cfg, params):
        return await self.request(
            "POST", self._sobject_url(credentials, cfg, params, with_id=False), credentials,
            json=params.get("fields") or {},
        )

    async def _update_record(self, credentials, cfg, params):
        data = await self.request(
            "PATCH", self._sobject_url(credentials, cfg, params), credentials,
            json=params.get("fields") or {},
        )
        return data if data is not None else {"success": True}

    async def _delete_record(self, credentials, cfg, params):
        data = await self.request("DELETE", self._sobject_url(credentials, cfg, params), credentials)
        return data if data is not None else {"success": True}

    async def _query_records(self, credentials, cfg, params):
        return await self._query(credentials, cfg, params["query"])

    async def _get_record(self, credentials, cfg, params):
        query = {"fields": ",".join(params["fields"])} if params.get("fields") else None
        return await self.request("GET", self._sobject_url(credentials, cfg, params), credentials, params=query)

    # --- Webhooks ---

    def _normalize_event(self, event, payload):
        if event in self.webhook_events:
            sobject = payload.get("sobject") or {}
            return {
                "type": event,
                "object_type": sobject.get("type"),
                "record_id": sobject.get("id"),
                "fields": sobject.get("fields"),
                "timestamp": payload.get("createdDate"),
            }
        return {"type": event, "payload": dict(payload)}
