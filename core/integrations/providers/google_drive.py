"""Google Drive: files and folders through the Drive v3 API."""
from __future__ import annotations
import json

import httpx

from core.integrations.providers.base import Provider, counted
from core.integrations.schemas import GoogleDriveConfig
from core.integrations.types import ConnectionTestResult, ResourceCounts

DRIVE = "https://www.googleapis.com/drive/v3"
UPLOAD = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "files(id,name,mimeType,size,createdTime,modifiedTime,owners,parents)"


class GoogleDriveProvider(Provider):
    key = "google_drive"
    name = "Google Drive"
    type = "storage"
    category = "productivity"
    description = "Sync files and folders and manage documents in Google Drive"
    website_url = "https://drive.google.com"
    documentation_url = "https://developers.google.com/drive/api/v3/reference"

    supported_features = ("files", "folders", "sharing", "comments", "revisions", "webhooks")
    default_features = ("files", "folders")
    config_model = GoogleDriveConfig

    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    revoke_url = "https://oauth2.googleapis.com/revoke"
    default_scopes = (
        "https://www.googleapis.com/auth/drive",
        "https://www.googleapis.com/auth/userinfo.profile",
    )
    available_scopes = (
        "https://www.googleapis.com/auth/drive",
        "https://www.googleapis.com/auth/drive.file",
        "https://www.googleapis.com/auth/drive.readonly",
        "https://www.googleapis.com/auth/drive.metadata.readonly",
        "https://www.googleapis.com/auth/userinfo.profile",
        "https://www.googleapis.com/auth/userinfo.email",
    )
    write_scopes = ("https://www.googleapis.com/auth/drive", "https://www.googleapis.com/auth/drive.file")

    signature_header = "X-Goog-Signature"
    webhook_events = (
        "file_created", "file_updated", "file_deleted",
        "folder_created", "folder_updated", "folder_deleted",
    )

    sync_interval_minutes = 10

    async def _test(self, credentials, cfg):
        about = await self.request("GET", f"{DRIVE}/about", credentials, params={"fields": "user,storageQuota"})
        user = (about or {}).get("user") or {}
        return ConnectionTestResult(
            success=True,
            message=f"Connected to Google Drive as {user.get('displayName') or user.get('emailAddress')}",
            details={"user": user, "storage_quota": (about or {}).get("storageQuota")},
            capabilities=list(self.supported_features),
        )

    # --- OAuth ---

    def _extra_authorization_params(self, cfg):
        # Without offline access + consent Google omits the refresh token
        return {"access_type": "offline", "prompt": "consent"}

    async def refresh_tokens(self, refresh_token, config):
        return await self._refresh_via_token_endpoint(refresh_token, config)

    async def revoke_tokens(self, credentials, config):
        token = credentials.get("refresh_token") or credentials.get("access_token")
        await self.request("POST", self.revoke_url, data={"token": token})

    # --- Sync ---

    def resource_syncers(self):
        return {"files": self._sync_files, "folders": self._sync_folders}

    async def _list(self, credentials, query: str, options, fields: str = FILE_FIELDS) -> list:
        data = await self.request(
            "GET", f"{DRIVE}/files", credentials,
            params={"q": query, "pageSize": int(options.get("limit") or 100), "fields": fields},
        )
        return (data or {}).get("files") or []

    @staticmethod
    def _modified_clause(since) -> str:
        return f" and modifiedTime > '{since.strftime('%Y-%m-%dT%H:%M:%S')}'" if since is not None else ""

    async def _sync_files(self, credentials, cfg, since, options) -> ResourceCounts:
        base = f"mimeType != '{FOLDER_MIME}' and trashed = false" + self._modified_clause(since)
        if not cfg.folder_ids:
            return counted(await self._list(credentials, base, options), since)
        files: list = []
        for folder_id in cfg.folder_ids:
            files.extend(await self._list(credentials, f"{base} and '{folder_id}' in parents", options))
        return counted(files, since)

    async def _sync_folders(self, credentials, cfg, since, options) -> ResourceCounts:
        query = f"mimeType = '{FOLDER_MIME}' and trashed = false" + self._modified_clause(since)
        return counted(await self._list(credentials, query, options), since)

    # --- Actions ---

    def actions(self):
        return {
            "upload_file": self._upload_file,
            "download_file": self._download_file,
            "create_folder": self._create_folder,
            "delete_file": self._delete_file,
            "share_file": self._share_file,
            "search_files": self._search_files,
            "get_file_metadata": self._get_file_metadata,
        }

    async def _upload_file(self, credentials, cfg, params):
        metadata = {"name": params["name"]}
        if params.get("parent_id"):
            metadata["parents"] = [params["parent_id"]]
        mime = params.get("mime_type", "application/octet-stream")
        content = params.get("content", b"")
        if isinstance(content, str):
            content = content.encode("utf-8")
        boundary = "integration-upload-boundary"
        body = (
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n--{boundary}\r\nContent-Type: {mime}\r\n\r\n"
        ).encode("utf-8") + content + f"\r\n--{boundary}--".encode("utf-8")
        return await self.request(
            "POST", f"{UPLOAD}/files", credentials,
            params={"uploadType": "multipart"},
            content=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )

    async def _download_file(self, credentials, cfg, params):
        resp: httpx.Response = await self.send(
            "GET", f"{DRIVE}/files/{params['file_id']}", credentials, params={"alt": "media"},
        )
        return {"success": True, "data": resp.content, "content_type": resp.headers.get("content-type")}

    async def _create_folder(self, credentials, cfg, params):
        body = {"name": params["name"], "mimeType": FOLDER_MIME}
        if params.get("parent_id"):
            body["parents"] = [params["parent_id"]]
        return await self.request("POST", f"{DRIVE}/files", credentials, json=body)

    async def _delete_file(self, credentials, cfg, params):
        data = await self.request("DELETE", f"{DRIVE}/files/{params['file_id']}", credentials)
        return data if data is not None else {"success": True}

    async def _share_file(self, credentials, cfg, params):
        return await self.request(
            "POST", f"{DRIVE}/files/{params['file_id']}/permissions", credentials,
            json={
                "role": params.get("role", "reader"),
                "type": params.get("type", "user"),
                "emailAddress": params["email"],
            },
        )

    async def _search_files(self, credentials, cfg, params):
        return await self.request(
            "GET", f"{DRIVE}/files", credentials,
            params={
                "q": params["query"],
                "pageSize": params.get("max_results", 50),
                "fields": "files(id,name,mimeType,size,createdTime,modifiedTime,webViewLink)",
            },
        )

    async def _get_file_metadata(self, credentials, cfg, params):
        query = {"fields": ",".join(params["fields"])} if params.get("fields") else None
        return await self.request("GET", f"{DRIVE}/files/{params['file_id']}", credentials, params=query)

    # --- Webhooks ---

    def event_name(self, payload, headers=None):
        if payload.get("type"):
            return payload["type"]
        # Drive push channels describe the change in headers only
        state = httpx.Headers(headers or {}).get("x-goog-resource-state")
        return f"file_{state}" if state in ("created", "updated", "deleted") else state

    def _normalize_event(self, event, payload):
        if event in self.webhook_events:
            return {
                "type": event,
                "file_id": payload.get("fileId") or payload.get("id"),
                "file_name": payload.get("fileName") or payload.get("name"),
                "mime_type": payload.get("mimeType"),
                "modified_time": payload.get("modifiedTime"),
            }
        return {"type": event, "payload": dict(payload)}
