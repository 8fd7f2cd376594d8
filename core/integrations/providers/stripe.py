"""Stripe: payments data via the v1 API, Stripe Connect OAuth."""
from __future__ import annotations
from typing import Any

from core.integrations.providers.base import Provider, counted
from core.integrations.schemas import StripeConfig
from core.integrations.signatures import SignatureScheme
from core.integrations.types import ConnectionTestResult, ResourceCounts

API = "https://api.stripe.com/v1"
CONNECT = "https://connect.stripe.com/oauth"

# Sync feature -> list endpoint
RESOURCES = {
    "customers": "customers",
    "payments": "payment_intents",
    "subscriptions": "subscriptions",
    "products": "products",
}


def form_encode(params: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts/lists into Stripe's ``a[b][0]=c`` form keys."""
    flat: dict[str, Any] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(form_encode(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    flat.update(form_encode(item, f"{name}[{i}]"))
                else:
                    flat[f"{name}[{i}]"] = item
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = value
    return flat


class StripeProvider(Provider):
    key = "stripe"
    name = "Stripe"
    type = "payment"
    category = "finance"
    description = "Sync customers, payments and subscriptions and manage billing"
    website_url = "https://stripe.com"
    documentation_url = "https://stripe.com/docs/api"

    supported_features = (
        "customers", "payments", "subscriptions", "products",
        "invoices", "payment_methods", "disputes", "refunds", "webhooks",
    )
    default_features = ("customers", "payments", "subscriptions", "products")
    config_model = StripeConfig

    authorize_url = f"{CONNECT}/authorize"
    token_url = f"{CONNECT}/token"
    revoke_url = f"{CONNECT}/deauthorize"
    default_scopes = ("read_write",)
    available_scopes = ("read_only", "read_write")
    write_scopes = ("read_write",)

    signature_scheme = SignatureScheme.STRIPE
    signature_header = "Stripe-Signature"
    webhook_events = (
        "customer.created", "customer.updated", "customer.deleted",
        "payment_intent.succeeded", "payment_intent.payment_failed",
        "invoice.payment_succeeded", "invoice.payment_failed",
        "customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted",
        "charge.dispute.created",
        "product.created", "product.updated",
        "price.created", "price.updated",
    )

    sync_interval_minutes = 60

    def _headers(self, cfg: StripeConfig) -> dict[str, str] | None:
        return {"Stripe-Version": cfg.api_version} if cfg.api_version else None

    async def _test(self, credentials, cfg):
        account = await self.request("GET", f"{API}/account", credentials, headers=self._headers(cfg)) or {}
        balance = await self.request("GET", f"{API}/balance", credentials, headers=self._headers(cfg))
        return ConnectionTestResult(
            success=True,
            message=f"Connected to Stripe account: {account.get('display_name') or account.get('email')}",
            details={
                "account": {
                    "id": account.get("id"),
                    "display_name": account.get("display_name"),
                    "email": account.get("email"),
                    "country": account.get("country"),
                    "currency": account.get("default_currency"),
                    "type": account.get("type"),
                },
                "balance": balance,
                "capabilities": account.get("capabilities"),
            },
            capabilities=list(self.supported_features),
        )

    # --- OAuth ---

    def authorization_url(self, config, state):
        cfg = self.parse_config(config)
        if not cfg.scopes:
            # Stripe Connect takes a single scope; derive it from the access level
            config = {**dict(config or {}), "scopes": [cfg.access]}
        return super().authorization_url(config, state)

    async def _token_request(self, cfg, payload):
        # Connect authenticates the token call with the platform secret key
        body = {k: v for k, v in payload.items() if v is not None and k != "redirect_uri"}
        data = await self.request(
            "POST", self.token_endpoint(cfg),
            {"api_key": cfg.client_secret},
            data=body,
        )
        return data or {}

    async def _token_extras(self, tokens, cfg):
        return {
            "stripe_user_id": tokens.get("stripe_user_id"),
            "stripe_publishable_key": tokens.get("stripe_publishable_key"),
            "livemode": tokens.get("livemode"),
            # Connect access tokens do not expire
            "expires_at": None,
        }

    async def revoke_tokens(self, credentials, config):
        cfg = self.parse_config(config)
        await self.request(
            "POST", self.revoke_url, {"api_key": cfg.client_secret},
            data={"client_id": cfg.client_id, "stripe_user_id": credentials.get("stripe_user_id")},
        )

    # --- Sync ---

    def resource_syncers(self):
        return {feature: self._list_syncer(endpoint) for feature, endpoint in RESOURCES.items()}

    def _list_syncer(self, endpoint: str):
        async def sync_resource(credentials, cfg, since, options) -> ResourceCounts:
            params: dict[str, Any] = {"limit": int(options.get("limit") or 100)}
            if since is not None:
                params["created[gte]"] = int(since.timestamp())
            data = await self.request("GET", f"{API}/{endpoint}", credentials, params=params, headers=self._headers(cfg))
            return counted((data or {}).get("data"), since)
        return sync_resource

    # --- Actions ---

    def actions(self):
        return {
            "create_customer": self._poster("customers"),
            "create_payment_intent": self._poster("payment_intents"),
            "create_subscription": self._poster("subscriptions"),
            "create_product": self._poster("products"),
            "create_price": self._poster("prices"),
            "refund_payment": self._poster("refunds"),
            "cancel_subscription": self._cancel_subscription,
        }

    def _poster(self, endpoint: str):
        async def post(credentials, cfg, params):
            return await self.request(
                "POST", f"{API}/{endpoint}", credentials,
                data=form_encode(params), headers=self._headers(cfg),
            )
        return post

    async def _cancel_subscription(self, credentials, cfg, params):
        params = dict(params)
        subscription_id = params.pop("subscription_id")
        return await self.request(
            "DELETE", f"{API}/subscriptions/{subscription_id}", credentials,
            params=form_encode(params) or None, headers=self._headers(cfg),
        )

    # --- Webhooks ---

    def _normalize_event(self, event, payload):
        obj = (payload.get("data") or {}).get("object") or {}
        created = payload.get("created")
        if event and event.startswith("customer.subscription."):
            return {
                "type": event,
                "subscription": obj,
                "customer": obj.get("customer"),
                "status": obj.get("status"),
                "timestamp": created,
            }
        if event and event.startswith("customer."):
            return {"type": event, "customer": obj, "timestamp": created}
        if event and event.startswith("payment_intent."):
            return {
                "type": event,
                "payment_intent": obj,
                "amount": obj.get("amount"),
                "currency": obj.get("currency"),
                "customer": obj.get("customer"),
                "timestamp": created,
            }
        return {"type": event, "object": obj, "payload": dict(payload)}
