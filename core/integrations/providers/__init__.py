"""Built-in providers."""
from core.integrations.providers.base import Provider
from core.integrations.providers.google_drive import GoogleDriveProvider
from core.integrations.providers.jira import JiraProvider
from core.integrations.providers.salesforce import SalesforceProvider
from core.integrations.providers.slack import SlackProvider
from core.integrations.providers.stripe import StripeProvider
from core.integrations.providers.webhook_sink import WebhookSinkProvider

BUILTIN_PROVIDERS: tuple[type[Provider], ...] = (
    SlackProvider,
    SalesforceProvider,
    JiraProvider,
    GoogleDriveProvider,
    StripeProvider,
    WebhookSinkProvider,
)

__all__ = [
    "BUILTIN_PROVIDERS",
    "GoogleDriveProvider",
    "JiraProvider",
    "Provider",
    "SalesforceProvider",
    "SlackProvider",
    "StripeProvider",
    "WebhookSinkProvider",
]
