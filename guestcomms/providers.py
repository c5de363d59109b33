"""
Contracts for the external collaborators the pipeline talks to.

Tenant credentials, templates, the PMS API, direct messaging and the AI
reply generator all live outside this package. The pipeline only depends on
the narrow Protocols below; concrete clients are wired in by the host
application (see ``guestcomms.main.build_pipeline``).
"""

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

# Thread types the PMS uses for guest conversations, most preferred first
PREFERRED_THREAD_TYPES = ("host-guest-channel", "host-guest-email", "host-guest-whatsapp")

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass
class Tenant:
    """An isolated customer account and the credentials its providers need."""

    id: str
    name: str = ""
    account_id: Optional[str] = None
    credentials: dict = field(default_factory=dict)
    features: dict = field(default_factory=dict)


@dataclass
class Template:
    message_type: str
    template_body: str
    tenant_id: Optional[str] = None


def substitute_variables(body: str, variables: Mapping[str, Any]) -> str:
    """
    Replace ``{{name}}`` placeholders with values from ``variables``.

    Unknown placeholders are left untouched; None renders as an empty string.
    """

    def _replace(match):
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        value = variables[key]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, body)


class TenantProvider(Protocol):
    def get_tenant_by_id(self, tenant_id: str) -> Tenant: ...

    def find_tenant_by_account_id(self, account_id: str) -> Optional[Tenant]: ...


class TemplateProvider(Protocol):
    def get_template_for_message(self, tenant_id: str, message_type: str) -> Optional[Template]: ...

    def substitute_variables(self, body: str, variables: Mapping[str, Any]) -> str: ...

    def ensure_default_templates(self, tenant_id: str) -> None: ...


class PmsClient(Protocol):
    """Property-management-system API (reservations, listings, threads)."""

    def get_reservation(self, tenant: Tenant, reservation_id: str) -> dict: ...

    def get_listing(self, tenant: Tenant, listing_id: str) -> Optional[dict]: ...

    def get_reservation_conversations(self, tenant: Tenant, reservation_id: str) -> list: ...

    def get_conversation_messages(self, tenant: Tenant, thread_id: str) -> list: ...

    def send_conversation_message(self, tenant: Tenant, thread_id: str, body: str, channel_kind: str) -> Any: ...

    def send_message_to_guest(self, tenant: Tenant, reservation_id: str, body: str) -> Any: ...


class DirectMessenger(Protocol):
    def send_direct_message(self, tenant: Tenant, phone_number: str, body: str) -> Any: ...


class ReplyGenerator(Protocol):
    def generate_reply(
        self,
        tenant: Tenant,
        conversation_id: str,
        guest_message: str,
        context: Mapping[str, Any],
    ) -> Optional[str]: ...
