"""Gateway service container: wires stores, resolvers, adapters and the queue."""

from __future__ import annotations

import logging

import httpx

from omnigate.audit.logger import AuditLogger
from omnigate.channels.factory import AdapterFactory
from omnigate.config import GatewayConfig
from omnigate.dispatch.dispatcher import MessageDispatcher
from omnigate.routing.credentials import CredentialResolver
from omnigate.routing.identity import IdentityResolver
from omnigate.store.channels import ChannelStore, LeadStore
from omnigate.store.conversations import ConversationStore, MessageStore
from omnigate.store.db import GatewayDB
from omnigate.store.webhooks import WebhookStore
from omnigate.webhook.queue import WebhookDispatchQueue

logger = logging.getLogger(__name__)


class Gateway:
    """Owns every long-lived resource of one gateway process.

    Call :meth:`close` (or use ``async with``) to drain pending webhook
    deliveries and release the HTTP client and database.
    """

    def __init__(
        self,
        config: GatewayConfig,
        client: httpx.AsyncClient | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(verify=True)
        if audit_logger is None and config.audit_log_path:
            audit_logger = AuditLogger.from_env(config.audit_log_path)
        self.audit_logger = audit_logger

        self.db = GatewayDB(config.db_path)
        self.channels = ChannelStore(self.db)
        self.leads = LeadStore(self.db)
        self.conversations = ConversationStore(self.db)
        self.messages = MessageStore(self.db)
        self.webhooks = WebhookStore(self.db)

        self.identity = IdentityResolver(self.channels, self.conversations, self.leads)
        self.credentials = CredentialResolver(
            self.channels,
            self.client,
            graph_base=config.graph_api_base,
            timeout=config.adapter_timeout,
            audit_logger=audit_logger,
        )
        self.adapters = AdapterFactory(self.client, config)
        self.events = WebhookDispatchQueue(
            self.webhooks, client=self.client, timeout=config.webhook_timeout,
        )
        self.dispatcher = MessageDispatcher(
            self.identity,
            self.credentials,
            self.adapters,
            self.conversations,
            self.messages,
            self.leads,
            self.events,
            audit_logger=audit_logger,
        )

    @classmethod
    def from_env(cls) -> Gateway:
        return cls(GatewayConfig.from_env())

    async def close(self) -> None:
        await self.events.close()
        if self._owns_client:
            await self.client.aclose()
        self.db.close()
        logger.info("Gateway closed")

    async def __aenter__(self) -> Gateway:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.close()
