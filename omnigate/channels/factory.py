"""Pick and build the adapter for a channel's credential variant."""

from __future__ import annotations

import httpx

from omnigate.channels.base import ChannelAdapter
from omnigate.channels.evolution import EvolutionAdapter
from omnigate.channels.meta import MetaAdapter
from omnigate.channels.telegram import TelegramAdapter
from omnigate.channels.whatsapp_cloud import WhatsAppCloudAdapter
from omnigate.config import GatewayConfig
from omnigate.errors import ChannelConfigError
from omnigate.models import (
    CloudCredentials,
    Credentials,
    EvolutionCredentials,
    MetaCredentials,
    TelegramCredentials,
)


class AdapterFactory:
    """Builds adapters that share one HTTP client and the gateway's endpoints."""

    def __init__(self, client: httpx.AsyncClient, config: GatewayConfig) -> None:
        self._client = client
        self._config = config

    def evolution(self, instance_id: str) -> EvolutionAdapter:
        return EvolutionAdapter(
            self._client,
            self._config.evolution_api_url,
            self._config.evolution_api_key,
            instance_id,
            timeout=self._config.adapter_timeout,
        )

    def build(self, creds: Credentials) -> ChannelAdapter:
        timeout = self._config.adapter_timeout
        if isinstance(creds, EvolutionCredentials):
            return self.evolution(creds.instance_id)
        if isinstance(creds, CloudCredentials):
            return WhatsAppCloudAdapter(
                self._client,
                creds.phone_number_id,
                creds.access_token,
                graph_base=self._config.graph_api_base,
                timeout=timeout,
            )
        if isinstance(creds, MetaCredentials):
            return MetaAdapter(
                self._client,
                creds.send_token,
                page_id=creds.page_id,
                graph_base=self._config.graph_api_base,
                timeout=timeout,
            )
        if isinstance(creds, TelegramCredentials):
            return TelegramAdapter(
                self._client,
                creds.bot_token,
                api_base=self._config.telegram_api_base,
                timeout=timeout,
            )
        raise ChannelConfigError(f"No adapter for credentials {type(creds).__name__}")
