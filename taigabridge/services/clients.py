"""Builds Taiga clients bound to stored links."""

from __future__ import annotations

import logging

import httpx

from taigabridge.errors import BridgeError
from taigabridge.schemas.link import UserLink
from taigabridge.services.link_store import LinkStore
from taigabridge.services.taiga_client import TaigaClient

logger = logging.getLogger(__name__)


class TaigaClientFactory:
    """Creates clients for raw tokens and for linked users.

    Clients built for a link persist refreshed credentials back into the
    store, so the next cycle starts from the new token.
    """

    def __init__(
        self,
        base_url: str,
        store: LinkStore,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.store = store
        self.timeout = timeout
        self.transport = transport

    def for_token(self, auth_token: str, refresh_token: str | None = None) -> TaigaClient:
        return TaigaClient(
            self.base_url,
            auth_token,
            refresh_token=refresh_token,
            timeout=self.timeout,
            transport=self.transport,
        )

    def for_link(self, link: UserLink) -> TaigaClient:
        telegram_id = link.telegram_id

        def _persist(auth_token: str, refresh_token: str) -> None:
            try:
                self.store.update_credentials(telegram_id, auth_token, refresh_token)
            except BridgeError as e:
                logger.warning("Could not persist refreshed Taiga token for %s: %s", telegram_id, e)

        return TaigaClient(
            self.base_url,
            link.taiga_token,
            refresh_token=link.taiga_refresh_token,
            on_refresh=_persist,
            timeout=self.timeout,
            transport=self.transport,
        )

    def __call__(self, link: UserLink) -> TaigaClient:
        return self.for_link(link)
