"""Dependency injection for FastAPI endpoints.

This module provides reusable dependencies for:
- The service container built once per application
- Configuration access
- Resolving the signed-in user from the sign-in proxy header
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, Request

from calmirror.api.scheduler import ChannelRenewalScheduler
from calmirror.core.config import AppConfig
from calmirror.core.exceptions import Unauthorized
from calmirror.core.models import User
from calmirror.core.notifications import NotificationReceiver
from calmirror.core.reconcile import ReconciliationEngine
from calmirror.core.subscriptions import SubscriptionManager
from calmirror.sources.base import ProviderFactory
from calmirror.sources.google import google_client_factory
from calmirror.utils.db import EventStore

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Long-lived collaborators shared by all requests."""

    config: AppConfig
    store: EventStore
    engine: ReconciliationEngine
    subscriptions: SubscriptionManager
    receiver: NotificationReceiver
    renewals: ChannelRenewalScheduler

    @classmethod
    def build(
        cls, config: AppConfig, provider_factory: ProviderFactory | None = None
    ) -> "AppServices":
        """Wire the sync core from configuration."""
        factory = provider_factory or google_client_factory(config.google)
        store = EventStore(config.store_db_path)
        engine = ReconciliationEngine(
            store,
            factory,
            prune_policy=config.sync.prune_policy,
            page_size=config.google.page_size,
        )
        subscriptions = SubscriptionManager(
            store,
            factory,
            channel_ttl=timedelta(hours=config.webhook.channel_ttl_hours),
        )
        receiver = NotificationReceiver(
            store,
            engine,
            inline=config.webhook.reconcile_mode == "inline",
        )
        renewals = ChannelRenewalScheduler(config, subscriptions)
        return cls(
            config=config,
            store=store,
            engine=engine,
            subscriptions=subscriptions,
            receiver=receiver,
            renewals=renewals,
        )

    async def start(self) -> None:
        self.config.ensure_data_dir()
        await self.store.initialize()
        await self.renewals.start()

    async def stop(self) -> None:
        await self.renewals.stop()
        await self.receiver.drain()


def get_services(request: Request) -> AppServices:
    """Get the service container attached to the application."""
    return request.app.state.services


ServicesDep = Annotated[AppServices, Depends(get_services)]


def get_config(services: ServicesDep) -> AppConfig:
    return services.config


async def get_current_user(request: Request, services: ServicesDep) -> User:
    """Resolve the signed-in user from the identity header set by the sign-in proxy.

    Raises:
        Unauthorized: Header missing, user unknown, or user has no credential
    """
    header = services.config.api.user_header
    email = request.headers.get(header)
    if not email:
        raise Unauthorized("Unauthorized - no session found")

    user = await services.store.get_user(email.strip().lower())
    if user is None or not user.has_credential:
        raise Unauthorized(f"No access token found for user: {email}")
    return user


# Type aliases for dependency injection
ConfigDep = Annotated[AppConfig, Depends(get_config)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]
