"""Application context: every collaborator the commands need, built once."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .backend.documents import DocumentStore
from .backend.functions import FunctionsClient
from .backend.identity import IdentityProvider
from .backend.rules import PortalRules
from .backend.storage import ObjectStorage
from .cache import FileKeyValueStorage, LocalCache
from .config import PortalSettings, settings as default_settings
from .models import Base
from .notify import Notifier
from .state import StateStore
from .sync.adapter import SyncAdapter

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: PortalSettings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    state: StateStore
    documents: DocumentStore
    identity: IdentityProvider
    storage: ObjectStorage
    functions: FunctionsClient
    notifier: Notifier
    cache: LocalCache
    sync: SyncAdapter
    owns_engine: bool = False

    async def close(self) -> None:
        self.sync.teardown()
        self.notifier.clear()
        if self.owns_engine:
            await self.engine.dispose()


async def create_context(
    settings: PortalSettings | None = None,
    *,
    engine: AsyncEngine | None = None,
    functions_transport: httpx.AsyncBaseTransport | None = None,
    password_iterations: int = 200_000,
    create_tables: bool = True,
) -> AppContext:
    settings = settings or default_settings
    owns_engine = engine is None
    if engine is None:
        engine = create_async_engine(settings.database_url, echo=settings.echo_sql)
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    identity = IdentityProvider(
        session_factory,
        token_ttl_seconds=settings.identity_token_ttl_seconds,
        min_password_length=settings.identity_min_password_length,
        password_iterations=password_iterations,
    )
    documents = DocumentStore(
        session_factory,
        indexes=settings.composite_index_list,
        enforce_indexes=settings.enforce_composite_indexes,
        rules=PortalRules(),
        auth_state=lambda: identity.current_user,
    )

    def current_token() -> str | None:
        user = identity.current_user
        return user.id_token if user is not None else None

    state = StateStore()
    ctx = AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        state=state,
        documents=documents,
        identity=identity,
        storage=ObjectStorage(
            settings.storage_path, settings.storage_base_url, chunk_size=settings.upload_chunk_bytes
        ),
        functions=FunctionsClient(
            settings.functions_url,
            timeout=settings.functions_timeout_seconds,
            token_provider=current_token,
            transport=functions_transport,
        ),
        notifier=Notifier(default_duration=settings.toast_duration_seconds),
        cache=LocalCache(
            FileKeyValueStorage(settings.cache_path, quota_bytes=settings.cache_quota_bytes),
            prefix=settings.cache_prefix,
            default_ttl=settings.cache_ttl_seconds,
        ),
        sync=SyncAdapter(documents, state),
        owns_engine=owns_engine,
    )
    logger.info("Portal context ready (%s)", settings.environment)
    return ctx
