"""
Service Wiring

Builds the ledger store and the services that sit on top of it.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- LEDGERSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

A configured database that cannot be reached is a startup error. There is
no silent fallback to the in-memory store: an audit ledger that quietly
stops being durable is worse than one that refuses to start.
"""

from dataclasses import dataclass
from typing import Optional

from .core import (
    AuditRecorder,
    ChainAppendEngine,
    ChainVerifier,
    DispatchConfig,
    EventNormalizer,
    ExportBundler,
    LedgerConfig,
    SideEffectDispatcher,
    SigningService,
    get_signing_service,
)
from .db import (
    DatabaseConfig,
    InMemoryLedgerStore,
    LedgerStore,
    LedgerStoreDriver,
    get_ledgerstore_driver,
)
from .observability import get_logger

logger = get_logger(__name__)


def create_ledger_store() -> LedgerStore:
    """
    Create the LedgerStore selected by the environment.

    Raises:
        StorageUnavailable: psycopg2 selected but the database is unreachable
        ValueError: psycopg2 selected but no database is configured
    """
    driver = get_ledgerstore_driver()

    if driver == LedgerStoreDriver.MEMORY:
        logger.info("Using in-memory ledger store (no persistence)")
        return InMemoryLedgerStore()

    config = DatabaseConfig.resolve()
    if config is None:
        raise ValueError(
            f"LEDGERSTORE_DRIVER={driver.value} but no database is configured "
            "(set DATABASE_URL or DATABASE_HOST)"
        )

    return _create_psycopg2_store(config)


def _create_psycopg2_store(config: DatabaseConfig) -> LedgerStore:
    import psycopg2

    from .db.postgres import PostgresLedgerStore

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    store = PostgresLedgerStore(
        connection_factory,
        lock_timeout_ms=config.lock_timeout_ms,
        statement_timeout_ms=config.statement_timeout_ms,
    )
    store.ping()  # raises StorageUnavailable
    logger.info(
        "PostgreSQL ledger store connected",
        url=config.to_url(include_password=False),
    )
    return store


@dataclass
class LedgerServices:
    """Everything the API and the CLI tools need, built once per process."""
    store: LedgerStore
    config: LedgerConfig
    engine: ChainAppendEngine
    normalizer: EventNormalizer
    verifier: ChainVerifier
    bundler: ExportBundler
    dispatcher: SideEffectDispatcher
    recorder: AuditRecorder

    def close(self) -> None:
        self.dispatcher.stop()
        self.store.close()


def build_services(
    store: Optional[LedgerStore] = None,
    config: Optional[LedgerConfig] = None,
    dispatch_config: Optional[DispatchConfig] = None,
    signing_service: Optional[SigningService] = None,
) -> LedgerServices:
    """Wire the ledger services around a store (created from the environment if omitted)."""
    if store is None:
        store = create_ledger_store()
    config = config or LedgerConfig.from_env()

    engine = ChainAppendEngine(store, config)
    normalizer = EventNormalizer(config)
    verifier = ChainVerifier(store)
    bundler = ExportBundler(
        store,
        verifier=verifier,
        config=config,
        signing_service=signing_service or get_signing_service(),
    )
    dispatcher = SideEffectDispatcher(dispatch_config)
    recorder = AuditRecorder(engine, normalizer, dispatcher)

    return LedgerServices(
        store=store,
        config=config,
        engine=engine,
        normalizer=normalizer,
        verifier=verifier,
        bundler=bundler,
        dispatcher=dispatcher,
        recorder=recorder,
    )
