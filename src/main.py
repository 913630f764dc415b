"""
Main entry point for the tether controller manager.

Builds the object store, event bus and readiness gate, adds the schema gate
and secret propagation controllers plus the claim controllers for every
configured binding, and runs them until interrupted.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import (
    STORE_BACKEND_POSTGRES,
    BindingConfig,
    Config,
    get_config,
    register_bindings,
)
from controller import Manager
from db import DatabaseStore
from events import EventBus
from gate import Gate
from objects import Scheme, new_scheme
from reconcilers import (
    claimbinding,
    claimdefaulting,
    claimscheduling,
    schemagate,
    secret,
)
from reconcilers.claimbinding import (
    APIBinder,
    APIStatusBinder,
    template_configurators,
)
from store import MemoryStore, Store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def create_store(
    config: Config, scheme: Scheme, event_bus: Optional[EventBus] = None
) -> Store:
    """
    Create the object store selected by the configuration.

    A postgres store is connected and its schema migrated before it is
    returned.
    """
    if config.store.backend != STORE_BACKEND_POSTGRES:
        logger.info("Using in-memory object store")
        return MemoryStore(scheme, event_bus)

    db_config = config.database
    store = DatabaseStore(
        scheme,
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        user=db_config.user,
        password=db_config.password,
        min_pool_size=db_config.min_pool_size,
        max_pool_size=db_config.max_pool_size,
        event_bus=event_bus,
    )
    await store.connect()
    await store.initialize_schema()
    logger.info("Database initialized")
    return store


class Application:
    """Main application that wires the store, gate and controllers together."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.scheme = new_scheme()
        self.store: Optional[Store] = None
        self.event_bus: Optional[EventBus] = None
        self.gate: Optional[Gate] = None
        self.manager: Optional[Manager] = None
        self.running = False
        self._shutdown = asyncio.Event()

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing tether")
        logging.getLogger().setLevel(self.config.logging.level)

        register_bindings(self.scheme, self.config.bindings)

        self.event_bus = EventBus()
        self.store = await create_store(self.config, self.scheme, self.event_bus)
        self.gate = Gate()
        self.manager = Manager(
            self.store, self.event_bus, self.gate, self.config.controller
        )

        schemagate.setup(self.manager)
        secret.setup(self.manager)
        for binding in self.config.bindings:
            self.setup_binding(binding)

        logger.info(
            f"Initialized {len(self.manager.list_controllers())} controller(s)"
        )

    def setup_binding(self, binding: BindingConfig) -> None:
        """Add the defaulting, scheduling and binding controllers for a binding."""
        claim_kind, class_kind, managed_kind = binding.kinds()
        requires = (claim_kind, class_kind, managed_kind) if binding.gated else ()

        claimdefaulting.setup(self.manager, claim_kind, class_kind, requires)
        claimscheduling.setup(self.manager, claim_kind, class_kind, requires)

        binder_type = APIStatusBinder if binding.status_subresource else APIBinder
        claimbinding.setup(
            self.manager,
            claim_kind,
            class_kind,
            managed_kind,
            requires,
            managed_configurators=template_configurators(),
            binder=binder_type(self.store),
        )
        logger.info(f"Binding {claim_kind} to {managed_kind} via {class_kind}")

    async def start(self):
        """Start the application and run until stopped."""
        if not self.manager:
            await self.initialize()

        self.running = True
        logger.info("Starting tether")
        await self.manager.start()
        await self._shutdown.wait()

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            self._shutdown.set()
            return
        logger.info("Stopping tether")
        self.running = False

        if self.manager:
            await self.manager.stop()

        if self.store:
            await self.store.close()

        self._shutdown.set()
        logger.info("tether stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
