"""Main entry point for the compute provisioner.

Wires the backends, the object store, the mutation services and the
reconciler together, preloads declarative specs, and runs until SIGTERM
or SIGINT.

AUTHENTICATION:
The controller presents its TLS client certificate to the identity
service, which issues short-lived bearer tokens used for every region
and identity call. No secret is read from the environment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .allocation import AllocationManager
from .clusters import ClusterService
from .config import Config, ConfigurationError
from .errors import ConflictError, InvalidRequestError
from .eviction import EvictionCoordinator
from .identity import IdentityClient, TokenIssuer
from .instances import InstanceService
from .models import ComputeCluster, ComputeInstance
from .pause import PauseController
from .provisioner import ClusterProvisioner, InstanceProvisioner
from .reconciler import Reconciler
from .region import RegionClient
from .spec_loader import SpecLoadError, load_specs
from .store import InMemoryObjectStore, ObjectStore

# LogRecord attributes that are not structured context
RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@dataclass
class Controller:
    """Everything a running controller is made of."""

    store: ObjectStore
    token_issuer: TokenIssuer
    region: RegionClient
    identity: IdentityClient
    clusters: ClusterService
    instances: InstanceService
    pauses: PauseController
    reconciler: Reconciler

    async def aclose(self) -> None:
        await self.region.aclose()
        await self.identity.aclose()
        await self.token_issuer.aclose()


def build_controller(config: Config, store: ObjectStore | None = None) -> Controller:
    """Construct the controller from validated configuration."""
    store = store or InMemoryObjectStore()
    timeout = config.request_timeout_seconds

    token_issuer = TokenIssuer(config.identity_url, tls=config.tls, timeout=timeout)
    region = RegionClient(
        config.region_url,
        token_source=token_issuer.get_token,
        on_unauthorized=token_issuer.invalidate,
        tls=config.tls,
        timeout=timeout,
    )
    identity = IdentityClient(
        config.identity_url,
        token_source=token_issuer.get_token,
        on_unauthorized=token_issuer.invalidate,
        tls=config.tls,
        timeout=timeout,
    )

    allocations = AllocationManager(identity)
    pauses = PauseController(store)
    evictions = EvictionCoordinator(store, region, allocations, pauses)

    reconciler = Reconciler(
        config,
        store,
        {
            ComputeCluster.KIND: ClusterProvisioner(store, region, allocations),
            ComputeInstance.KIND: InstanceProvisioner(store, region, allocations),
        },
    )

    return Controller(
        store=store,
        token_issuer=token_issuer,
        region=region,
        identity=identity,
        clusters=ClusterService(store, region, allocations, evictions),
        instances=InstanceService(store, region, allocations),
        pauses=pauses,
        reconciler=reconciler,
    )


async def preload(controller: Controller, specs_dir: Path) -> int:
    """Create every object declared in a specs directory.

    Objects that already exist are left alone.

    Returns:
        Number of objects created.

    Raises:
        SpecLoadError: If any spec file is invalid.
    """
    logger = logging.getLogger(__name__)
    created = 0

    for obj in load_specs(specs_dir):
        meta = obj.metadata
        extra = {"kind": obj.KIND, "object": meta.name}
        try:
            if isinstance(obj, ComputeCluster):
                await controller.clusters.create(
                    meta.organization_id, meta.project_id, meta.name, obj.spec, meta.tags
                )
            elif isinstance(obj, ComputeInstance):
                await controller.instances.create(
                    meta.organization_id, meta.project_id, meta.name, obj.spec, meta.tags
                )
        except ConflictError:
            logger.info("Spec already loaded", extra=extra)
            continue
        except InvalidRequestError as e:
            logger.error("Spec rejected", extra={**extra, "error": str(e)})
            continue

        created += 1

    return created


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting compute provisioner",
        extra={
            "region_url": config.region_url,
            "identity_url": config.identity_url,
            "workers": config.workers,
        },
    )

    return await run_controller(config, logger)


async def run_controller(config: Config, logger: logging.Logger) -> int:
    """Run the reconciler until a shutdown signal is received."""
    controller = build_controller(config)

    try:
        if config.specs_dir is not None:
            try:
                created = await preload(controller, config.specs_dir)
            except SpecLoadError as e:
                # Spec loading/validation failed - user configuration error
                logger.error(
                    "Spec loading failed",
                    extra={"error": str(e), "specs_dir": str(config.specs_dir)},
                )
                return 1
            logger.info("Preloaded specs", extra={"created": created})

        # Set up signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            controller.reconciler.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await controller.reconciler.run()
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1
    finally:
        await controller.aclose()

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
