"""
Aggregation Service

Wires the registry, engine, store and coordinator together for one process
and owns their start-up and shutdown. The API, the refresh CLI and the
Prefect flow all go through this service.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from src.config import Settings, get_settings
from src.database.connection import get_session_factory
from src.warehouse.schema import StarSchema, billing_schema
from src.warehouse.source import SqlWarehouseSource, WarehouseSource
from .backends import ArtifactBackend, create_backend
from .catalog import default_catalog
from .coordinator import RefreshCoordinator, RefreshMode
from .engine import AggregationEngine
from .exceptions import InvalidSpecError, NotFoundError
from .registry import AggregateRegistry
from .specs import AggregateSpec
from .store import MaterializedStore

logger = structlog.get_logger(__name__)


class AggregationService:
    """
    Example:
        service = AggregationService(billing_schema(), source, MemoryArtifactBackend())
        await service.start()
        await service.coordinator.refresh("billing_by_country_category")
        rows = service.store.query("billing_by_country_category")
    """

    def __init__(
        self,
        schema: StarSchema,
        source: WarehouseSource,
        backend: ArtifactBackend,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.schema = schema
        self.source = source
        self.backend = backend
        self.registry = AggregateRegistry(schema)
        self.engine = AggregationEngine(schema, decimal_precision=self.settings.aggregation.decimal_precision)
        self.store = MaterializedStore(backend, self.registry, self.engine.codec)
        self.coordinator = RefreshCoordinator(self.registry, source, self.store, self.engine)

    @property
    def default_mode(self) -> RefreshMode:
        return RefreshMode(self.settings.aggregation.default_refresh_mode)

    async def start(self, register_catalog: Optional[bool] = None) -> None:
        """Restore persisted specs and artifacts, then register the catalog"""
        for spec_id, definition in (await self.backend.load_specs()).items():
            try:
                self.registry.register(AggregateSpec.model_validate_json(definition))
            except (ValidationError, InvalidSpecError) as e:
                logger.warning("Skipping stored spec that no longer validates", spec_id=spec_id, error=str(e))

        if register_catalog is None:
            register_catalog = self.settings.aggregation.register_catalog
        if register_catalog:
            for spec in default_catalog():
                if spec.spec_id not in self.registry:
                    await self.register(spec)

        await self.store.restore(self.engine)

        if self.settings.aggregation.refresh_on_startup:
            for spec in self.registry.list():
                if spec.spec_id not in self.store:
                    await self.coordinator.refresh(spec.spec_id, mode=RefreshMode.FULL, wait=False)

        logger.info(
            "Aggregation service started",
            backend=self.backend.name,
            specs=len(self.registry),
        )

    async def stop(self) -> None:
        """Let in-flight refreshes finish; they are never cancelled"""
        await self.coordinator.wait_idle()
        logger.info("Aggregation service stopped")

    async def register(self, spec: AggregateSpec) -> str:
        """
        Validate, register and persist a spec.

        Raises:
            InvalidSpecError: The definition cannot be materialized
            PersistenceError: The definition could not be stored
        """
        known = spec.spec_id in self.registry
        spec_id = self.registry.register(spec)
        if not known:
            try:
                await self.backend.save_spec(spec_id, spec.model_dump_json())
            except Exception:
                self.registry.remove(spec_id)
                raise
        return spec_id

    async def remove(self, spec_id: str) -> AggregateSpec:
        """
        Unregister a spec and retire its artifact once any refresh of it has
        finished.

        Raises:
            NotFoundError: Unknown spec
        """
        spec = self.registry.remove(spec_id)
        await self.coordinator.settle(spec_id)
        await self.store.retire(spec_id)
        await self.backend.delete_spec(spec_id)
        return spec

    def status(self, spec_id: str) -> Dict[str, Any]:
        """Refresh record, artifact summary and staleness of a spec"""
        self.registry.get(spec_id)
        artifact = self.store.peek(spec_id)
        try:
            staleness: Optional[timedelta] = self.store.staleness(spec_id)
        except NotFoundError:
            staleness = None

        return {
            "spec_id": spec_id,
            "record": self.store.record(spec_id).to_dict(),
            "refreshing": spec_id in self.coordinator.in_flight(),
            "artifact": artifact.summary() if artifact is not None else None,
            "staleness_seconds": staleness.total_seconds() if staleness is not None else None,
        }

    def statuses(self) -> List[Dict[str, Any]]:
        return [self.status(spec.spec_id) for spec in self.registry.list()]


# Global service instance
_service: Optional[AggregationService] = None


async def init_service(
    source: Optional[WarehouseSource] = None,
    backend: Optional[ArtifactBackend] = None,
    settings: Optional[Settings] = None,
) -> AggregationService:
    """Build and start the process-wide service from settings"""
    global _service

    if _service is not None:
        logger.warning("Aggregation service already initialized")
        return _service

    settings = settings or get_settings()
    schema = billing_schema()
    if source is None:
        source = SqlWarehouseSource(schema)
    if backend is None:
        agg = settings.aggregation
        session_factory = get_session_factory() if agg.store_backend == "sql" else None
        backend = create_backend(agg.store_backend, session_factory, agg.redis_namespace)

    service = AggregationService(schema, source, backend, settings)
    await service.start()
    _service = service
    return service


def get_service() -> AggregationService:
    """
    Raises:
        RuntimeError: If the service is not initialized
    """
    if _service is None:
        raise RuntimeError("Aggregation service not initialized. Call init_service() first.")
    return _service


async def close_service() -> None:
    global _service

    if _service is not None:
        await _service.stop()
        _service = None
