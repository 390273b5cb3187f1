"""
Operator Controller - the external secret reconcile loop.

Similar to Kubernetes controllers, continuously reconciles the target secret
records with what their ExternalSecret declarations ask for. Work arrives
through a coalescing work queue fed by change events, a periodic database
resync and per-declaration refresh timers. A pool of workers drains the
queue; each reconcile runs as its own task so that deleting a declaration
can cancel it.

Each reconcile resolves the store into an authenticated provider client,
fetches and extracts every requested value, renders templates and merges
the result into the target record. Failures are classified as transient
(retried with exponential backoff) or permanent (retried slowly at a fixed
interval).
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from config import ControllerConfig, PluginConfig
from db import ResourceStatus
from errors import (
    InvalidSpec,
    ProviderTimeout,
    ReconcileAbandoned,
    SecretSyncError,
    error_kind,
    is_transient,
)
from events import (
    KIND_CLUSTER_SECRET_STORE,
    KIND_CREDENTIAL_RECORD,
    KIND_EXTERNAL_SECRET,
    KIND_SECRET_STORE,
    EventBus,
    EventType,
    ResourceEvent,
    kind_filter,
)
from extract import extract, extract_map
from models import (
    ExternalSecret,
    RemoteRef,
    ResourceKey,
    SecretStore,
    parse_external_secret,
    parse_secret_store,
)
from plugins.providers.base import ProviderClient
from plugins.registry import PluginRegistry, get_registry
from store import StoreResolver
from template import render
from utils import merge_maps
from workqueue import WorkQueue
from writer import MergeWriter

CONDITION_READY = "Ready"
CONDITION_SECRET_SYNCED = "SecretSynced"

# Declarations enqueued per resync poll
RESYNC_BATCH_SIZE = 500

_CHANGE_EVENTS = (EventType.CREATED, EventType.MODIFIED, EventType.DELETED)
_watches_kind = kind_filter(
    KIND_EXTERNAL_SECRET,
    KIND_SECRET_STORE,
    KIND_CLUSTER_SECRET_STORE,
    KIND_CREDENTIAL_RECORD,
)


class ReconcilePhase(Enum):
    """Phase of a single reconcile attempt."""

    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    TEMPLATING = "templating"
    WRITING = "writing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Result of a reconcile attempt."""

    success: bool = False
    phase: ReconcilePhase = ReconcilePhase.PENDING
    # Phase the attempt was in when it failed
    failed_phase: Optional[ReconcilePhase] = None
    error_kind: Optional[str] = None
    error: Optional[BaseException] = None
    message: str = ""
    # Seconds until the key should be reconciled again, None for never
    requeue_after: Optional[float] = None
    wrote: bool = False
    skipped: bool = False
    abandoned: bool = False


class ResourceLogger(logging.LoggerAdapter):
    """Prefixes every message with the declaration's namespace/name."""

    def process(self, msg, kwargs):
        return f"[{self.extra['namespace']}/{self.extra['name']}] {msg}", kwargs


def _is_change_event(event: ResourceEvent) -> bool:
    return event.event_type in _CHANGE_EVENTS and _watches_kind(event)


class Controller:
    """
    Main controller that implements the reconcile loop.

    Owns the work queue, the workers, the resync poll and the event watch,
    and decides the severity of every failure.
    """

    def __init__(
        self,
        db_manager: Any,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None,
        rng: Optional[random.Random] = None,
        plugin_config: Optional[PluginConfig] = None,
    ):
        self.db = db_manager
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.resolver = StoreResolver(
            self.db, self.registry, self.config.controller_class, plugin_config
        )
        self.writer = MergeWriter(self.db, self.config.write_conflict_retries)
        self.queue: WorkQueue[ResourceKey] = WorkQueue()
        self.running = False
        self._event_bus = event_bus
        self._rng = rng or random.Random()
        self._in_flight: Dict[ResourceKey, asyncio.Task] = {}
        self._tasks: List[asyncio.Task] = []
        self._subscriber_id: Optional[str] = None

    # ==================== Lifecycle ====================

    async def start(self):
        """Start the workers, the resync loop and the event watch."""
        self.logger.info(
            f"Starting secretsync controller with "
            f"{self.config.max_concurrent_reconciles} workers "
            f"(controller class: {self.config.controller_class or 'any'})"
        )
        self.running = True

        if self._event_bus is not None:
            self._subscriber_id, subscription = await self._event_bus.subscribe(
                _is_change_event
            )
            self._tasks.append(asyncio.create_task(self._watch_events(subscription)))

        self._tasks.append(asyncio.create_task(self._resync_loop()))
        for worker_id in range(self.config.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker(worker_id)))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            self.logger.info("Controller tasks cancelled")

    async def stop(self):
        """Stop accepting work and cancel everything in flight."""
        self.logger.info("Stopping secretsync controller")
        self.running = False
        self.queue.shutdown()

        if self._event_bus is not None and self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for task in list(self._in_flight.values()):
            task.cancel()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

    @property
    def in_flight(self) -> Set[ResourceKey]:
        """Keys currently being reconciled."""
        return set(self._in_flight)

    # ==================== Loops ====================

    async def _worker(self, worker_id: int):
        """Take keys off the queue and reconcile them one at a time."""
        while self.running:
            key = await self.queue.get()
            if key is None:
                return

            task = asyncio.create_task(self.process(key))
            self._in_flight[key] = task
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                self._in_flight.pop(key, None)
                self.queue.done(key)

            if task.cancelled():
                self.logger.info(f"Reconcile of {key[0]}/{key[1]} was cancelled")
            elif task.exception() is not None:
                self.logger.error(
                    f"Worker {worker_id} failed processing {key[0]}/{key[1]}: "
                    f"{task.exception()}",
                    exc_info=task.exception(),
                )

    async def _resync_loop(self):
        """Periodically enqueue declarations that are due or changed."""
        while self.running:
            try:
                await self.resync()
                await asyncio.sleep(self.config.reconcile_interval)
            except Exception as e:
                self.logger.error(f"Error in resync loop: {e}", exc_info=True)
                await asyncio.sleep(10)  # Brief pause on error

    async def resync(self) -> int:
        """
        Enqueue every declaration the database reports as needing work.

        Returns:
            Number of keys added to the queue
        """
        rows = await self.db.get_external_secrets_needing_reconciliation(
            limit=RESYNC_BATCH_SIZE
        )
        added = 0
        for row in rows:
            key = (row["namespace"], row["name"])
            if self.queue.is_processing(key):
                continue
            self.queue.add(key)
            added += 1

        if added:
            self.logger.info(f"Found {added} external secret(s) needing reconciliation")
        return added

    async def _watch_events(self, subscription):
        """Turn change events into queue operations."""
        async for event in subscription:
            try:
                await self.handle_event(event)
            except Exception as e:
                self.logger.error(
                    f"Error handling {event.event_type.value} event for "
                    f"{event.kind} {event.name}: {e}",
                    exc_info=True,
                )

    async def handle_event(self, event: ResourceEvent) -> None:
        """
        React to a change of a declaration, a store or a credential record.

        ExternalSecret changes enqueue the declaration and deletions cancel
        its reconcile. Store and credential changes enqueue every
        declaration that depends on them.
        """
        if event.kind == KIND_EXTERNAL_SECRET:
            if event.event_type == EventType.DELETED:
                await self.on_external_secret_deleted(event)
            else:
                self.queue.add((event.namespace, event.name))
            return

        if event.kind == KIND_SECRET_STORE:
            rows = await self.db.list_external_secrets_for_store(
                event.name, event.namespace
            )
        elif event.kind == KIND_CLUSTER_SECRET_STORE:
            rows = await self.db.list_external_secrets_for_store(event.name, None)
        elif event.kind == KIND_CREDENTIAL_RECORD:
            rows = await self._dependents_of_credential(event.namespace, event.name)
        else:
            return

        for row in rows:
            self.queue.add((row["namespace"], row["name"]))
        if rows:
            self.logger.info(
                f"{event.kind} {event.name} {event.event_type.value.lower()}: "
                f"enqueued {len(rows)} external secret(s)"
            )

    async def _dependents_of_credential(
        self, namespace: str, name: str
    ) -> List[Dict[str, Any]]:
        """Declarations whose store reads the given credential record."""
        rows: List[Dict[str, Any]] = []
        for store_row in await self.db.list_secret_stores():
            try:
                store = parse_secret_store(store_row)
            except ValidationError:
                continue
            if store.uses_credential(namespace, name):
                rows.extend(
                    await self.db.list_external_secrets_for_store(
                        store.name, store.namespace
                    )
                )
        return rows

    async def on_external_secret_deleted(self, event: ResourceEvent) -> None:
        """Forget a deleted declaration and apply the target deletion policy."""
        key = (event.namespace, event.name)
        self.queue.forget(key)

        task = self._in_flight.get(key)
        if task is not None:
            task.cancel()

        if not self.config.delete_target_on_removal:
            return

        target = ((event.data.get("spec") or {}).get("target") or {}).get("name")
        target = target or event.name
        existing = await self.db.get_target_secret(event.namespace, target)
        if existing is not None and existing.get("owner") == event.name:
            await self.db.delete_target_secret(event.namespace, target)
            self.logger.info(
                f"Deleted target secret {event.namespace}/{target} "
                f"of removed external secret {event.name}"
            )

    async def trigger_reconciliation(self, namespace: str, name: str) -> bool:
        """
        Manually trigger reconciliation of a declaration.

        Returns:
            False if the declaration does not exist
        """
        if await self.db.get_external_secret(namespace, name) is None:
            return False
        self.logger.info(f"Manually triggering reconciliation for {namespace}/{name}")
        self.queue.add((namespace, name))
        return True

    # ==================== Reconcile ====================

    async def process(self, key: ResourceKey) -> ReconcileResult:
        """Reconcile one key and schedule its next reconcile."""
        result = await self.reconcile(*key)
        if result.requeue_after is None:
            if result.skipped:
                self.queue.forget(key)
        else:
            self.queue.add_after(key, result.requeue_after)
        return result

    def _compute_backoff(self, retry_count: int) -> float:
        """
        Compute the delay before retrying a transient failure.

        min(base * 2^retry_count, max) with ±jitter applied.
        """
        delay = min(
            self.config.backoff_base_delay * (2 ** min(retry_count, 10)),
            self.config.backoff_max_delay,
        )
        jitter = self._rng.uniform(-1, 1) * self.config.backoff_jitter_factor
        return delay * (1 + jitter)

    def _refresh_interval(self, declaration: ExternalSecret) -> Optional[float]:
        interval = declaration.spec.refresh_interval
        if interval is None:
            interval = self.config.default_refresh_interval
        return interval if interval > 0 else None

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Reconcile a single external secret.

        This is the core reconcile logic: load the declaration and its
        store, sync the target record, then record the outcome in the
        declaration's status.
        """
        log = ResourceLogger(self.logger, {"namespace": namespace, "name": name})

        result = ReconcileResult()

        try:
            row = await self.db.get_external_secret(namespace, name)
        except Exception as e:
            log.error(f"Could not load external secret: {e}", exc_info=True)
            return await self._handle_failure(
                {"namespace": namespace, "name": name}, e, result, log
            )
        if row is None:
            log.info("External secret no longer exists, forgetting it")
            return ReconcileResult(skipped=True)

        generation = row.get("generation", 1)

        try:
            declaration = parse_external_secret(row)
        except ValidationError as e:
            return await self._handle_failure(
                row, InvalidSpec(f"invalid external secret: {e}"), result, log
            )

        try:
            store = await self.resolver.get_store(
                namespace, declaration.spec.secret_store_ref
            )
        except SecretSyncError as e:
            return await self._handle_failure(row, e, result, log)
        except Exception as e:
            log.error(f"Unexpected error resolving store: {e}", exc_info=True)
            return await self._handle_failure(row, e, result, log)

        if not self.resolver.should_process(store):
            log.debug(
                f"Store {store.name} belongs to controller class "
                f"{store.spec.controller}, skipping"
            )
            result.skipped = True
            return result

        try:
            await self.db.update_external_secret_status(
                namespace,
                name,
                ResourceStatus.RECONCILING,
                message="Starting reconciliation",
            )
        except Exception as e:
            log.error(f"Could not record reconciling status: {e}", exc_info=True)
            return await self._handle_failure(row, e, result, log)

        try:
            result.wrote = await asyncio.wait_for(
                self._sync(declaration, store, result, log),
                timeout=self.config.reconcile_deadline,
            )
        except ReconcileAbandoned as e:
            return await self._handle_abandoned(declaration, e, result, log)
        except asyncio.TimeoutError:
            error = ProviderTimeout(
                f"reconcile did not finish within {self.config.reconcile_deadline}s"
            )
            return await self._handle_failure(row, error, result, log)
        except SecretSyncError as e:
            return await self._handle_failure(row, e, result, log)
        except Exception as e:
            log.error(
                f"Unexpected error during {result.phase.value}: {e}", exc_info=True
            )
            return await self._handle_failure(row, e, result, log)

        requeue_after = self._refresh_interval(declaration)
        result.success = True
        result.phase = ReconcilePhase.READY
        result.requeue_after = requeue_after
        result.message = "Secret synced"

        try:
            await self.db.update_external_secret_status(
                namespace,
                name,
                ResourceStatus.READY,
                message=result.message,
                observed_generation=generation,
                next_reconcile_after=requeue_after,
            )
            for condition_type in (CONDITION_READY, CONDITION_SECRET_SYNCED):
                await self.db.set_condition(
                    namespace,
                    name,
                    condition_type,
                    "True",
                    "SecretSynced",
                    "Secret was synced",
                    generation,
                )
        except Exception as e:
            log.error(f"Could not record ready status: {e}", exc_info=True)
            return await self._handle_failure(row, e, result, log)

        if result.wrote:
            log.info(f"Synced target secret {declaration.target_name}")
        else:
            log.debug(f"Target secret {declaration.target_name} already up to date")

        await self._publish(
            EventType.SYNCED,
            namespace,
            name,
            {
                "target": declaration.target_name,
                "generation": generation,
                "wrote": result.wrote,
            },
        )
        return result

    async def _sync(
        self,
        declaration: ExternalSecret,
        store: SecretStore,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> bool:
        """Fetch, extract, render and write. Returns True if a write happened."""
        spec = declaration.spec

        result.phase = ReconcilePhase.FETCHING
        client = await self.resolver.client_for(store, log)
        extracted: Dict[str, bytes] = {}
        try:
            for ref in spec.data_from:
                payload = await self._fetch(client, ref, result)
                result.phase = ReconcilePhase.EXTRACTING
                extracted = merge_maps(extracted, extract_map(payload, ref.key))

            seen: Set[str] = set()
            for request in spec.data:
                if request.secret_key in seen:
                    log.warning(
                        f"secretKey '{request.secret_key}' is requested more than "
                        "once, the last request wins"
                    )
                seen.add(request.secret_key)

                ref = request.remote_ref
                payload = await self._fetch(client, ref, result)
                result.phase = ReconcilePhase.EXTRACTING
                extracted[request.secret_key] = extract(payload, ref.property, ref.key)
        finally:
            try:
                await client.close()
            except Exception as e:
                log.error(f"Error closing provider client: {e}")

        result.phase = ReconcilePhase.TEMPLATING
        managed = render(extracted, spec.template)

        result.phase = ReconcilePhase.WRITING
        return await self.writer.apply(
            declaration.namespace,
            declaration.target_name,
            managed,
            declaration.name,
            declaration.generation,
            log,
        )

    async def _fetch(
        self, client: ProviderClient, ref: RemoteRef, result: ReconcileResult
    ) -> bytes:
        """Fetch one remote value under the per-call timeout."""
        result.phase = ReconcilePhase.FETCHING
        try:
            return await asyncio.wait_for(
                client.fetch(ref.key, ref.version, ref.property),
                timeout=self.config.fetch_timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(
                f"fetching '{ref.key}' did not finish within "
                f"{self.config.fetch_timeout}s"
            )

    async def _handle_failure(
        self,
        row: Dict[str, Any],
        error: BaseException,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> ReconcileResult:
        """Record a failed attempt and decide when to try again."""
        namespace, name = row["namespace"], row["name"]
        generation = row.get("generation")
        kind = error_kind(error)
        detail = getattr(error, "message", None) or str(error)

        result.success = False
        result.failed_phase = result.phase
        result.phase = ReconcilePhase.FAILED
        result.error_kind = kind
        result.error = error
        result.message = f"{kind}: {detail}"

        if is_transient(error):
            retry_count = row.get("retry_count", 0) or 0
            result.requeue_after = self._compute_backoff(retry_count)
            status = ResourceStatus.RETRYING
            log.warning(
                f"Reconcile failed during {result.failed_phase.value} "
                f"({result.message}), retrying in {result.requeue_after:.0f}s"
            )
        else:
            result.requeue_after = self.config.store_error_delay
            status = ResourceStatus.FAILED
            log.error(
                f"Reconcile failed during {result.failed_phase.value} "
                f"({result.message}), retrying in {result.requeue_after:.0f}s"
            )

        # The requeue above still applies when the status cannot be stored
        try:
            await self.db.update_external_secret_status(
                namespace,
                name,
                status,
                message=result.message,
                observed_generation=generation,
                next_reconcile_after=result.requeue_after,
            )
            for condition_type in (CONDITION_READY, CONDITION_SECRET_SYNCED):
                await self.db.set_condition(
                    namespace,
                    name,
                    condition_type,
                    "False",
                    kind,
                    detail,
                    generation,
                )
        except Exception as e:
            log.error(f"Could not record failure status: {e}", exc_info=True)

        await self._publish(
            EventType.SYNC_FAILED,
            namespace,
            name,
            {
                "generation": generation,
                "reason": kind,
                "message": detail,
                "transient": is_transient(error),
            },
        )
        return result

    async def _handle_abandoned(
        self,
        declaration: ExternalSecret,
        error: ReconcileAbandoned,
        result: ReconcileResult,
        log: logging.LoggerAdapter,
    ) -> ReconcileResult:
        """Drop a superseded attempt without touching status."""
        log.info(f"Abandoned reconcile: {error.message}")
        result.abandoned = True
        try:
            current = await self.db.get_external_secret(
                declaration.namespace, declaration.name
            )
        except Exception as e:
            log.error(f"Could not reload external secret: {e}", exc_info=True)
            result.requeue_after = self._compute_backoff(0)
            return result
        if current is None:
            result.skipped = True
        else:
            result.requeue_after = 0
        return result

    async def _publish(
        self,
        event_type: EventType,
        namespace: str,
        name: str,
        data: Dict[str, Any],
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            ResourceEvent(
                event_type=event_type,
                kind=KIND_EXTERNAL_SECRET,
                namespace=namespace,
                name=name,
                data=data,
            )
        )
