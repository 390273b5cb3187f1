"""
Test helpers: an in-memory stand-in for DatabaseManager and fluent
builders for store and external secret declarations.
"""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from db import DatabaseManager, ResourceStatus, WriteOutcome
from events import (
    KIND_CLUSTER_SECRET_STORE,
    KIND_CREDENTIAL_RECORD,
    KIND_EXTERNAL_SECRET,
    KIND_SECRET_STORE,
    EventBus,
    EventType,
    ResourceEvent,
)
from plugins.providers.memory import MemoryBackend
from plugins.registry import PluginRegistry
from utils import random_object_safe_string


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeDatabase:
    """
    In-memory implementation of the DatabaseManager methods the controller
    uses, with the same write guards and status bookkeeping.

    ``conflicts_to_inject`` makes the next N target writes report a
    conflict. ``before_write`` is awaited before each guarded write and can
    change state to simulate a concurrent writer. Like DatabaseManager,
    mutations publish change events once an event bus is set.
    """

    def __init__(self):
        self.stores: Dict[Tuple[Optional[str], str], Dict[str, Any]] = {}
        self.credentials: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.external_secrets: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.targets: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.write_count = 0
        self.write_attempts = 0
        self.conflicts_to_inject = 0
        self.before_write: Optional[Callable[[], Awaitable[None]]] = None
        self.status_history: List[Tuple[str, str, ResourceStatus]] = []
        self.healthy = True
        self._event_bus: Optional[EventBus] = None

    def set_event_bus(self, event_bus: Optional[EventBus]) -> None:
        self._event_bus = event_bus

    async def _publish(self, event_type, kind, namespace, name, data=None):
        if self._event_bus is None:
            return
        if kind == KIND_EXTERNAL_SECRET:
            event = ResourceEvent.for_external_secret(event_type, data)
        else:
            event = ResourceEvent(
                event_type=event_type,
                kind=kind,
                namespace=namespace,
                name=name,
                data=data or {},
            )
        await self._event_bus.publish(event)

    async def ping(self) -> bool:
        return self.healthy

    # Secret stores

    async def upsert_secret_store(
        self, name: str, namespace: Optional[str], spec: Dict[str, Any]
    ) -> int:
        existing = self.stores.get((namespace, name))
        generation = 1
        if existing is not None:
            generation = existing["generation"] + (existing["spec"] != spec)
        self.stores[(namespace, name)] = {
            "name": name,
            "namespace": namespace,
            "spec": copy.deepcopy(spec),
            "generation": generation,
        }
        await self._publish(
            EventType.MODIFIED if existing is not None else EventType.CREATED,
            KIND_SECRET_STORE if namespace else KIND_CLUSTER_SECRET_STORE,
            namespace,
            name,
            {"generation": generation},
        )
        return generation

    async def get_secret_store(
        self, namespace: Optional[str], name: str
    ) -> Optional[Dict[str, Any]]:
        row = self.stores.get((namespace, name))
        return copy.deepcopy(row) if row else None

    async def list_secret_stores(
        self, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(row)
            for (ns, _), row in sorted(
                self.stores.items(), key=lambda item: (item[0][0] or "", item[0][1])
            )
            if namespace is None or ns == namespace
        ]

    async def delete_secret_store(self, namespace: Optional[str], name: str) -> bool:
        if self.stores.pop((namespace, name), None) is None:
            return False
        await self._publish(
            EventType.DELETED,
            KIND_SECRET_STORE if namespace else KIND_CLUSTER_SECRET_STORE,
            namespace,
            name,
        )
        return True

    # Credential records

    async def upsert_credential_record(
        self, namespace: str, name: str, data: Dict[str, bytes]
    ) -> None:
        self.credentials[(namespace, name)] = dict(data)
        await self._publish(
            EventType.MODIFIED,
            KIND_CREDENTIAL_RECORD,
            namespace,
            name,
            {"fields": sorted(data)},
        )

    async def get_credential_record(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, bytes]]:
        record = self.credentials.get((namespace, name))
        return dict(record) if record is not None else None

    async def delete_credential_record(self, namespace: str, name: str) -> bool:
        if self.credentials.pop((namespace, name), None) is None:
            return False
        await self._publish(EventType.DELETED, KIND_CREDENTIAL_RECORD, namespace, name)
        return True

    # External secrets

    async def upsert_external_secret(
        self, namespace: str, name: str, spec: Dict[str, Any]
    ) -> int:
        key = (namespace, name)
        existing = self.external_secrets.get(key)
        if existing is None:
            self.external_secrets[key] = {
                "namespace": namespace,
                "name": name,
                "spec": copy.deepcopy(spec),
                "generation": 1,
                "observed_generation": 0,
                "status": ResourceStatus.PENDING.value,
                "status_message": None,
                "conditions": [],
                "refresh_time": None,
                "last_reconcile_time": None,
                "next_reconcile_time": _now(),
                "next_reconcile_after": None,
                "retry_count": 0,
            }
            await self._publish(
                EventType.CREATED,
                KIND_EXTERNAL_SECRET,
                namespace,
                name,
                copy.deepcopy(self.external_secrets[key]),
            )
            return 1

        if existing["spec"] != spec:
            existing["spec"] = copy.deepcopy(spec)
            existing["generation"] += 1
            existing["next_reconcile_time"] = _now()
        await self._publish(
            EventType.MODIFIED,
            KIND_EXTERNAL_SECRET,
            namespace,
            name,
            copy.deepcopy(existing),
        )
        return existing["generation"]

    async def get_external_secret(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        row = self.external_secrets.get((namespace, name))
        return copy.deepcopy(row) if row else None

    async def list_external_secrets(
        self,
        namespace: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        rows = [
            copy.deepcopy(row)
            for _, row in sorted(self.external_secrets.items())
            if (namespace is None or row["namespace"] == namespace)
            and (status is None or row["status"] == status)
        ]
        return rows[:limit]

    async def list_external_secrets_for_store(
        self, store_name: str, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        rows = []
        for _, row in sorted(self.external_secrets.items()):
            ref = row["spec"].get("secretStoreRef", {})
            kind = ref.get("kind", "SecretStore")
            if ref.get("name") != store_name:
                continue
            if namespace is None and kind == "ClusterSecretStore":
                rows.append(copy.deepcopy(row))
            elif row["namespace"] == namespace and kind == "SecretStore":
                rows.append(copy.deepcopy(row))
        return rows

    async def delete_external_secret(self, namespace: str, name: str) -> bool:
        row = self.external_secrets.pop((namespace, name), None)
        if row is None:
            return False
        await self._publish(EventType.DELETED, KIND_EXTERNAL_SECRET, namespace, name, row)
        return True

    async def get_external_secrets_needing_reconciliation(
        self, limit: int = 100
    ) -> List[Dict[str, Any]]:
        now = _now()
        due = [
            copy.deepcopy(row)
            for _, row in sorted(self.external_secrets.items())
            if row["last_reconcile_time"] is None
            or row["generation"] > row["observed_generation"]
            or (
                row["next_reconcile_time"] is not None
                and row["next_reconcile_time"] <= now
            )
        ]
        return due[:limit]

    async def update_external_secret_status(
        self,
        namespace: str,
        name: str,
        status: ResourceStatus,
        message: Optional[str] = None,
        observed_generation: Optional[int] = None,
        next_reconcile_after: Optional[float] = None,
    ):
        row = self.external_secrets.get((namespace, name))
        if row is None:
            return
        self.status_history.append((namespace, name, status))
        row["status"] = status.value
        row["status_message"] = message
        if observed_generation is not None:
            row["observed_generation"] = observed_generation
        if status != ResourceStatus.RECONCILING:
            row["next_reconcile_after"] = next_reconcile_after
            row["next_reconcile_time"] = (
                _now() + timedelta(seconds=next_reconcile_after)
                if next_reconcile_after is not None
                else None
            )
        if status == ResourceStatus.READY:
            row["last_reconcile_time"] = _now()
            row["refresh_time"] = _now()
            row["retry_count"] = 0
        elif status in (ResourceStatus.RETRYING, ResourceStatus.FAILED):
            row["last_reconcile_time"] = _now()
            row["retry_count"] += 1

    async def set_condition(
        self,
        namespace: str,
        name: str,
        condition_type: str,
        status: str,
        reason: str,
        message: str,
        observed_generation: Optional[int] = None,
    ) -> None:
        row = self.external_secrets.get((namespace, name))
        if row is None:
            return
        row["conditions"] = DatabaseManager._merge_condition(
            row["conditions"],
            {
                "type": condition_type,
                "status": status,
                "reason": reason,
                "message": message,
                "observedGeneration": observed_generation,
            },
            _now().isoformat(),
        )

    def condition(self, namespace: str, name: str, condition_type: str):
        for condition in self.external_secrets[(namespace, name)]["conditions"]:
            if condition["type"] == condition_type:
                return condition
        return None

    # Target secrets

    async def get_target_secret(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        row = self.targets.get((namespace, name))
        if row is None:
            return None
        result = dict(row)
        result["data"] = dict(row["data"])
        result["managed_keys"] = list(row["managed_keys"])
        return result

    async def write_target_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        managed_keys: Iterable[str],
        owner: str,
        owner_generation: int,
        resource_version: Optional[int],
    ) -> WriteOutcome:
        self.write_attempts += 1
        if self.before_write is not None:
            await self.before_write()

        declaration = self.external_secrets.get((namespace, owner))
        if declaration is None or declaration["generation"] != owner_generation:
            return WriteOutcome.SUPERSEDED

        if self.conflicts_to_inject > 0:
            self.conflicts_to_inject -= 1
            return WriteOutcome.CONFLICT

        existing = self.targets.get((namespace, name))
        if resource_version is None:
            if existing is not None:
                return WriteOutcome.CONFLICT
            new_version = 1
        else:
            if existing is None or existing["resource_version"] != resource_version:
                return WriteOutcome.CONFLICT
            new_version = resource_version + 1

        self.targets[(namespace, name)] = {
            "namespace": namespace,
            "name": name,
            "data": dict(data),
            "managed_keys": sorted(managed_keys),
            "owner": owner,
            "resource_version": new_version,
        }
        self.write_count += 1
        return WriteOutcome.WRITTEN

    async def delete_target_secret(self, namespace: str, name: str) -> bool:
        return self.targets.pop((namespace, name), None) is not None

    def put_foreign_target(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        owner: Optional[str] = None,
        managed_keys: Iterable[str] = (),
    ) -> None:
        """Place a target record written by someone else."""
        existing = self.targets.get((namespace, name))
        self.targets[(namespace, name)] = {
            "namespace": namespace,
            "name": name,
            "data": dict(data),
            "managed_keys": sorted(managed_keys),
            "owner": owner,
            "resource_version": (existing["resource_version"] + 1) if existing else 1,
        }

    def target_data(self, namespace: str, name: str) -> Optional[Dict[str, bytes]]:
        row = self.targets.get((namespace, name))
        return dict(row["data"]) if row else None


def unique_name(prefix: str) -> str:
    """Object-safe unique name with a readable prefix."""
    return f"{prefix}-{random_object_safe_string(8)}"


async def memory_backend(
    registry: PluginRegistry, name: str = "default"
) -> MemoryBackend:
    """Get (creating if needed) a named backend of the memory provider."""
    plugin = await registry.get_provider_plugin("memory")
    return plugin.backend(name)


class SecretStoreBuilder:
    """Fluent builder for SecretStore declarations."""

    def __init__(
        self, name: str = "memory-store", namespace: Optional[str] = "default"
    ):
        self.name = name
        self.namespace = namespace
        self._spec: Dict[str, Any] = {"provider": {}, "auth": {}}

    def cluster(self) -> "SecretStoreBuilder":
        self.namespace = None
        return self

    def controller(self, controller_class: str) -> "SecretStoreBuilder":
        self._spec["controller"] = controller_class
        return self

    def memory(self, backend: str = "default") -> "SecretStoreBuilder":
        self._spec["provider"]["memory"] = {"backend": backend}
        return self

    def vault(
        self, server: str = "http://vault:8200", path: str = "secret", version: str = "v2"
    ) -> "SecretStoreBuilder":
        self._spec["provider"]["vault"] = {
            "server": server,
            "path": path,
            "version": version,
        }
        return self

    def awssm(self, region: str = "eu-west-1") -> "SecretStoreBuilder":
        self._spec["provider"]["awssm"] = {"region": region}
        return self

    def token(
        self, name: str = "vault-token", key: str = "token", namespace: Optional[str] = None
    ) -> "SecretStoreBuilder":
        self._spec["auth"]["token"] = _ref(name, key, namespace)
        return self

    def cert(
        self,
        name: str = "vault-cert",
        cert_key: str = "client_cert",
        key_key: str = "client_key",
        namespace: Optional[str] = None,
    ) -> "SecretStoreBuilder":
        self._spec["auth"]["cert"] = {
            "clientCertRef": _ref(name, cert_key, namespace),
            "clientKeyRef": _ref(name, key_key, namespace),
        }
        return self

    def app_role(
        self,
        role_id: str,
        name: str = "approle-secret",
        key: str = "approle_secret",
        path: str = "approle",
        namespace: Optional[str] = None,
    ) -> "SecretStoreBuilder":
        self._spec["auth"]["appRole"] = {
            "path": path,
            "roleID": role_id,
            "secretRef": _ref(name, key, namespace),
        }
        return self

    def build(self) -> Dict[str, Any]:
        return copy.deepcopy(self._spec)

    def row(self) -> Dict[str, Any]:
        return {"name": self.name, "namespace": self.namespace, "spec": self.build()}

    async def save(self, db: Any) -> Dict[str, Any]:
        await db.upsert_secret_store(self.name, self.namespace, self.build())
        return self.row()


class ExternalSecretBuilder:
    """Fluent builder for ExternalSecret declarations."""

    def __init__(self, name: str = "app-secret", namespace: str = "default"):
        self.name = name
        self.namespace = namespace
        self._spec: Dict[str, Any] = {
            "secretStoreRef": {"name": "memory-store", "kind": "SecretStore"},
            "data": [],
        }

    def store(self, name: str, kind: str = "SecretStore") -> "ExternalSecretBuilder":
        self._spec["secretStoreRef"] = {"name": name, "kind": kind}
        return self

    def target(self, name: str) -> "ExternalSecretBuilder":
        self._spec["target"] = {"name": name}
        return self

    def refresh(self, interval: Any) -> "ExternalSecretBuilder":
        self._spec["refreshInterval"] = interval
        return self

    def data(
        self,
        secret_key: str,
        key: str,
        property: Optional[str] = None,
        version: Optional[str] = None,
    ) -> "ExternalSecretBuilder":
        remote_ref: Dict[str, Any] = {"key": key}
        if property is not None:
            remote_ref["property"] = property
        if version is not None:
            remote_ref["version"] = version
        self._spec["data"].append({"secretKey": secret_key, "remoteRef": remote_ref})
        return self

    def clear_data(self) -> "ExternalSecretBuilder":
        self._spec["data"] = []
        return self

    def data_from(
        self, key: str, version: Optional[str] = None
    ) -> "ExternalSecretBuilder":
        ref: Dict[str, Any] = {"key": key}
        if version is not None:
            ref["version"] = version
        self._spec.setdefault("dataFrom", []).append(ref)
        return self

    def template(
        self, data: Dict[str, str], merge_policy: str = "Merge"
    ) -> "ExternalSecretBuilder":
        self._spec["template"] = {"data": dict(data), "mergePolicy": merge_policy}
        return self

    def build(self) -> Dict[str, Any]:
        return copy.deepcopy(self._spec)

    def row(self, generation: int = 1) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "generation": generation,
            "spec": self.build(),
        }

    async def save(self, db: Any) -> int:
        return await db.upsert_external_secret(self.namespace, self.name, self.build())


def _ref(name: str, key: str, namespace: Optional[str]) -> Dict[str, Any]:
    ref = {"name": name, "key": key}
    if namespace is not None:
        ref["namespace"] = namespace
    return ref
