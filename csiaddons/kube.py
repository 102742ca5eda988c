"""In-memory model of the cluster objects, API client and sidecar connections."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping

log = logging.getLogger(__name__)

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CLAIM_BOUND = "Bound"


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""


class NoMatchError(LookupError):
    """Raised when a kind of object is not known to the cluster."""


@dataclass(frozen=True)
class NamespacedName:
    """Name and namespace that identify an object."""

    name: str
    namespace: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerReference:
    """Reference from an object to the object that owns it."""

    api_version: str
    kind: str
    name: str
    controller: bool = False


@dataclass
class ObjectMeta:
    """Metadata shared by every stored object."""

    name: str = ""
    namespace: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    generation: int = 0
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(self.name, self.namespace)

    def is_deleting(self) -> bool:
        """Whether deletion of the object has been requested."""
        return self.deletion_timestamp is not None


@dataclass
class Condition:
    """A status condition of an object."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: datetime | None = None


@dataclass(frozen=True)
class Result:
    """Outcome of a reconcile pass."""

    requeue: bool = False
    requeue_after: timedelta | None = None


@dataclass
class Pod:
    meta: ObjectMeta
    pod_ip: str = ""


@dataclass
class PersistentVolumeClaim:
    meta: ObjectMeta
    volume_name: str = ""
    phase: str = ""


@dataclass
class PersistentVolume:
    """A volume; ``csi_driver`` is None when it is not a CSI volume."""

    meta: ObjectMeta
    csi_driver: str | None = None
    volume_handle: str = ""

    @property
    def is_csi(self) -> bool:
        return self.csi_driver is not None


@dataclass
class Namespace:
    meta: ObjectMeta


@dataclass
class VolumeAttachment:
    meta: ObjectMeta
    node_name: str = ""
    persistent_volume_name: str = ""
    attached: bool = False


@dataclass(frozen=True)
class Capability:
    """One capability a driver advertises; unset fields are not offered."""

    reclaim_space: str | None = None
    network_fence: str | None = None
    volume_replication: str | None = None


@dataclass
class Connection:
    """An established connection to a driver sidecar."""

    client: Any
    driver_name: str
    node_id: str = ""
    capabilities: list[Capability] = field(default_factory=list)


class ConnectionPool:
    """Thread-safe registry of sidecar connections by key."""

    def __init__(self) -> None:
        self._conns: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def put(self, key: str, conn: Connection) -> None:
        with self._lock:
            self._conns[key] = conn

    def delete(self, key: str) -> None:
        with self._lock:
            self._conns.pop(key, None)

    def get_by_node_id(self, driver_name: str, node_id: str) -> dict[str, Connection]:
        """Connections of a driver; an empty node id matches every node."""
        with self._lock:
            return {
                key: conn
                for key, conn in self._conns.items()
                if conn.driver_name == driver_name and (not node_id or conn.node_id == node_id)
            }

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._conns

    def __getitem__(self, key: str) -> Connection:
        with self._lock:
            return self._conns[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._conns)


Extractor = Callable[[Any], "list[str] | None"]


class Client:
    """An in-memory object store with the semantics of the cluster API."""

    def __init__(self, *objects: Any, known_kinds: Iterable[type] | None = None) -> None:
        self._objects: dict[tuple[type, str, str], Any] = {}
        self._indexes: dict[tuple[type, str], Extractor] = {}
        self._known_kinds = frozenset(known_kinds) if known_kinds is not None else None
        self._lock = threading.RLock()
        self.add(*objects)

    def _check_kind(self, kind: type) -> None:
        if self._known_kinds is not None and kind not in self._known_kinds:
            raise NoMatchError(f"no matches for kind {kind.__name__!r}")

    @staticmethod
    def _key_of(obj: Any) -> tuple[type, str, str]:
        return type(obj), obj.meta.namespace, obj.meta.name

    def add(self, *args: Any) -> None:
        """Seed the store with objects, replacing any of the same key."""
        with self._lock:
            for obj in args:
                self._objects[self._key_of(obj)] = copy.deepcopy(obj)

    def register_index(self, kind: type, field: str, extractor: Extractor) -> None:
        self._indexes[(kind, field)] = extractor

    def get(self, kind: type, key: NamespacedName) -> Any:
        self._check_kind(kind)
        with self._lock:
            try:
                return copy.deepcopy(self._objects[(kind, key.namespace, key.name)])
            except KeyError:
                raise NotFoundError(f'{kind.__name__} "{key.name}" not found') from None

    def list(
        self,
        kind: type,
        namespace: str | None = None,
        matching: Mapping[str, str] | None = None,
    ) -> list[Any]:
        self._check_kind(kind)
        extractors = []
        for index_field, value in (matching or {}).items():
            try:
                extractors.append((self._indexes[(kind, index_field)], value))
            except KeyError:
                raise ValueError(f"index {index_field!r} is not registered for {kind.__name__}") from None
        with self._lock:
            found = [
                obj
                for (obj_kind, obj_ns, _), obj in sorted(
                    self._objects.items(), key=lambda item: (item[0][1], item[0][2])
                )
                if obj_kind is kind and (namespace is None or obj_ns == namespace)
            ]
        result = []
        for obj in found:
            if all(value in (extract(obj) or []) for extract, value in extractors):
                result.append(copy.deepcopy(obj))
        return result

    def create(self, obj: Any) -> None:
        self._check_kind(type(obj))
        with self._lock:
            key = self._key_of(obj)
            if key in self._objects:
                raise ValueError(f'{type(obj).__name__} "{obj.meta.name}" already exists')
            if obj.meta.creation_timestamp is None:
                obj.meta.creation_timestamp = datetime.now(timezone.utc)
            if obj.meta.generation == 0:
                obj.meta.generation = 1
            self._objects[key] = copy.deepcopy(obj)

    def _require(self, obj: Any) -> tuple[type, str, str]:
        self._check_kind(type(obj))
        key = self._key_of(obj)
        if key not in self._objects:
            raise NotFoundError(f'{type(obj).__name__} "{obj.meta.name}" not found')
        return key

    def update(self, obj: Any) -> None:
        """Store the object; a deleting object without finalizers is removed."""
        with self._lock:
            key = self._require(obj)
            if obj.meta.is_deleting() and not obj.meta.finalizers:
                del self._objects[key]
            else:
                self._objects[key] = copy.deepcopy(obj)

    def update_status(self, obj: Any) -> None:
        with self._lock:
            key = self._require(obj)
            self._objects[key] = copy.deepcopy(obj)

    def delete(self, obj: Any) -> None:
        """Remove the object, or mark it deleting while finalizers remain."""
        with self._lock:
            key = self._require(obj)
            stored = self._objects[key]
            if stored.meta.finalizers:
                if stored.meta.deletion_timestamp is None:
                    stored.meta.deletion_timestamp = datetime.now(timezone.utc)
                obj.meta.deletion_timestamp = stored.meta.deletion_timestamp
            else:
                del self._objects[key]

    def patch_annotations(self, obj: Any, annotations: Mapping[str, str | None]) -> None:
        """Merge annotations; a value of None removes the key."""
        with self._lock:
            key = self._require(obj)
            stored = self._objects[key]
            for name, value in annotations.items():
                if value is None:
                    stored.meta.annotations.pop(name, None)
                else:
                    stored.meta.annotations[name] = value
            obj.meta.annotations = dict(stored.meta.annotations)


def get_controller_of(meta: ObjectMeta) -> OwnerReference | None:
    """The owner reference marked as controller, if any."""
    return next((ref for ref in meta.owner_references if ref.controller), None)


def _describe(obj: Any) -> str:
    return f"{type(obj).__name__} resource ({obj.meta.namespace}/{obj.meta.name})"


def add_finalizer(client: Client, obj: Any, finalizer: str) -> bool:
    """Add the finalizer if missing and store the object; return whether it changed."""
    if finalizer in obj.meta.finalizers:
        return False
    log.info("adding finalizer %s to %s", finalizer, _describe(obj))
    obj.meta.finalizers.append(finalizer)
    try:
        client.update(obj)
    except NotFoundError as err:
        raise NotFoundError(f"failed to add finalizer ({finalizer}) to {_describe(obj)}: {err}") from err
    return True


def remove_finalizer(client: Client, obj: Any, finalizer: str) -> bool:
    """Remove the finalizer if present and store the object; return whether it changed."""
    if finalizer not in obj.meta.finalizers:
        return False
    log.info("removing finalizer %s from %s", finalizer, _describe(obj))
    obj.meta.finalizers = [f for f in obj.meta.finalizers if f != finalizer]
    try:
        client.update(obj)
    except NotFoundError as err:
        raise NotFoundError(f"failed to remove finalizer ({finalizer}) from {_describe(obj)}: {err}") from err
    return True