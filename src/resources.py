"""
Resource model - Extension and Cluster resources.

Extensions are the provider-specific units of infrastructure reconciled by the
controllers. Clusters describe the owning managed cluster and are only ever
read by the controllers.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

# Operation annotation (wire contract on the Extension resource)
OPERATION_ANNOTATION = "extensions.operator.io/operation"
OPERATION_RECONCILE = "reconcile"
OPERATION_MIGRATE = "migrate"
OPERATION_RESTORE = "restore"
OPERATION_ANNOTATION_VALUES = (
    OPERATION_RECONCILE,
    OPERATION_MIGRATE,
    OPERATION_RESTORE,
)

FORCE_DELETE_ANNOTATION = "extensions.operator.io/force-delete"

FINALIZER_PREFIX = "extensions.operator.io"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ExtensionClass(str, Enum):
    """Which tier an extension applies to."""

    SHOOT = "shoot"  # the managed cluster
    SEED = "seed"  # the hosting cluster


class OperationType(str, Enum):
    """Operation recorded in an extension's last operation."""

    RECONCILE = "Reconcile"
    DELETE = "Delete"
    MIGRATE = "Migrate"
    RESTORE = "Restore"


class OperationState(str, Enum):
    """State of an extension's last operation."""

    PROCESSING = "Processing"
    SUCCEEDED = "Succeeded"
    ERROR = "Error"
    FAILED = "Failed"


class Request(NamedTuple):
    """Work queue key identifying an Extension."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class LastOperation:
    type: OperationType
    state: OperationState
    description: str = ""
    last_update_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "state": self.state.value,
            "description": self.description,
            "lastUpdateTime": _format_time(self.last_update_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastOperation":
        return cls(
            type=OperationType(data["type"]),
            state=OperationState(data["state"]),
            description=data.get("description", ""),
            last_update_time=_parse_time(data.get("lastUpdateTime")),
        )


@dataclass
class LastError:
    description: str
    codes: List[str] = field(default_factory=list)
    last_update_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "codes": list(self.codes),
            "lastUpdateTime": _format_time(self.last_update_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastError":
        return cls(
            description=data.get("description", ""),
            codes=list(data.get("codes") or []),
            last_update_time=_parse_time(data.get("lastUpdateTime")),
        )


@dataclass
class ExtensionStatus:
    """Observable status of an Extension."""

    last_operation: Optional[LastOperation] = None
    last_error: Optional[LastError] = None
    observed_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastOperation": (
                self.last_operation.to_dict() if self.last_operation else None
            ),
            "lastError": self.last_error.to_dict() if self.last_error else None,
            "observedGeneration": self.observed_generation,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExtensionStatus":
        data = data or {}
        last_operation = data.get("lastOperation")
        last_error = data.get("lastError")
        return cls(
            last_operation=(
                LastOperation.from_dict(last_operation) if last_operation else None
            ),
            last_error=LastError.from_dict(last_error) if last_error else None,
            observed_generation=data.get("observedGeneration", 0),
        )


@dataclass
class Extension:
    """
    A declared unit of provider-specific infrastructure attached to a
    managed cluster.

    ``generation`` is bumped by the store whenever ``spec`` changes or deletion
    is requested; ``resource_version`` is bumped on every write and is the
    token for optimistic concurrency.
    """

    namespace: str
    name: str
    type: str
    extension_class: Optional[ExtensionClass] = None
    spec: Dict[str, Any] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    generation: int = 1
    resource_version: int = 0
    status: ExtensionStatus = field(default_factory=ExtensionStatus)

    @property
    def key(self) -> Request:
        return Request(self.namespace, self.name)

    @property
    def operation_annotation(self) -> str:
        """The pending operation annotation value, '' when absent."""
        return self.annotations.get(OPERATION_ANNOTATION, "")

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def is_migrated(self) -> bool:
        """Whether the last operation was a successful migration."""
        last = self.status.last_operation
        return (
            last is not None
            and last.type == OperationType.MIGRATE
            and last.state == OperationState.SUCCEEDED
        )

    def copy(self) -> "Extension":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "type": self.type,
            "class": self.extension_class.value if self.extension_class else None,
            "spec": self.spec,
            "annotations": self.annotations,
            "finalizers": self.finalizers,
            "deletionTimestamp": _format_time(self.deletion_timestamp),
            "generation": self.generation,
            "resourceVersion": self.resource_version,
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Extension":
        extension_class = data.get("class")
        return cls(
            namespace=data["namespace"],
            name=data["name"],
            type=data["type"],
            extension_class=(
                ExtensionClass(extension_class) if extension_class else None
            ),
            spec=dict(data.get("spec") or {}),
            annotations=dict(data.get("annotations") or {}),
            finalizers=list(data.get("finalizers") or []),
            deletion_timestamp=_parse_time(data.get("deletionTimestamp")),
            generation=data.get("generation", 1),
            resource_version=data.get("resourceVersion", 0),
            status=ExtensionStatus.from_dict(data.get("status")),
        )


@dataclass
class Cluster:
    """
    Snapshot of a managed cluster, keyed by the cluster's namespace.

    ``shoot`` and ``seed`` embed the managed cluster's and the hosting
    cluster's own objects as plain dicts (camelCase keys, as served by their
    API). The controllers never write Clusters.
    """

    name: str
    shoot: Dict[str, Any] = field(default_factory=dict)
    seed: Dict[str, Any] = field(default_factory=dict)
    resource_version: int = 0

    def _shoot_last_operation(self) -> Dict[str, Any]:
        return (self.shoot.get("status") or {}).get("lastOperation") or {}

    def is_failed(self) -> bool:
        """
        Whether the managed cluster is in a permanently failed state.

        A failed last operation only counts once the cluster's controller has
        observed the current generation; a newer spec may still recover it.
        """
        last_operation = self._shoot_last_operation()
        if last_operation.get("state") != OperationState.FAILED.value:
            return False
        generation = (self.shoot.get("metadata") or {}).get("generation", 0)
        observed = (self.shoot.get("status") or {}).get("observedGeneration", 0)
        return generation == observed

    def needs_force_deletion(self) -> bool:
        annotations = (self.shoot.get("metadata") or {}).get("annotations") or {}
        return annotations.get(FORCE_DELETE_ANNOTATION, "").lower() == "true"

    def copy(self) -> "Cluster":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "shoot": self.shoot,
            "seed": self.seed,
            "resourceVersion": self.resource_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cluster":
        return cls(
            name=data["name"],
            shoot=dict(data.get("shoot") or {}),
            seed=dict(data.get("seed") or {}),
            resource_version=data.get("resourceVersion", 0),
        )
