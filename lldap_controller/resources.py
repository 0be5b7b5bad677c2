"""
Custom resources managed by the controller.

ServiceUser (namespaced, short name `lsu`) declares a directory service account,
Group (cluster-scoped, short name `lg`) declares a directory group. This
module holds their Python models, the CRD manifests served to the API server,
and the `lldap-crdgen` entry point that prints those manifests.
"""

import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Set

import yaml

from lldap_controller.config import Config
from lldap_controller.errors import ValidationError

API_GROUP = "lldap.huizinga.dev"
API_VERSION = "v1"

SERVICE_USER_KIND = "ServiceUser"
SERVICE_USER_PLURAL = "serviceusers"
GROUP_KIND = "Group"
GROUP_PLURAL = "groups"

SECRET_SUFFIX = "-lldap-credentials"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "lldap-controller"

# Characters LLDAP accepts in user ids
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]*$")
MAX_USERNAME_LENGTH = 255

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as written by the API server or by hand

    Fractional seconds of any precision and numeric offsets are accepted;
    the result is always in UTC.
    """
    if not value:
        return None
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    # fromisoformat wants exactly six fractional digits before Python 3.11
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"'{value}' is not an RFC 3339 timestamp") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class ObjectKey(NamedTuple):
    """Identity of a watched resource; what the work queue deduplicates on"""
    kind: str
    namespace: Optional[str]
    name: str

    def __str__(self):
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class ObjectMeta:
    name: str
    namespace: Optional[str] = None
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        return cls(
            name=data["name"],
            namespace=data.get("namespace"),
            uid=data.get("uid"),
            resource_version=data.get("resourceVersion"),
            generation=data.get("generation"),
            finalizers=list(data.get("finalizers") or []),
            deletion_timestamp=data.get("deletionTimestamp"),
        )


@dataclass
class ServiceUserSpec:
    """Desired state of a service user"""
    password_manager: bool = False
    additional_groups: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ServiceUserSpec":
        data = data or {}
        password_manager = data.get("passwordManager", False)
        groups = data.get("additionalGroups") or []

        if not isinstance(password_manager, bool):
            raise ValidationError("spec.passwordManager must be a boolean")
        if not isinstance(groups, list) or not all(isinstance(g, str) and g.strip() for g in groups):
            raise ValidationError("spec.additionalGroups must be a list of non-empty group names")

        return cls(password_manager=password_manager, additional_groups=groups)

    @property
    def groups(self) -> Set[str]:
        return set(self.additional_groups)

    @property
    def baseline_groups(self) -> Set[str]:
        if self.password_manager:
            return {Config.PASSWORD_MANAGER_GROUP}
        return {Config.STRICT_READONLY_GROUP}


@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data["status"],
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime"),
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }


@dataclass
class ServiceUserStatus:
    """Observed state, written only by the controller"""
    secret_created: Optional[datetime] = None
    managed_groups: List[str] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    observed_generation: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ServiceUserStatus":
        data = data or {}
        return cls(
            secret_created=parse_timestamp(data.get("secretCreated")),
            managed_groups=list(data.get("managedGroups") or []),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            observed_generation=data.get("observedGeneration"),
        )

    def to_dict(self) -> dict:
        return {
            "secretCreated": format_timestamp(self.secret_created),
            "managedGroups": sorted(set(self.managed_groups)),
            "conditions": [c.to_dict() for c in self.conditions],
            "observedGeneration": self.observed_generation,
        }

    def set_condition(self, condition: Condition):
        """Replace the condition of the same type, keeping its transition time if the status is unchanged"""
        for i, existing in enumerate(self.conditions):
            if existing.type == condition.type:
                if existing.status == condition.status:
                    condition.last_transition_time = existing.last_transition_time
                self.conditions[i] = condition
                break
        else:
            self.conditions.append(condition)
        if condition.last_transition_time is None:
            condition.last_transition_time = format_timestamp(utcnow())

    def get_condition(self, type_: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == type_:
                return condition
        return None


class _Resource:
    kind = ""
    plural = ""
    namespaced = True

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.namespace

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.metadata.namespace, self.metadata.name)

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def object_reference(self) -> dict:
        ref = {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
        }
        if self.metadata.namespace:
            ref["namespace"] = self.metadata.namespace
        return ref


@dataclass
class ServiceUser(_Resource):
    metadata: ObjectMeta
    spec: ServiceUserSpec = field(default_factory=ServiceUserSpec)
    status: ServiceUserStatus = field(default_factory=ServiceUserStatus)
    _invalid: Optional[ValidationError] = field(default=None, repr=False, compare=False)

    kind = SERVICE_USER_KIND
    plural = SERVICE_USER_PLURAL

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ServiceUser":
        """
        Build a ServiceUser from the API server's representation

        A malformed spec does not fail here; it surfaces from validate() so
        that the reconciler can still run the finalizer protocol.
        """
        try:
            spec = ServiceUserSpec.from_dict(obj.get("spec"))
            invalid = None
        except ValidationError as e:
            spec = ServiceUserSpec()
            invalid = e
        return cls(
            metadata=ObjectMeta.from_dict(obj["metadata"]),
            spec=spec,
            status=ServiceUserStatus.from_dict(obj.get("status")),
            _invalid=invalid,
        )

    def __post_init__(self):
        self._persisted_status = self.status.to_dict()

    def status_changed(self) -> bool:
        """True if the in-memory status differs from what was last read or written"""
        return self.status.to_dict() != self._persisted_status

    def mark_status_persisted(self):
        self._persisted_status = self.status.to_dict()

    @property
    def username(self) -> str:
        return f"{self.metadata.name}.{self.metadata.namespace}"

    @property
    def secret_name(self) -> str:
        return f"{self.metadata.name}{SECRET_SUFFIX}"

    def validate(self):
        """Raise ValidationError if the resource cannot be reconciled as written"""
        if self._invalid is not None:
            raise self._invalid
        username = self.username
        if len(username) > MAX_USERNAME_LENGTH or not USERNAME_PATTERN.match(username):
            raise ValidationError(f"'{username}' is not a valid directory user id")

    def owner_reference(self) -> dict:
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


@dataclass
class Group(_Resource):
    metadata: ObjectMeta

    kind = GROUP_KIND
    plural = GROUP_PLURAL
    namespaced = False

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Group":
        return cls(metadata=ObjectMeta.from_dict(obj["metadata"]))


# ============================================================================
# CRD MANIFESTS
# ============================================================================

def service_user_crd() -> dict:
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{SERVICE_USER_PLURAL}.{API_GROUP}"},
        "spec": {
            "group": API_GROUP,
            "names": {
                "kind": SERVICE_USER_KIND,
                "plural": SERVICE_USER_PLURAL,
                "singular": "serviceuser",
                "shortNames": ["lsu"],
                "categories": [],
            },
            "scope": "Namespaced",
            "versions": [{
                "name": API_VERSION,
                "served": True,
                "storage": True,
                "additionalPrinterColumns": [
                    {
                        "name": "Manager",
                        "type": "boolean",
                        "description": "Can the service user manage passwords",
                        "jsonPath": ".spec.passwordManager",
                    },
                    {
                        "name": "Password",
                        "type": "date",
                        "description": "Secret creation timestamp",
                        "jsonPath": ".status.secretCreated",
                    },
                    {
                        "name": "Age",
                        "type": "date",
                        "jsonPath": ".metadata.creationTimestamp",
                    },
                ],
                "schema": {
                    "openAPIV3Schema": {
                        "title": SERVICE_USER_KIND,
                        "description": "Custom resource for managing Service Users inside of LLDAP",
                        "type": "object",
                        "required": ["spec"],
                        "properties": {
                            "spec": {
                                "type": "object",
                                "properties": {
                                    "additionalGroups": {
                                        "type": "array",
                                        "default": [],
                                        "items": {"type": "string"},
                                    },
                                    "passwordManager": {
                                        "type": "boolean",
                                        "default": False,
                                    },
                                },
                            },
                            "status": {
                                "type": "object",
                                "nullable": True,
                                "properties": {
                                    "secretCreated": {
                                        "type": "string",
                                        "format": "date-time",
                                        "nullable": True,
                                    },
                                    "managedGroups": {
                                        "type": "array",
                                        "items": {"type": "string"},
                                    },
                                    "observedGeneration": {
                                        "type": "integer",
                                        "format": "int64",
                                        "nullable": True,
                                    },
                                    "conditions": {
                                        "type": "array",
                                        "items": {
                                            "type": "object",
                                            "required": ["type", "status"],
                                            "properties": {
                                                "type": {"type": "string"},
                                                "status": {"type": "string"},
                                                "reason": {"type": "string"},
                                                "message": {"type": "string"},
                                                "lastTransitionTime": {
                                                    "type": "string",
                                                    "format": "date-time",
                                                    "nullable": True,
                                                },
                                            },
                                        },
                                    },
                                },
                            },
                        },
                    },
                },
                "subresources": {"status": {}},
            }],
        },
    }


def group_crd() -> dict:
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{GROUP_PLURAL}.{API_GROUP}"},
        "spec": {
            "group": API_GROUP,
            "names": {
                "kind": GROUP_KIND,
                "plural": GROUP_PLURAL,
                "singular": "group",
                "shortNames": ["lg"],
                "categories": [],
            },
            "scope": "Cluster",
            "versions": [{
                "name": API_VERSION,
                "served": True,
                "storage": True,
                "schema": {
                    "openAPIV3Schema": {
                        "title": GROUP_KIND,
                        "description": "Custom resource for managing Groups inside of LLDAP",
                        "type": "object",
                        "required": ["spec"],
                        "properties": {
                            "spec": {"type": "object"},
                        },
                    },
                },
                "subresources": {},
            }],
        },
    }


def main():
    """Print the CRD manifests as a multi-document YAML stream"""
    yaml.safe_dump_all([service_user_crd(), group_crd()], sys.stdout, sort_keys=False)


if __name__ == "__main__":
    main()
