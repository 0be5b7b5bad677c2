"""
Kubernetes API access for the controller.

Wraps the custom objects API (ServiceUser and Group), Secrets and Events, and
translates ApiException into the controller's error taxonomy. Every write
carries the resourceVersion the caller last read, so a concurrent writer
surfaces as ConflictError instead of being overwritten.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TypeVar

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from lldap_controller.errors import (
    ConflictError,
    ControllerError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
)
from lldap_controller.resources import API_GROUP, API_VERSION, ObjectKey, ServiceUser

logger = logging.getLogger("lldap-controller.kube")

R = TypeVar("R")

EVENT_NAMESPACE_FOR_CLUSTER_OBJECTS = "default"


def translate_api_exception(e: ApiException, action: str) -> ControllerError:
    """Map an API server error onto the controller's error classes"""
    message = f"{action}: HTTP {e.status} {e.reason}"
    if e.status == 409:
        return ConflictError(message)
    if e.status == 404:
        return NotFoundError(message)
    if e.status in (401, 403):
        return UnauthorizedError(message)
    return TransientError(message)


@contextmanager
def api_errors(action: str):
    try:
        yield
    except ApiException as e:
        raise translate_api_exception(e, action) from e
    except urllib3.exceptions.HTTPError as e:
        raise TransientError(f"{action}: {e}") from e


class KubernetesClient:
    """Handles all Kubernetes API interactions"""

    def __init__(self, controller_name: str, timeout: float = 30.0, load_config: bool = True):
        if load_config:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                logger.warning("Failed to load in-cluster config, trying local kubeconfig")
                config.load_kube_config()

        self.controller_name = controller_name
        self.timeout = timeout
        self.core = client.CoreV1Api()
        self.custom = client.CustomObjectsApi()

    # ------------------------------------------------------------------
    # Custom resources
    # ------------------------------------------------------------------

    def get(self, resource_cls: Type[R], key: ObjectKey) -> Optional[R]:
        """
        Fetch a custom resource

        Returns:
            The parsed resource, or None if it no longer exists
        """
        try:
            with api_errors(f"get {key}"):
                if resource_cls.namespaced:
                    obj = self.custom.get_namespaced_custom_object(
                        API_GROUP, API_VERSION, key.namespace, resource_cls.plural, key.name,
                        _request_timeout=self.timeout,
                    )
                else:
                    obj = self.custom.get_cluster_custom_object(
                        API_GROUP, API_VERSION, resource_cls.plural, key.name,
                        _request_timeout=self.timeout,
                    )
        except NotFoundError:
            return None
        return resource_cls.from_dict(obj)

    def list(self, resource_cls, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        with api_errors(f"list {resource_cls.plural}"):
            if namespace and resource_cls.namespaced:
                result = self.custom.list_namespaced_custom_object(
                    API_GROUP, API_VERSION, namespace, resource_cls.plural,
                    _request_timeout=self.timeout,
                )
            else:
                result = self.custom.list_cluster_custom_object(
                    API_GROUP, API_VERSION, resource_cls.plural,
                    _request_timeout=self.timeout,
                )
        return result.get("items", [])

    def _patch(self, resource, body: Dict[str, Any], action: str) -> Dict[str, Any]:
        meta = resource.metadata
        with api_errors(f"{action} {resource.key}"):
            if resource.namespaced:
                return self.custom.patch_namespaced_custom_object(
                    API_GROUP, API_VERSION, meta.namespace, resource.plural, meta.name, body,
                    _request_timeout=self.timeout,
                )
            return self.custom.patch_cluster_custom_object(
                API_GROUP, API_VERSION, resource.plural, meta.name, body,
                _request_timeout=self.timeout,
            )

    def _set_finalizers(self, resource, finalizers: List[str], action: str):
        body = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": resource.metadata.resource_version,
            }
        }
        updated = self._patch(resource, body, action)
        resource.metadata.finalizers = list(finalizers)
        resource.metadata.resource_version = updated["metadata"].get("resourceVersion")

    def add_finalizer(self, resource):
        if resource.has_finalizer(self.controller_name):
            return
        self._set_finalizers(
            resource, resource.metadata.finalizers + [self.controller_name], "add finalizer to"
        )
        logger.debug(f"Added finalizer to {resource.key}")

    def remove_finalizer(self, resource):
        if not resource.has_finalizer(self.controller_name):
            return
        remaining = [f for f in resource.metadata.finalizers if f != self.controller_name]
        self._set_finalizers(resource, remaining, "remove finalizer from")
        logger.debug(f"Removed finalizer from {resource.key}")

    def patch_status(self, user: ServiceUser):
        """Write the user's status through the status subresource, guarded by resourceVersion"""
        meta = user.metadata
        body = {
            "metadata": {"resourceVersion": meta.resource_version},
            "status": user.status.to_dict(),
        }
        with api_errors(f"update status of {user.key}"):
            updated = self.custom.patch_namespaced_custom_object_status(
                API_GROUP, API_VERSION, meta.namespace, user.plural, meta.name, body,
                _request_timeout=self.timeout,
            )
        meta.resource_version = updated["metadata"].get("resourceVersion")
        user.mark_status_persisted()

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def read_secret(self, namespace: str, name: str) -> Optional[client.V1Secret]:
        try:
            with api_errors(f"read secret {namespace}/{name}"):
                return self.core.read_namespaced_secret(
                    name, namespace, _request_timeout=self.timeout
                )
        except NotFoundError:
            return None

    def create_secret(self, namespace: str, body: client.V1Secret) -> client.V1Secret:
        """Create a Secret; raises ConflictError if one with the same name exists"""
        with api_errors(f"create secret {namespace}/{body.metadata.name}"):
            return self.core.create_namespaced_secret(
                namespace, body, _request_timeout=self.timeout
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def record_event(self, resource, reason: str, message: str, event_type: str = "Normal"):
        """Publish an Event about a resource; failures are logged and otherwise ignored"""
        namespace = resource.metadata.namespace or EVENT_NAMESPACE_FOR_CLUSTER_OBJECTS
        ref = resource.object_reference()
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{resource.metadata.name}-"),
            involved_object=client.V1ObjectReference(
                api_version=ref["apiVersion"],
                kind=ref["kind"],
                name=ref["name"],
                namespace=ref.get("namespace"),
                uid=ref["uid"],
            ),
            reason=reason,
            message=message,
            type=event_type,
            action=reason,
            source=client.V1EventSource(component=self.controller_name),
            reporting_component=self.controller_name,
        )
        try:
            with api_errors(f"record event {reason} for {resource.key}"):
                self.core.create_namespaced_event(namespace, event, _request_timeout=self.timeout)
        except ControllerError as e:
            logger.warning(f"Could not publish event: {e}")

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def watch_custom_objects(self, resource_cls, namespace: Optional[str] = None,
                             timeout_seconds: int = 300) -> "WatchStream":
        if namespace and resource_cls.namespaced:
            return WatchStream(
                self.custom.list_namespaced_custom_object,
                API_GROUP, API_VERSION, namespace, resource_cls.plural,
                timeout_seconds=timeout_seconds,
            )
        return WatchStream(
            self.custom.list_cluster_custom_object,
            API_GROUP, API_VERSION, resource_cls.plural,
            timeout_seconds=timeout_seconds,
        )

    def watch_secrets(self, label_selector: str, namespace: Optional[str] = None,
                      timeout_seconds: int = 300) -> "WatchStream":
        if namespace:
            return WatchStream(
                self.core.list_namespaced_secret, namespace,
                label_selector=label_selector, timeout_seconds=timeout_seconds,
            )
        return WatchStream(
            self.core.list_secret_for_all_namespaces,
            label_selector=label_selector, timeout_seconds=timeout_seconds,
        )


class WatchStream:
    """One server-side watch; iterate for events, stop() from another thread"""

    def __init__(self, list_func: Callable, *args, **kwargs):
        self._watch = watch.Watch()
        self._list_func = list_func
        self._args = args
        self._kwargs = kwargs

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self._watch.stream(self._list_func, *self._args, **self._kwargs))

    def stop(self):
        self._watch.stop()
