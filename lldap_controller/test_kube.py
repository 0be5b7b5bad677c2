"""Tests for the Kubernetes client wrapper and the credential Secret manager."""

import base64
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from lldap_controller.credentials import SecretManager, SecretResult
from lldap_controller.errors import (
    ConflictError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)
from lldap_controller.kube import KubernetesClient, translate_api_exception
from lldap_controller.resources import Group, ObjectKey, ServiceUser

KEY = ObjectKey("ServiceUser", "default", "app")


def make_kube():
    kube = KubernetesClient("lldap.huizinga.dev", load_config=False)
    kube.core = MagicMock()
    kube.custom = MagicMock()
    return kube


def make_user(finalizers=None):
    return ServiceUser.from_dict({
        "metadata": {
            "name": "app",
            "namespace": "default",
            "uid": "uid-1",
            "resourceVersion": "10",
            "generation": 1,
            "finalizers": finalizers or [],
        },
        "spec": {"passwordManager": True},
    })


def make_secret(owner_uid="uid-1", password="s3cret"):
    owners = None
    if owner_uid:
        owners = [client.V1OwnerReference(
            api_version="lldap.huizinga.dev/v1", kind="ServiceUser", name="app", uid=owner_uid,
        )]
    data = {"username": base64.b64encode(b"app.default").decode()}
    if password:
        data["password"] = base64.b64encode(password.encode()).decode()
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name="app-lldap-credentials",
            namespace="default",
            owner_references=owners,
            creation_timestamp=datetime(2026, 2, 1, tzinfo=timezone.utc),
        ),
        data=data,
    )


# ============================================================================
# KUBERNETES CLIENT
# ============================================================================

@pytest.mark.parametrize("status,error", [
    (409, ConflictError),
    (404, NotFoundError),
    (401, UnauthorizedError),
    (403, UnauthorizedError),
    (500, TransientError),
    (429, TransientError),
])
def test_translate_api_exception(status, error):
    assert isinstance(translate_api_exception(ApiException(status=status), "get"), error)


def test_get_missing_resource_returns_none():
    kube = make_kube()
    kube.custom.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

    assert kube.get(ServiceUser, KEY) is None


def test_get_cluster_scoped_resource():
    kube = make_kube()
    kube.custom.get_cluster_custom_object.return_value = {"metadata": {"name": "platform"}}

    group = kube.get(Group, ObjectKey("Group", None, "platform"))

    assert group.name == "platform"
    assert kube.custom.get_cluster_custom_object.call_args.args[:4] == (
        "lldap.huizinga.dev", "v1", "groups", "platform"
    )


def test_add_finalizer_guards_with_resource_version():
    kube = make_kube()
    kube.custom.patch_namespaced_custom_object.return_value = {"metadata": {"resourceVersion": "11"}}
    user = make_user()

    kube.add_finalizer(user)

    body = kube.custom.patch_namespaced_custom_object.call_args.args[5]
    assert body == {"metadata": {"finalizers": ["lldap.huizinga.dev"], "resourceVersion": "10"}}
    assert user.metadata.resource_version == "11"
    assert user.has_finalizer("lldap.huizinga.dev")

    kube.add_finalizer(user)
    assert kube.custom.patch_namespaced_custom_object.call_count == 1


def test_remove_finalizer_keeps_others():
    kube = make_kube()
    kube.custom.patch_namespaced_custom_object.return_value = {"metadata": {"resourceVersion": "11"}}
    user = make_user(finalizers=["other.io/cleanup", "lldap.huizinga.dev"])

    kube.remove_finalizer(user)

    body = kube.custom.patch_namespaced_custom_object.call_args.args[5]
    assert body["metadata"]["finalizers"] == ["other.io/cleanup"]


def test_patch_status_conflict():
    kube = make_kube()
    kube.custom.patch_namespaced_custom_object_status.side_effect = ApiException(status=409, reason="Conflict")
    user = make_user()
    user.status.managed_groups = ["eng"]

    with pytest.raises(ConflictError):
        kube.patch_status(user)
    assert user.status_changed(), "Failed write leaves the status dirty"


def test_patch_status_marks_persisted():
    kube = make_kube()
    kube.custom.patch_namespaced_custom_object_status.return_value = {"metadata": {"resourceVersion": "12"}}
    user = make_user()
    user.status.managed_groups = ["eng"]

    kube.patch_status(user)

    body = kube.custom.patch_namespaced_custom_object_status.call_args.args[5]
    assert body["metadata"] == {"resourceVersion": "10"}
    assert body["status"]["managedGroups"] == ["eng"]
    assert user.metadata.resource_version == "12"
    assert not user.status_changed()


def test_record_event_failure_is_not_fatal():
    kube = make_kube()
    kube.core.create_namespaced_event.side_effect = ApiException(status=500)

    kube.record_event(make_user(), "UserCreated", "Created user 'app.default'")

    event = kube.core.create_namespaced_event.call_args.args[1]
    assert event.involved_object.uid == "uid-1"
    assert event.reason == "UserCreated"


def test_cluster_scoped_events_go_to_default_namespace():
    kube = make_kube()
    group = Group.from_dict({"metadata": {"name": "platform", "uid": "uid-g"}})

    kube.record_event(group, "GroupCreated", "Created group 'platform'")

    assert kube.core.create_namespaced_event.call_args.args[0] == "default"


# ============================================================================
# SECRET MANAGER
# ============================================================================

def test_read_credential_secret():
    kube = make_kube()
    kube.core.read_namespaced_secret.return_value = make_secret()

    credential = SecretManager(kube).read_credential_secret(make_user())

    assert credential.username == "app.default"
    assert credential.password == "s3cret"
    assert credential.created == datetime(2026, 2, 1, tzinfo=timezone.utc)


def test_read_missing_credential_secret():
    kube = make_kube()
    kube.core.read_namespaced_secret.side_effect = ApiException(status=404)

    assert SecretManager(kube).read_credential_secret(make_user()) is None


def test_foreign_or_empty_secret_rejected():
    kube = make_kube()
    manager = SecretManager(kube)

    kube.core.read_namespaced_secret.return_value = make_secret(owner_uid=None)
    with pytest.raises(ValidationError):
        manager.read_credential_secret(make_user())

    kube.core.read_namespaced_secret.return_value = make_secret(password=None)
    with pytest.raises(ValidationError):
        manager.read_credential_secret(make_user())


def test_ensure_credential_secret_creates_owned_secret():
    kube = make_kube()

    result = SecretManager(kube).ensure_credential_secret(make_user(), "app.default", "s3cret")

    assert result is SecretResult.CREATED
    namespace, body = kube.core.create_namespaced_secret.call_args.args
    assert namespace == "default"
    assert body.metadata.name == "app-lldap-credentials"
    assert body.metadata.labels == {"app.kubernetes.io/managed-by": "lldap-controller"}
    assert body.metadata.owner_references[0].uid == "uid-1"
    assert body.metadata.owner_references[0].controller is True
    assert body.string_data == {"username": "app.default", "password": "s3cret"}


def test_ensure_credential_secret_never_overwrites():
    kube = make_kube()
    kube.core.create_namespaced_secret.side_effect = ApiException(status=409, reason="AlreadyExists")

    result = SecretManager(kube).ensure_credential_secret(make_user(), "app.default", "s3cret")

    assert result is SecretResult.ALREADY_EXISTS
    kube.core.replace_namespaced_secret.assert_not_called()
    kube.core.patch_namespaced_secret.assert_not_called()
