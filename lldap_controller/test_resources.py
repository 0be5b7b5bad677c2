"""Tests for resource models, group diffing, password generation and CRD output."""

import io
import random
import string
from contextlib import redirect_stdout
from datetime import datetime, timezone

import pytest
import yaml

from lldap_controller import resources
from lldap_controller.differ import diff_groups
from lldap_controller.errors import ValidationError
from lldap_controller.password import generate_password
from lldap_controller.resources import (
    Condition,
    Group,
    ObjectKey,
    ServiceUser,
    ServiceUserSpec,
)


def service_user(spec=None, status=None, name="app", namespace="default"):
    obj = {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "uid-1",
            "resourceVersion": "7",
            "generation": 2,
            "finalizers": ["lldap.huizinga.dev"],
        },
        "spec": spec if spec is not None else {},
    }
    if status is not None:
        obj["status"] = status
    return ServiceUser.from_dict(obj)


# ============================================================================
# MODELS
# ============================================================================

def test_service_user_from_dict():
    user = service_user(
        spec={"passwordManager": True, "additionalGroups": ["eng"]},
        status={"secretCreated": "2026-03-01T12:00:00Z", "managedGroups": ["eng"]},
    )

    assert user.key == ObjectKey("ServiceUser", "default", "app")
    assert user.username == "app.default"
    assert user.secret_name == "app-lldap-credentials"
    assert user.spec.groups == {"eng"}
    assert user.spec.baseline_groups == {"lldap_password_manager"}
    assert user.status.secret_created == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    assert user.has_finalizer("lldap.huizinga.dev")
    assert not user.deleting


def test_defaults_give_strict_readonly_baseline():
    user = service_user()

    assert user.spec.password_manager is False
    assert user.spec.groups == set()
    assert user.spec.baseline_groups == {"lldap_strict_readonly"}
    assert user.status.secret_created is None


@pytest.mark.parametrize("spec", [
    {"additionalGroups": "eng"},
    {"additionalGroups": ["eng", ""]},
    {"additionalGroups": [3]},
    {"passwordManager": "yes"},
])
def test_invalid_spec_deferred_to_validate(spec):
    user = service_user(spec=spec)

    with pytest.raises(ValidationError):
        user.validate()


def test_invalid_username_rejected():
    with pytest.raises(ValidationError):
        service_user(name="app", namespace="name with spaces").validate()

    with pytest.raises(ValidationError):
        ServiceUserSpec.from_dict({"additionalGroups": None, "passwordManager": 1})


def test_status_change_tracking():
    user = service_user(status={"managedGroups": ["eng"]})
    assert not user.status_changed()

    user.status.managed_groups = ["eng"]
    assert not user.status_changed(), "Same content is not a change"

    user.status.managed_groups.append("ops")
    assert user.status_changed()

    user.mark_status_persisted()
    assert not user.status_changed()


def test_condition_transition_time_kept_while_status_unchanged():
    user = service_user(status={"conditions": [{
        "type": "Ready", "status": "True", "reason": "Reconciled",
        "lastTransitionTime": "2026-01-01T00:00:00Z",
    }]})

    user.status.set_condition(Condition(type="Ready", status="True", reason="Reconciled"))
    assert user.status.get_condition("Ready").last_transition_time == "2026-01-01T00:00:00Z"
    assert not user.status_changed()

    user.status.set_condition(Condition(type="Ready", status="False", reason="Transient"))
    assert user.status.get_condition("Ready").last_transition_time != "2026-01-01T00:00:00Z"
    assert len(user.status.conditions) == 1


def test_owner_reference():
    ref = service_user().owner_reference()

    assert ref["apiVersion"] == "lldap.huizinga.dev/v1"
    assert ref["uid"] == "uid-1"
    assert ref["controller"] is True


def test_group_is_cluster_scoped():
    group = Group.from_dict({"metadata": {"name": "platform", "deletionTimestamp": "2026-01-01T00:00:00Z"}})

    assert group.key == ObjectKey("Group", None, "platform")
    assert str(group.key) == "Group/platform"
    assert group.deleting


# ============================================================================
# GROUP DIFF
# ============================================================================

def test_diff_adds_missing_groups():
    diff = diff_groups(desired={"eng", "ops"}, baseline={"lldap_strict_readonly"}, current={"eng"})

    assert diff.additions() == ["lldap_strict_readonly", "ops"]
    assert diff.removals() == []


def test_diff_in_sync_is_empty():
    diff = diff_groups(desired={"eng"}, baseline={"lldap_strict_readonly"},
                       current={"eng", "lldap_strict_readonly", "legacy"})

    assert diff.empty


def test_diff_only_removes_managed_groups():
    diff = diff_groups(
        desired=set(),
        baseline={"lldap_strict_readonly"},
        current={"eng", "legacy", "lldap_strict_readonly"},
        managed={"eng", "lldap_strict_readonly", "ops"},
    )

    assert diff.removals() == ["eng"]
    assert diff.additions() == []


# ============================================================================
# PASSWORDS
# ============================================================================

def test_generated_password_shape():
    for _ in range(50):
        password = generate_password()
        assert len(password) == 32
        assert any(c in string.ascii_lowercase for c in password)
        assert any(c in string.ascii_uppercase for c in password)
        assert any(c in string.digits for c in password)
        assert all(c in string.ascii_letters + string.digits for c in password)


def test_generated_passwords_differ():
    assert len({generate_password() for _ in range(20)}) == 20


def test_password_generation_with_seeded_rng():
    assert generate_password(rng=random.Random(1)) == generate_password(rng=random.Random(1))


def test_short_passwords_refused():
    with pytest.raises(ValueError):
        generate_password(length=8)


# ============================================================================
# CRDS
# ============================================================================

def test_crdgen_prints_both_definitions():
    out = io.StringIO()
    with redirect_stdout(out):
        resources.main()

    docs = list(yaml.safe_load_all(out.getvalue()))
    assert [d["spec"]["names"]["kind"] for d in docs] == ["ServiceUser", "Group"]

    service_user_crd, group_crd = docs
    assert service_user_crd["metadata"]["name"] == "serviceusers.lldap.huizinga.dev"
    assert service_user_crd["spec"]["scope"] == "Namespaced"
    assert service_user_crd["spec"]["versions"][0]["subresources"] == {"status": {}}
    assert group_crd["spec"]["scope"] == "Cluster"
    assert group_crd["spec"]["names"]["shortNames"] == ["lg"]


# ============================================================================
# TIMESTAMPS
# ============================================================================

@pytest.mark.parametrize("value,expected", [
    ("2026-01-01T00:00:00Z", datetime(2026, 1, 1, tzinfo=timezone.utc)),
    ("2026-01-01T00:00:00.5Z", datetime(2026, 1, 1, 0, 0, 0, 500000, tzinfo=timezone.utc)),
    ("2026-01-01T00:00:00.123456789Z", datetime(2026, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)),
    ("2026-01-01T02:00:00+02:00", datetime(2026, 1, 1, tzinfo=timezone.utc)),
    ("2026-01-01T00:00:00+00:00", datetime(2026, 1, 1, tzinfo=timezone.utc)),
])
def test_parse_rfc3339_timestamps(value, expected):
    assert resources.parse_timestamp(value) == expected


def test_unparseable_timestamp_is_validation_error():
    with pytest.raises(ValidationError):
        resources.parse_timestamp("last tuesday")

    with pytest.raises(ValidationError):
        service_user(status={"secretCreated": "2026-13-01T00:00:00Z"})


def test_timestamps_written_in_seconds_precision():
    parsed = resources.parse_timestamp("2026-01-01T02:00:00.75+02:00")

    assert resources.format_timestamp(parsed) == "2026-01-01T00:00:00Z"
