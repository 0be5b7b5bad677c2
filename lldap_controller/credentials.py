"""
Credential Secret management.

Each ServiceUser with passwordManager enabled gets one Secret,
`<name>-lldap-credentials`, holding the directory username and password. The
Secret is owned by the ServiceUser so the garbage collector removes it with
its owner. Existing Secrets are never overwritten.
"""

import base64
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from kubernetes import client

from lldap_controller.errors import ConflictError, ValidationError
from lldap_controller.kube import KubernetesClient
from lldap_controller.resources import MANAGED_BY_LABEL, MANAGED_BY_VALUE, ServiceUser

logger = logging.getLogger("lldap-controller.credentials")


class SecretResult(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already-exists"


@dataclass
class CredentialSecret:
    """The parts of a credential Secret the reconciler needs"""
    name: str
    username: Optional[str]
    password: Optional[str]
    owner_uids: frozenset
    created: Optional[datetime] = None

    @classmethod
    def from_secret(cls, secret: client.V1Secret) -> "CredentialSecret":
        data = secret.data or {}
        owners = secret.metadata.owner_references or []
        return cls(
            name=secret.metadata.name,
            username=_decode(data.get("username")),
            password=_decode(data.get("password")),
            owner_uids=frozenset(o.uid for o in owners),
            created=secret.metadata.creation_timestamp,
        )

    def is_owned_by(self, user: ServiceUser) -> bool:
        return user.metadata.uid in self.owner_uids


def _decode(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return base64.b64decode(value).decode()


class SecretManager:
    """Creates and reads the credential Secret belonging to a ServiceUser"""

    def __init__(self, kube: KubernetesClient):
        self.kube = kube

    def read_credential_secret(self, user: ServiceUser) -> Optional[CredentialSecret]:
        """
        Fetch the user's credential Secret

        Returns:
            The Secret's contents, or None if it does not exist

        Raises:
            ValidationError: a Secret with that name exists but belongs to something else
        """
        secret = self.kube.read_secret(user.namespace, user.secret_name)
        if secret is None:
            return None
        credential = CredentialSecret.from_secret(secret)
        if not credential.is_owned_by(user):
            raise ValidationError(
                f"Secret {user.namespace}/{user.secret_name} exists and is not owned by this ServiceUser"
            )
        if not credential.password:
            raise ValidationError(
                f"Secret {user.namespace}/{user.secret_name} has no 'password' field"
            )
        return credential

    def ensure_credential_secret(self, user: ServiceUser, username: str, password: str) -> SecretResult:
        """
        Create the credential Secret unless one already exists

        Args:
            user: Owning ServiceUser
            username: Directory username to store
            password: Password to store (never logged)

        Returns:
            SecretResult.CREATED if this call created the Secret,
            SecretResult.ALREADY_EXISTS if it was already there
        """
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=user.secret_name,
                namespace=user.namespace,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                owner_references=[client.V1OwnerReference(
                    api_version=user.owner_reference()["apiVersion"],
                    kind=user.kind,
                    name=user.name,
                    uid=user.metadata.uid,
                    controller=True,
                    block_owner_deletion=True,
                )],
            ),
            type="Opaque",
            string_data={"username": username, "password": password},
        )
        try:
            self.kube.create_secret(user.namespace, body)
        except ConflictError:
            logger.debug(f"Secret {user.namespace}/{user.secret_name} already exists")
            return SecretResult.ALREADY_EXISTS
        logger.info(f"Created secret: {user.namespace}/{user.secret_name}")
        return SecretResult.CREATED
