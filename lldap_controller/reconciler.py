"""
Reconciliation of ServiceUser and Group resources.

A pass fetches the resource fresh from the API server and walks the
finalizer protocol:

- no finalizer: add it and come back immediately, before touching the directory;
- active: apply the spec to the directory (user, then groups, then credential);
- terminating: remove the directory object, then release the finalizer;
- gone: nothing to do.

Errors abort the pass at the step that raised them and decide how the key is
requeued. A write conflict re-runs the whole pass against a fresh copy.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from lldap_controller.credentials import SecretManager, SecretResult
from lldap_controller.differ import diff_groups
from lldap_controller.directory import DirectoryClient
from lldap_controller.errors import (
    ConflictError,
    ControllerError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from lldap_controller.kube import KubernetesClient
from lldap_controller.password import generate_password
from lldap_controller.resources import Condition, Group, ObjectKey, ServiceUser, utcnow
from lldap_controller.workqueue import ExponentialBackoff

logger = logging.getLogger("lldap-controller.reconciler")

READY = "Ready"


@dataclass(frozen=True)
class Outcome:
    """When, if at all, the key should be reconciled again"""
    requeue_after: Optional[float] = None

    @classmethod
    def requeue(cls, seconds: float) -> "Outcome":
        return cls(requeue_after=seconds)

    @classmethod
    def now(cls) -> "Outcome":
        return cls(requeue_after=0)

    @classmethod
    def await_change(cls) -> "Outcome":
        return cls(requeue_after=None)


@dataclass
class PassStats:
    """Statistics for a reconciliation pass"""
    users_created: int = 0
    users_deleted: int = 0
    groups_added: int = 0
    groups_removed: int = 0
    passwords_set: int = 0
    secrets_created: int = 0
    errors: int = 0
    error_reason: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    @property
    def mutations(self) -> int:
        return (self.users_created + self.users_deleted + self.groups_added
                + self.groups_removed + self.passwords_set + self.secrets_created)


class Reconciler:
    """
    Finalizer protocol and error policy shared by every resource kind

    Subclasses implement apply() and cleanup().
    """

    resource_cls = None

    def __init__(
        self,
        kube: KubernetesClient,
        directory: DirectoryClient,
        backoff: ExponentialBackoff,
        resync_interval: float = 3600,
        unauthorized_requeue: float = 300,
        max_conflict_retries: int = 3,
    ):
        self.kube = kube
        self.directory = directory
        self.backoff = backoff
        self.resync_interval = resync_interval
        self.unauthorized_requeue = unauthorized_requeue
        self.max_conflict_retries = max_conflict_retries

    @property
    def finalizer(self) -> str:
        return self.kube.controller_name

    def reconcile(self, key: ObjectKey):
        """
        Run one reconciliation pass for a resource

        Args:
            key: Identity of the resource

        Returns:
            Tuple of (Outcome, PassStats)
        """
        error = None
        stats = PassStats(start_time=datetime.now())
        for attempt in range(self.max_conflict_retries + 1):
            try:
                outcome = self._run_pass(key, stats)
            except ConflictError as e:
                error = e
                logger.info(f"Write conflict on {key} (attempt {attempt + 1}), re-running pass: {e}")
                continue
            except ControllerError as e:
                error = e
                break
            else:
                stats.end_time = datetime.now()
                self.backoff.forget(key)
                return outcome, stats

        stats.end_time = datetime.now()
        stats.errors += 1
        stats.error_reason = error.reason
        return self._error_outcome(key, error), stats

    def _error_outcome(self, key: ObjectKey, error: ControllerError) -> Outcome:
        if isinstance(error, ValidationError):
            self.backoff.forget(key)
            logger.warning(f"{key} cannot be reconciled until its spec changes: {error}")
            return Outcome.await_change()
        if isinstance(error, UnauthorizedError):
            logger.error(f"Directory refused the controller's credentials while reconciling {key}: {error}")
            return Outcome.requeue(self.unauthorized_requeue)
        delay = self.backoff.next_delay(key)
        logger.warning(f"Reconciling {key} failed ({error.reason}), retrying in {delay}s: {error}")
        return Outcome.requeue(delay)

    def _run_pass(self, key: ObjectKey, stats: PassStats) -> Outcome:
        resource = self.kube.get(self.resource_cls, key)
        if resource is None:
            logger.debug(f"{key} no longer exists")
            self.backoff.forget(key)
            return Outcome.await_change()

        if resource.deleting:
            if not resource.has_finalizer(self.finalizer):
                return Outcome.await_change()
            logger.debug(f"Cleanup {key}")
            self.cleanup(resource, stats)
            self.kube.remove_finalizer(resource)
            return Outcome.await_change()

        if not resource.has_finalizer(self.finalizer):
            self.kube.add_finalizer(resource)
            return Outcome.now()

        logger.debug(f"Apply {key}")
        return self.apply(resource, stats)

    def apply(self, resource, stats: PassStats) -> Outcome:
        raise NotImplementedError

    def cleanup(self, resource, stats: PassStats):
        raise NotImplementedError


# ============================================================================
# SERVICE USERS
# ============================================================================

class ServiceUserReconciler(Reconciler):
    """Drives a ServiceUser's directory account, groups and credential Secret"""

    resource_cls = ServiceUser

    def __init__(
        self,
        kube: KubernetesClient,
        directory: DirectoryClient,
        secrets: SecretManager,
        backoff: ExponentialBackoff,
        prune_groups: bool = False,
        password_generator: Callable[[], str] = generate_password,
        **kwargs,
    ):
        super().__init__(kube, directory, backoff, **kwargs)
        self.secrets = secrets
        self.prune_groups = prune_groups
        self.password_generator = password_generator

    def apply(self, user: ServiceUser, stats: PassStats) -> Outcome:
        step = "validate"
        try:
            user.validate()

            step = "ensure user"
            if self.directory.ensure_user_exists(user.username):
                stats.users_created += 1
                self.kube.record_event(user, "UserCreated", f"Created user '{user.username}'")

            step = "sync groups"
            self._sync_groups(user, stats)

            step = "manage credential"
            self._manage_credential(user, stats)

            step = "update status"
            self._record_success(user)
        except ConflictError:
            raise
        except ControllerError as e:
            logger.error(f"Reconciling {user.key} failed at step '{step}': {e}")
            self._record_failure(user, e)
            raise

        return Outcome.requeue(self.resync_interval)

    def _sync_groups(self, user: ServiceUser, stats: PassStats):
        """
        Bring the user's group memberships in line with the spec

        Groups about to be added are written to the ledger before the
        directory is touched, so a lost status write can never leave an
        edge the controller created unrecorded. An add that failed stays in
        the ledger, since the directory may have applied it; an add that
        found the edge already in place is dropped. Every edge is attempted
        even if an earlier one fails; the first error is raised once the
        ledger is settled.
        """
        username = user.username
        current = set(self.directory.list_group_membership(username))
        persisted = set(user.status.managed_groups)
        diff = diff_groups(
            desired=user.spec.groups,
            baseline=user.spec.baseline_groups,
            current=current,
            managed=persisted if self.prune_groups else frozenset(),
        )

        # Edges that are gone and not about to be recreated are no longer ours
        ledger = (persisted & current) | diff.to_add
        if ledger != persisted:
            user.status.managed_groups = sorted(ledger)
            self.kube.patch_status(user)
        if diff.empty:
            return
        recorded = set(ledger)

        first_error = None
        for group in diff.additions():
            try:
                applied = self.directory.add_to_group(username, group)
            except ControllerError as e:
                logger.warning(f"Could not add {username} to group {group}: {e}")
                first_error = first_error or e
                continue
            if not applied:
                # Someone else created the edge in the meantime
                ledger.discard(group)
                continue
            stats.groups_added += 1

        for group in diff.removals():
            try:
                self.directory.remove_from_group(username, group)
            except ControllerError as e:
                logger.warning(f"Could not remove {username} from group {group}: {e}")
                first_error = first_error or e
                continue
            ledger.discard(group)
            stats.groups_removed += 1

        if ledger != recorded:
            user.status.managed_groups = sorted(ledger)
            self.kube.patch_status(user)

        if first_error is not None:
            raise first_error

    def _manage_credential(self, user: ServiceUser, stats: PassStats):
        if not user.spec.password_manager:
            return

        username = user.username
        existing = self.secrets.read_credential_secret(user)

        if user.status.secret_created is None:
            if existing is not None:
                # An earlier pass created the Secret but never recorded it
                logger.info(f"Adopting existing secret {user.namespace}/{user.secret_name}")
                self.directory.set_password(username, existing.password)
                stats.passwords_set += 1
                user.status.secret_created = existing.created or utcnow()
                self.kube.patch_status(user)
                return

            self._issue_credential(user, stats)
            self.kube.record_event(user, "SecretCreated", f"Created secret '{user.secret_name}'")
            user.status.secret_created = utcnow()
            self.kube.patch_status(user)
            return

        if existing is None:
            logger.warning(f"Secret {user.namespace}/{user.secret_name} is missing, issuing a replacement credential")
            self._issue_credential(user, stats)
            self.kube.record_event(
                user, "SecretRepaired",
                f"Secret '{user.secret_name}' was missing and has been recreated with a new password",
                event_type="Warning",
            )

    def _issue_credential(self, user: ServiceUser, stats: PassStats):
        """Generate a password, set it in the directory, then store it in a new Secret"""
        password = self.password_generator()
        self.directory.set_password(user.username, password)
        stats.passwords_set += 1

        result = self.secrets.ensure_credential_secret(user, user.username, password)
        if result is SecretResult.ALREADY_EXISTS:
            raise ConflictError(f"Secret {user.namespace}/{user.secret_name} was created concurrently")
        stats.secrets_created += 1

    def _record_success(self, user: ServiceUser):
        user.status.set_condition(Condition(type=READY, status="True", reason="Reconciled"))
        user.status.observed_generation = user.metadata.generation
        if user.status_changed():
            self.kube.patch_status(user)

    def _record_failure(self, user: ServiceUser, error: ControllerError):
        user.status.set_condition(
            Condition(type=READY, status="False", reason=error.reason, message=str(error))
        )
        if not user.status_changed():
            return
        try:
            self.kube.patch_status(user)
        except ControllerError as e:
            logger.warning(f"Could not record failure on {user.key}: {e}")

    def cleanup(self, user: ServiceUser, stats: PassStats):
        try:
            user.validate()
        except ValidationError:
            # Never valid, so never created in the directory
            return

        username = user.username
        try:
            self.directory.delete_user(username)
        except NotFoundError:
            logger.warning(f"User '{username}' was already gone from the directory")
            self.kube.record_event(user, "UserNotFound", f"User '{username}' not found", event_type="Warning")
            return
        except ControllerError as e:
            logger.error(f"Cleaning up {user.key} failed at step 'delete user': {e}")
            raise
        stats.users_deleted += 1
        self.kube.record_event(user, "UserDeleted", f"Deleted user '{username}'")


# ============================================================================
# GROUPS
# ============================================================================

class GroupReconciler(Reconciler):
    """Makes sure a directory group exists for every Group resource"""

    resource_cls = Group

    def apply(self, group: Group, stats: PassStats) -> Outcome:
        try:
            if self.directory.ensure_group_exists(group.name):
                self.kube.record_event(group, "GroupCreated", f"Created group '{group.name}'")
        except ControllerError as e:
            logger.error(f"Reconciling {group.key} failed at step 'ensure group': {e}")
            raise
        return Outcome.requeue(self.resync_interval)

    def cleanup(self, group: Group, stats: PassStats):
        try:
            self.directory.delete_group(group.name)
        except NotFoundError:
            logger.debug(f"Group '{group.name}' does not exist")
            return
        except ControllerError as e:
            logger.error(f"Cleaning up {group.key} failed at step 'delete group': {e}")
            raise
        self.kube.record_event(group, "GroupDeleted", f"Deleted group '{group.name}'")
