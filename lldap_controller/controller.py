"""
LLDAP Service User Controller for Kubernetes

This controller manages LLDAP service accounts based on ServiceUser and Group
custom resources. Each ServiceUser becomes a directory user with the
requested group memberships and, optionally, a generated password stored in
a Secret owned by the resource.

Features:
- Watch-driven reconciliation with periodic resync
- Per-resource serialized work queue with exponential backoff
- Finalizer-gated cleanup of directory users and groups
- At-most-once credential generation
- Structured logging
- Prometheus metrics exposure
"""

import logging
import signal
import sys
import threading
from typing import Callable, Dict, List, Optional

from lldap_controller.config import Config
from lldap_controller.credentials import SecretManager
from lldap_controller.directory import DirectoryClient
from lldap_controller.errors import ControllerError
from lldap_controller.kube import KubernetesClient, WatchStream
from lldap_controller.metrics import Metrics
from lldap_controller.reconciler import (
    GroupReconciler,
    PassStats,
    Reconciler,
    ServiceUserReconciler,
)
from lldap_controller.resources import (
    API_GROUP,
    API_VERSION,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SERVICE_USER_KIND,
    Group,
    ObjectKey,
    ServiceUser,
)
from lldap_controller.workqueue import ExponentialBackoff, WorkQueue

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

logger = logging.getLogger("lldap-controller")

WATCH_RETRY_DELAY = 5


def setup_logging(level: str = "INFO"):
    """Configure structured logging"""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# ============================================================================
# RECONCILIATION CONTROLLER
# ============================================================================

class LldapController:
    """
    Main controller: feeds watch events and resyncs into the work queue and
    runs reconciliation passes on a pool of worker threads
    """

    def __init__(
        self,
        kube: KubernetesClient,
        directory: DirectoryClient,
        reconcilers: Dict[str, Reconciler],
        metrics: Optional[Metrics] = None,
        workers: int = 4,
        namespace: str = "",
        resync_interval: float = 3600,
        watch_timeout: int = 300,
        shutdown_grace: float = 10,
    ):
        self.kube = kube
        self.directory = directory
        self.reconcilers = reconcilers
        self.metrics = metrics or Metrics()
        self.workers = workers
        self.namespace = namespace or None
        self.resync_interval = resync_interval
        self.watch_timeout = watch_timeout
        self.shutdown_grace = shutdown_grace

        self.queue = WorkQueue()
        self.stop_event = threading.Event()
        self._streams: List[WatchStream] = []
        self._streams_lock = threading.Lock()
        self._workers: List[threading.Thread] = []
        self._background: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Event sources
    # ------------------------------------------------------------------

    def enqueue(self, key: ObjectKey):
        if key.kind in self.reconcilers:
            self.queue.add(key)

    def handle_resource_event(self, kind: str, event: dict):
        """Enqueue the resource a custom-object watch event is about"""
        if event.get("type") == "ERROR":
            logger.warning(f"{kind} watch reported an error: {event.get('object')}")
            return
        meta = (event.get("object") or {}).get("metadata") or {}
        if "name" not in meta:
            return
        logger.debug(f"{kind} event: {event.get('type')} - {meta['name']}")
        self.enqueue(ObjectKey(kind, meta.get("namespace"), meta["name"]))

    def handle_secret_event(self, event: dict):
        """Enqueue the ServiceUser owning a credential Secret"""
        secret = event.get("object")
        if secret is None or getattr(secret, "metadata", None) is None:
            return
        for owner in secret.metadata.owner_references or []:
            if owner.kind == SERVICE_USER_KIND and owner.api_version == f"{API_GROUP}/{API_VERSION}":
                self.enqueue(ObjectKey(SERVICE_USER_KIND, secret.metadata.namespace, owner.name))

    def _watch_loop(self, name: str, open_stream: Callable[[], WatchStream], handler: Callable[[dict], None]):
        while not self.stop_event.is_set():
            stream = open_stream()
            with self._streams_lock:
                self._streams.append(stream)
            try:
                for event in stream:
                    if self.stop_event.is_set():
                        break
                    handler(event)
            except Exception as e:
                logger.error(f"{name} watch error: {e}")
                self.stop_event.wait(WATCH_RETRY_DELAY)
            finally:
                with self._streams_lock:
                    self._streams.remove(stream)

    def resync(self):
        """Enqueue every known resource"""
        for kind, reconciler in self.reconcilers.items():
            for obj in self.kube.list(reconciler.resource_cls, self.namespace):
                meta = obj["metadata"]
                self.enqueue(ObjectKey(kind, meta.get("namespace"), meta["name"]))

    def _resync_loop(self):
        while not self.stop_event.wait(self.resync_interval):
            logger.info(f"{BLUE}Periodic resync{RESET}")
            try:
                self.resync()
            except ControllerError as e:
                logger.error(f"Resync failed: {e}")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process(self, key: ObjectKey):
        """Run one pass for the key and schedule the next one"""
        reconciler = self.reconcilers[key.kind]
        try:
            outcome, stats = reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            self.metrics.reconciliations.labels(kind=key.kind, result="Unexpected").inc()
            self.queue.add_after(key, reconciler.backoff.next_delay(key))
            return

        self._log_summary(key, stats)
        self.metrics.record_pass(key.kind, stats, stats.error_reason or "Success")
        self.metrics.queue_depth.set(len(self.queue))

        if outcome.requeue_after is not None:
            self.queue.add_after(key, outcome.requeue_after)

    def _log_summary(self, key: ObjectKey, stats: PassStats):
        if stats.errors:
            logger.info(f"{RED}Pass for {key} failed ({stats.error_reason}) after {stats.duration_seconds():.2f}s{RESET}")
        elif stats.mutations:
            logger.info(f"{WHITE}Reconciled {key}:{RESET}")
            logger.info(f"  • Users created: {stats.users_created}")
            logger.info(f"  • Users deleted: {stats.users_deleted}")
            logger.info(f"  • Groups added: {stats.groups_added}")
            logger.info(f"  • Groups removed: {stats.groups_removed}")
            logger.info(f"  • Passwords set: {stats.passwords_set}")
            logger.info(f"  • Secrets created: {stats.secrets_created}")
            logger.info(f"  • Duration: {stats.duration_seconds():.2f}s")
        else:
            logger.debug(f"{key} already in sync")

    def _worker_loop(self):
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, target, name: str, *args) -> threading.Thread:
        thread = threading.Thread(target=target, name=name, args=args, daemon=True)
        thread.start()
        return thread

    def start(self):
        logger.info(f"{GREEN}Controller started ({self.workers} workers, namespace={self.namespace or '*'}){RESET}")

        self._background.append(self._spawn(
            self._watch_loop, "watch-serviceusers", "ServiceUser",
            lambda: self.kube.watch_custom_objects(ServiceUser, self.namespace, self.watch_timeout),
            lambda event: self.handle_resource_event(ServiceUser.kind, event),
        ))
        self._background.append(self._spawn(
            self._watch_loop, "watch-groups", "Group",
            lambda: self.kube.watch_custom_objects(Group, None, self.watch_timeout),
            lambda event: self.handle_resource_event(Group.kind, event),
        ))
        self._background.append(self._spawn(
            self._watch_loop, "watch-secrets", "Secret",
            lambda: self.kube.watch_secrets(
                f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}", self.namespace, self.watch_timeout
            ),
            self.handle_secret_event,
        ))
        self._background.append(self._spawn(self._resync_loop, "resync"))

        for i in range(self.workers):
            self._workers.append(self._spawn(self._worker_loop, f"worker-{i}"))

    def request_stop(self, *_):
        logger.info("Received shutdown signal, shutting down gracefully...")
        self.stop_event.set()

    def stop(self):
        """Stop taking new work and give in-flight passes a grace period"""
        self.stop_event.set()
        with self._streams_lock:
            for stream in self._streams:
                stream.stop()
        self.queue.shutdown()

        for thread in self._workers:
            thread.join(timeout=self.shutdown_grace)
        unfinished = [t.name for t in self._workers if t.is_alive()]
        if unfinished:
            logger.warning(f"Workers still busy after {self.shutdown_grace}s grace: {unfinished}")
        for thread in self._background:
            thread.join(timeout=1)

        pending = self.queue.pending()
        if pending:
            logger.info(f"{YELLOW}{len(pending)} resources left for the next controller instance{RESET}")
        logger.info("Controller stopped")

    def run(self):
        self.start()
        self.stop_event.wait()
        self.stop()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def build_controller() -> LldapController:
    """Wire the controller's components from Config"""
    kube = KubernetesClient(Config.CONTROLLER_NAME, timeout=Config.KUBE_TIMEOUT)
    directory = DirectoryClient(
        url=Config.LLDAP_URL,
        username=Config.LLDAP_USERNAME,
        password=Config.LLDAP_PASSWORD,
        ldap_url=Config.LLDAP_LDAP_URL,
        base_dn=Config.LLDAP_BASE_DN,
        timeout=Config.LLDAP_TIMEOUT,
    )
    backoff = ExponentialBackoff(Config.BACKOFF_BASE, Config.BACKOFF_MAX)
    common = dict(
        resync_interval=Config.RESYNC_INTERVAL,
        unauthorized_requeue=Config.UNAUTHORIZED_REQUEUE,
        max_conflict_retries=Config.MAX_CONFLICT_RETRIES,
    )
    reconcilers = {
        ServiceUser.kind: ServiceUserReconciler(
            kube, directory, SecretManager(kube), backoff,
            prune_groups=Config.PRUNE_GROUPS, **common
        ),
        Group.kind: GroupReconciler(kube, directory, backoff, **common),
    }
    return LldapController(
        kube,
        directory,
        reconcilers,
        workers=Config.WORKERS,
        namespace=Config.WATCH_NAMESPACE,
        resync_interval=Config.RESYNC_INTERVAL,
        watch_timeout=Config.WATCH_TIMEOUT,
        shutdown_grace=Config.SHUTDOWN_GRACE,
    )


def main():
    """Main entry point"""
    setup_logging(Config.LOG_LEVEL)

    if not Config.LLDAP_PASSWORD:
        logger.critical("Variable 'LLDAP_PASSWORD' is not set")
        sys.exit(1)

    controller = None
    try:
        controller = build_controller()
        signal.signal(signal.SIGTERM, controller.request_stop)
        signal.signal(signal.SIGINT, controller.request_stop)

        controller.directory.ensure_managed_attribute()
        if Config.METRICS_PORT:
            controller.metrics.serve(Config.METRICS_PORT)
            logger.info(f"Serving metrics on :{Config.METRICS_PORT}")

        controller.run()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if controller:
            controller.directory.close()


if __name__ == "__main__":
    main()
