"""
Controller configuration loaded from environment variables.

Values are read once at import time and handed to the components that need
them through their constructors.
"""

import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Controller configuration loaded from environment variables"""

    # LLDAP settings
    LLDAP_URL = os.getenv("LLDAP_URL", "http://lldap:17170")
    LLDAP_USERNAME = os.getenv("LLDAP_USERNAME", "admin")
    LLDAP_PASSWORD = os.getenv("LLDAP_PASSWORD", "")
    LLDAP_LDAP_URL = os.getenv("LLDAP_LDAP_URL", "ldap://lldap:3890")
    LLDAP_BASE_DN = os.getenv("LLDAP_BASE_DN", "dc=example,dc=com")
    LLDAP_TIMEOUT = float(os.getenv("LLDAP_TIMEOUT", "10"))

    # Kubernetes settings
    CONTROLLER_NAME = os.getenv("CONTROLLER_NAME", "lldap.huizinga.dev")
    WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE", "")
    KUBE_TIMEOUT = float(os.getenv("KUBE_TIMEOUT", "30"))
    WATCH_TIMEOUT = int(os.getenv("WATCH_TIMEOUT", "300"))

    # Controller settings
    WORKERS = int(os.getenv("WORKERS", "4"))
    RESYNC_INTERVAL = float(os.getenv("RESYNC_INTERVAL", "3600"))
    BACKOFF_BASE = float(os.getenv("BACKOFF_BASE", "5"))
    BACKOFF_MAX = float(os.getenv("BACKOFF_MAX", "300"))
    UNAUTHORIZED_REQUEUE = float(os.getenv("UNAUTHORIZED_REQUEUE", "300"))
    MAX_CONFLICT_RETRIES = int(os.getenv("MAX_CONFLICT_RETRIES", "3"))
    PRUNE_GROUPS = _env_bool("PRUNE_GROUPS", "false")
    SHUTDOWN_GRACE = float(os.getenv("SHUTDOWN_GRACE", "10"))

    # Observability
    METRICS_PORT = int(os.getenv("METRICS_PORT", "8080"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Groups the directory's permission model hands out to service users
    PASSWORD_MANAGER_GROUP = "lldap_password_manager"
    STRICT_READONLY_GROUP = "lldap_strict_readonly"
