"""
LLDAP directory client.

User and group administration goes through the GraphQL API; password changes
go through the LDAP password-modify extended operation, since LLDAP only
accepts new passwords over OPAQUE on HTTP or over LDAP.

A single DirectoryClient is built at start-up and shared by every worker.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Set

import ldap3
import requests
from ldap3.core import exceptions as ldap_exceptions

from lldap_controller import queries
from lldap_controller.errors import (
    ControllerError,
    DirectoryError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
)
from lldap_controller.queries import DirectoryGroup, DirectoryUser

logger = logging.getLogger("lldap-controller.directory")

# Messages LLDAP puts in GraphQL errors
_NOT_FOUND_PREFIX = "Entity not found"
_ALREADY_EXISTS_MARKERS = ("UNIQUE constraint failed", "already exists", "Duplicate")
_UNAUTHORIZED_MARKERS = ("Unauthorized", "Forbidden", "Permission denied")


class DirectoryClient:
    """Handles all LLDAP interactions"""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        ldap_url: str,
        base_dn: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.username = username
        self.password = password
        self.ldap_url = ldap_url
        self.base_dn = base_dn
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _login(self) -> str:
        """Exchange the admin credentials for a bearer token"""
        try:
            response = self.session.post(
                f"{self.url}/auth/simple/login",
                json={"username": self.username, "password": self.password},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientError(f"Login request failed: {e}") from e

        if response.status_code in (401, 403):
            raise UnauthorizedError(f"LLDAP rejected the credentials of '{self.username}'")
        if response.status_code >= 500:
            raise TransientError(f"Login failed with HTTP {response.status_code}")
        if not response.ok:
            raise DirectoryError(f"Login failed with HTTP {response.status_code}: {response.text}")

        try:
            token = _json_body(response)["token"]
        except (KeyError, TypeError) as e:
            raise DirectoryError("Login response carries no token") from e
        logger.debug("Obtained LLDAP token")
        return token

    def _get_token(self, refresh: bool = False) -> str:
        with self._token_lock:
            if refresh or self._token is None:
                self._token = self._login()
            return self._token

    def _post_graphql(self, token: str, payload: Dict[str, Any]) -> requests.Response:
        try:
            return self.session.post(
                f"{self.url}/api/graphql",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientError(f"GraphQL request failed: {e}") from e

    def execute(self, document: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run a GraphQL operation and return its data

        Args:
            document: One of the documents in lldap_controller.queries
            variables: Operation variables

        Returns:
            The response's data object

        Raises:
            TransientError, UnauthorizedError, NotFoundError, DirectoryError
        """
        payload = {"query": document, "variables": variables or {}}

        response = self._post_graphql(self._get_token(), payload)
        if response.status_code == 401:
            # Tokens expire; try once more with a fresh one
            logger.info("LLDAP token rejected, logging in again")
            response = self._post_graphql(self._get_token(refresh=True), payload)

        if response.status_code in (401, 403):
            raise UnauthorizedError(f"LLDAP refused the request with HTTP {response.status_code}")
        if response.status_code >= 500:
            raise TransientError(f"LLDAP returned HTTP {response.status_code}")
        if not response.ok:
            raise DirectoryError(f"LLDAP returned HTTP {response.status_code}: {response.text}")

        body = _json_body(response)
        if not isinstance(body, dict):
            raise DirectoryError(f"Unexpected GraphQL response: {body!r}")
        errors = body.get("errors") or []
        if errors:
            raise _classify_graphql_error(errors[0].get("message", ""))
        return body.get("data") or {}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, name: str) -> DirectoryUser:
        data = self.execute(queries.GET_USER, {"id": name})
        return DirectoryUser.from_dict(data["user"])

    def ensure_user_exists(self, name: str) -> bool:
        """
        Create the user unless it already exists

        Args:
            name: Directory user id

        Returns:
            True if this call created the user, False if it was already there
        """
        try:
            self.get_user(name)
            logger.debug(f"User '{name}' already exists")
            return False
        except NotFoundError:
            pass

        try:
            self.execute(queries.CREATE_USER, {"id": name})
        except DirectoryError as e:
            if _is_already_exists(e):
                logger.debug(f"User '{name}' was created concurrently")
                return False
            raise
        logger.info(f"Created user: {name}")
        return True

    def delete_user(self, name: str):
        """Delete the user; raises NotFoundError if there is no such user"""
        self.execute(queries.DELETE_USER, {"id": name})
        logger.info(f"Deleted user: {name}")

    def list_group_membership(self, name: str) -> Set[str]:
        """Return the display names of every group the user belongs to"""
        return self.get_user(name).group_names

    def add_to_group(self, name: str, group: str) -> bool:
        """
        Add the user to a group

        Returns:
            True if this call created the membership, False if it was already there
        """
        group_id = self._group_id(group)
        try:
            self.execute(queries.ADD_USER_TO_GROUP, {"id": name, "group": group_id})
        except DirectoryError as e:
            if _is_already_exists(e):
                logger.debug(f"User '{name}' is already a member of '{group}'")
                return False
            raise
        logger.info(f"  ↳ Added {name} to group {group}")
        return True

    def remove_from_group(self, name: str, group: str):
        group_id = self._group_id(group)
        self.execute(queries.REMOVE_USER_FROM_GROUP, {"id": name, "group": group_id})
        logger.info(f"  ↳ Removed {name} from group {group}")

    def set_password(self, name: str, password: str):
        """
        Set a user's password with the LDAP password-modify extended operation

        Args:
            name: Directory user id
            password: New password (never logged)
        """
        server = ldap3.Server(self.ldap_url, connect_timeout=self.timeout)
        try:
            with ldap3.Connection(
                server,
                user=self._user_dn(self.username),
                password=self.password,
                auto_bind=True,
                raise_exceptions=True,
                receive_timeout=self.timeout,
            ) as conn:
                conn.extend.standard.modify_password(self._user_dn(name), new_password=password)
        except (ldap_exceptions.LDAPBindError, ldap_exceptions.LDAPInvalidCredentialsResult,
                ldap_exceptions.LDAPInsufficientAccessRightsResult) as e:
            raise UnauthorizedError(f"LDAP refused password change for '{name}': {e}") from e
        except ldap_exceptions.LDAPNoSuchObjectResult as e:
            raise NotFoundError(f"No such user: '{name}'") from e
        except ldap_exceptions.LDAPCommunicationError as e:
            raise TransientError(f"LDAP connection failed: {e}") from e
        except ldap_exceptions.LDAPException as e:
            raise DirectoryError(f"LDAP password change for '{name}' failed: {e}") from e
        logger.debug(f"Changed '{name}' password successfully")

    def _user_dn(self, name: str) -> str:
        return f"uid={name},ou=people,{self.base_dn}"

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def list_groups(self) -> List[DirectoryGroup]:
        data = self.execute(queries.LIST_GROUPS)
        return [DirectoryGroup.from_dict(g) for g in data.get("groups") or []]

    def _find_group(self, name: str) -> Optional[DirectoryGroup]:
        for group in self.list_groups():
            if group.display_name == name:
                return group
        return None

    def _group_id(self, name: str) -> int:
        group = self._find_group(name)
        if group is None:
            raise NotFoundError(f"No such group: '{name}'")
        return group.id

    def ensure_group_exists(self, name: str) -> bool:
        """Create the group unless it exists; returns True if this call created it"""
        if self._find_group(name) is not None:
            logger.debug(f"Group '{name}' already exists")
            return False
        self.execute(queries.CREATE_GROUP, {"name": name})
        logger.info(f"Created group: {name}")
        return True

    def delete_group(self, name: str):
        """Delete the group; raises NotFoundError if there is no such group"""
        self.execute(queries.DELETE_GROUP, {"group": self._group_id(name)})
        logger.info(f"Deleted group: {name}")

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_managed_attribute(self) -> bool:
        """
        Make sure the 'managed' user attribute exists

        Users created by the controller are tagged with managed=1, which the
        directory rejects unless the attribute is part of the user schema.
        """
        data = self.execute(queries.GET_USER_ATTRIBUTES)
        names = {a["name"] for a in data["schema"]["userSchema"]["attributes"]}
        if "managed" in names:
            return False
        self.execute(queries.CREATE_MANAGED_USER_ATTRIBUTE)
        logger.info("Added 'managed' attribute to the user schema")
        return True

    def close(self):
        self.session.close()


def _json_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise DirectoryError(f"LLDAP returned a non-JSON response (HTTP {response.status_code})") from e


def _classify_graphql_error(message: str) -> ControllerError:
    if message.startswith(_NOT_FOUND_PREFIX):
        return NotFoundError(message)
    if any(marker in message for marker in _UNAUTHORIZED_MARKERS):
        return UnauthorizedError(message)
    return DirectoryError(message)


def _is_already_exists(error: Exception) -> bool:
    return any(marker in str(error) for marker in _ALREADY_EXISTS_MARKERS)
