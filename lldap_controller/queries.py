"""
GraphQL operations against the LLDAP API.

Every document the controller sends is a constant in this module, paired
with a dataclass describing the part of the response we read. Nothing is
assembled at runtime beyond the variables dict.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


# ============================================================================
# RESPONSE SHAPES
# ============================================================================

@dataclass(frozen=True)
class DirectoryGroup:
    id: int
    display_name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectoryGroup":
        return cls(id=int(data["id"]), display_name=data["displayName"])


@dataclass
class DirectoryUser:
    id: str
    groups: List[DirectoryGroup] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectoryUser":
        return cls(
            id=data["id"],
            groups=[DirectoryGroup.from_dict(g) for g in data.get("groups") or []],
        )

    @property
    def group_names(self):
        return {g.display_name for g in self.groups}


# ============================================================================
# QUERIES
# ============================================================================

GET_USER = """
query GetUser($id: String!) {
  user(userId: $id) {
    id
    groups {
      id
      displayName
    }
  }
}
"""

LIST_GROUPS = """
query ListGroups {
  groups {
    id
    displayName
  }
}
"""

GET_USER_ATTRIBUTES = """
query GetUserAttributes {
  schema {
    userSchema {
      attributes {
        name
      }
    }
  }
}
"""


# ============================================================================
# MUTATIONS
# ============================================================================

CREATE_USER = """
mutation CreateUser($id: String!) {
  createUser(user: {id: $id, email: $id, attributes: [{name: "managed", value: ["1"]}]}) {
    id
  }
}
"""

DELETE_USER = """
mutation DeleteUser($id: String!) {
  deleteUser(userId: $id) {
    ok
  }
}
"""

ADD_USER_TO_GROUP = """
mutation AddUserToGroup($id: String!, $group: Int!) {
  addUserToGroup(userId: $id, groupId: $group) {
    ok
  }
}
"""

REMOVE_USER_FROM_GROUP = """
mutation RemoveUserFromGroup($id: String!, $group: Int!) {
  removeUserFromGroup(userId: $id, groupId: $group) {
    ok
  }
}
"""

CREATE_GROUP = """
mutation CreateGroup($name: String!) {
  createGroup(name: $name) {
    id
    displayName
  }
}
"""

DELETE_GROUP = """
mutation DeleteGroup($group: Int!) {
  deleteGroup(groupId: $group) {
    ok
  }
}
"""

CREATE_MANAGED_USER_ATTRIBUTE = """
mutation CreateManagedUserAttribute {
  addUserAttribute(name: "managed", attributeType: INTEGER, isList: false, isVisible: false, isEditable: false) {
    ok
  }
}
"""
