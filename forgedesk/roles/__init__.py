"""
ForgeDesk — Roles & Permissions
Admin roles map a name to a set of catalog permissions. Login resolves the
account's role to the permission list stored on its session.
"""
import copy
import threading
import uuid
from datetime import datetime

from forgedesk.config import PERMISSION_CATALOG, DEFAULT_ROLES, PROTECTED_ROLE


def list_permissions() -> list:
    return [{"id": pid, **info} for pid, info in PERMISSION_CATALOG.items()]


def _check(name, permissions, level):
    if not name or not str(name).strip():
        raise ValueError("Role name is required")
    unknown = [p for p in permissions or [] if p not in PERMISSION_CATALOG]
    if unknown:
        raise ValueError(f"Unknown permissions: {unknown}")
    if not isinstance(level, int) or not 1 <= level <= 10:
        raise ValueError("Role level must be an integer between 1 and 10")


class RoleStore:
    def __init__(self, clock=datetime.now, seed: bool = True):
        self.lock = threading.RLock()
        self.clock = clock
        self._roles = []
        if seed:
            for r in DEFAULT_ROLES:
                self.create_role(r["name"], r["description"], r["permissions"], r["level"])

    def list_roles(self) -> list:
        with self.lock:
            return copy.deepcopy(self._roles)

    def get_role(self, role_id: str):
        with self.lock:
            role = next((r for r in self._roles if r["id"] == role_id), None)
            return copy.deepcopy(role) if role else None

    def create_role(self, name: str, description: str = "", permissions: list = None, level: int = 1) -> dict:
        _check(name, permissions, level)
        with self.lock:
            if any(r["name"].lower() == name.strip().lower() for r in self._roles):
                raise ValueError(f"Role '{name}' already exists")
            now = self.clock().isoformat()
            role = {"id": str(uuid.uuid4())[:8], "name": name.strip(), "description": description or "",
                    "permissions": list(permissions or []), "level": level,
                    "createdAt": now, "updatedAt": now}
            self._roles.append(role)
            return copy.deepcopy(role)

    def update_role(self, role_id: str, name: str = None, description: str = None,
                    permissions: list = None, level: int = None):
        with self.lock:
            role = next((r for r in self._roles if r["id"] == role_id), None)
            if role is None:
                return None
            new_name = name.strip() if name else role["name"]
            if role["name"] == PROTECTED_ROLE and new_name != PROTECTED_ROLE:
                raise ValueError(f"Cannot rename the {PROTECTED_ROLE} role")
            if any(r is not role and r["name"].lower() == new_name.lower() for r in self._roles):
                raise ValueError(f"Role '{new_name}' already exists")
            new_perms = role["permissions"] if permissions is None else list(permissions)
            new_level = role["level"] if level is None else level
            _check(new_name, new_perms, new_level)
            role.update(name=new_name, permissions=new_perms, level=new_level,
                        updatedAt=self.clock().isoformat())
            if description is not None:
                role["description"] = description
            return copy.deepcopy(role)

    def delete_role(self, role_id: str) -> bool:
        with self.lock:
            role = next((r for r in self._roles if r["id"] == role_id), None)
            if role is None:
                return False
            if role["name"] == PROTECTED_ROLE:
                raise ValueError(f"Cannot delete {PROTECTED_ROLE} role")
            self._roles.remove(role)
            return True

    def permissions_for_role(self, name: str) -> list:
        """Permissions granted by role name; a deleted or unknown role grants nothing."""
        with self.lock:
            role = next((r for r in self._roles if r["name"] == name), None)
            return list(role["permissions"]) if role else []
