from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from pulsegate.logging import get_logger
from pulsegate.service.errors import ConfigurationError

logger = get_logger(__name__)


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"
    READ_ONLY = "read_only"
    USER = "user"


class Permission(str, Enum):
    USER_VIEW = "user:view"
    USER_EDIT = "user:edit"
    USER_DELETE = "user:delete"
    SESSION_VIEW = "session:view"
    SESSION_DELETE = "session:delete"
    CHANNEL_VIEW = "channel:view"
    CHANNEL_MANAGE = "channel:manage"
    ANNOUNCEMENT_SEND = "announcement:send"
    ANNOUNCEMENT_SCHEDULE = "announcement:schedule"
    SYSTEM_LOGS_VIEW = "system:logs:view"
    SYSTEM_HEALTH_VIEW = "system:health:view"
    SYSTEM_CONFIG_EDIT = "system:config:edit"
    COMMAND_EXECUTE = "command:execute"
    COMMAND_HISTORY_VIEW = "command:history:view"
    ACCOUNT_VIEW = "account:view"
    PAYMENT_SEND = "payment:send"


class Logic(str, Enum):
    AND = "AND"
    OR = "OR"


TOP_ROLE = Role.SUPER_ADMIN.value


@dataclass
class RoleDefinition:
    name: str
    rank: int
    description: str = ""
    permissions: Set[str] = field(default_factory=set)
    inherits: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PermissionCheck:
    permissions: Sequence[str]
    logic: Logic = Logic.AND


def _perms(*permissions: Permission) -> Set[str]:
    return {p.value for p in permissions}


DEFAULT_ROLES: Dict[str, RoleDefinition] = {
    Role.SUPER_ADMIN.value: RoleDefinition(
        name=Role.SUPER_ADMIN.value,
        rank=5,
        description="Full system access",
        permissions={p.value for p in Permission},
        inherits=[Role.ADMIN.value],
    ),
    Role.ADMIN.value: RoleDefinition(
        name=Role.ADMIN.value,
        rank=4,
        description="Manage users, sessions and announcements",
        permissions=_perms(
            Permission.USER_EDIT,
            Permission.USER_DELETE,
            Permission.CHANNEL_MANAGE,
            Permission.ANNOUNCEMENT_SCHEDULE,
            Permission.SYSTEM_LOGS_VIEW,
            Permission.COMMAND_EXECUTE,
        ),
        inherits=[Role.MODERATOR.value],
    ),
    Role.MODERATOR.value: RoleDefinition(
        name=Role.MODERATOR.value,
        rank=3,
        description="Moderate sessions and send announcements",
        permissions=_perms(
            Permission.SESSION_DELETE,
            Permission.ANNOUNCEMENT_SEND,
            Permission.COMMAND_HISTORY_VIEW,
        ),
        inherits=[Role.READ_ONLY.value],
    ),
    Role.READ_ONLY.value: RoleDefinition(
        name=Role.READ_ONLY.value,
        rank=2,
        description="View-only dashboard access",
        permissions=_perms(
            Permission.USER_VIEW,
            Permission.SESSION_VIEW,
            Permission.CHANNEL_VIEW,
            Permission.SYSTEM_HEALTH_VIEW,
        ),
    ),
    Role.USER.value: RoleDefinition(
        name=Role.USER.value,
        rank=1,
        description="Linked chat customer",
        permissions=_perms(Permission.ACCOUNT_VIEW, Permission.PAYMENT_SEND),
    ),
}


def parse_custom_roles(raw: Optional[str]) -> List[RoleDefinition]:
    """Parse the CUSTOM_ROLES JSON object ``{name: {rank, permissions, inherits}}``."""
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError("CUSTOM_ROLES is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("CUSTOM_ROLES must be a JSON object")
    roles: List[RoleDefinition] = []
    for name, entry in payload.items():
        if not isinstance(entry, dict) or "rank" not in entry:
            raise ConfigurationError(f"custom role {name!r} needs a rank")
        roles.append(
            RoleDefinition(
                name=name,
                rank=int(entry["rank"]),
                description=str(entry.get("description", "")),
                permissions=set(entry.get("permissions", [])),
                inherits=list(entry.get("inherits", [])),
            )
        )
    return roles


class RbacAuthority:
    """Role to permission resolution with inheritance and AND/OR checks.

    Definitions are validated when loaded: unknown parents, inheritance
    cycles and duplicate ranks raise ``ConfigurationError``. Effective
    permission sets are cached per role.
    """

    def __init__(
        self,
        definitions: Optional[Mapping[str, RoleDefinition]] = None,
        *,
        custom_roles: Iterable[RoleDefinition] = (),
        top_role: Optional[str] = TOP_ROLE,
    ) -> None:
        roles = dict(DEFAULT_ROLES if definitions is None else definitions)
        custom = {role.name: role for role in custom_roles}
        roles.update(custom)
        self.top_role = top_role
        self._validate(roles)
        self._roles: Dict[str, RoleDefinition] = roles
        self._cache: Dict[str, frozenset] = {}
        if custom:
            logger.info("custom_roles_loaded", roles=sorted(custom))

    @staticmethod
    def _validate(roles: Mapping[str, RoleDefinition]) -> None:
        ranks: Dict[int, str] = {}
        for name, role in roles.items():
            if role.rank in ranks:
                raise ConfigurationError(
                    f"roles {ranks[role.rank]!r} and {name!r} share rank {role.rank}"
                )
            ranks[role.rank] = name
            for parent in role.inherits:
                if parent not in roles:
                    raise ConfigurationError(f"role {name!r} inherits unknown role {parent!r}")

        visiting: Set[str] = set()
        done: Set[str] = set()

        def visit(name: str, path: List[str]) -> None:
            if name in done:
                return
            if name in visiting:
                raise ConfigurationError(
                    "role inheritance cycle: " + " -> ".join(path + [name])
                )
            visiting.add(name)
            for parent in roles[name].inherits:
                visit(parent, path + [name])
            visiting.discard(name)
            done.add(name)

        for name in roles:
            visit(name, [])

    def roles(self) -> List[RoleDefinition]:
        return sorted(self._roles.values(), key=lambda r: r.rank, reverse=True)

    def effective_permissions(self, role: str) -> frozenset:
        cached = self._cache.get(role)
        if cached is not None:
            return cached
        definition = self._roles.get(role)
        if definition is None:
            return frozenset()
        resolved = set(definition.permissions)
        for parent in definition.inherits:
            resolved |= self.effective_permissions(parent)
        result = frozenset(resolved)
        self._cache[role] = result
        return result

    def _bypass(self, role: str) -> bool:
        return self.top_role is not None and role == self.top_role

    def has_permission(self, role: str, permission: str) -> bool:
        if self._bypass(role):
            return True
        return str(getattr(permission, "value", permission)) in self.effective_permissions(role)

    def check_all(self, role: str, permissions: Iterable[str]) -> bool:
        return all(self.has_permission(role, p) for p in permissions)

    def check_any(self, role: str, permissions: Iterable[str]) -> bool:
        if self._bypass(role):
            return True
        return any(self.has_permission(role, p) for p in permissions)

    def check(self, role: str, requirements: Iterable[PermissionCheck]) -> bool:
        """Every clause must hold; each clause combines its permissions with AND or OR."""
        for clause in requirements:
            matcher = self.check_all if clause.logic == Logic.AND else self.check_any
            if not matcher(role, clause.permissions):
                return False
        return True

    def rank_of(self, role: str) -> int:
        definition = self._roles.get(role)
        return definition.rank if definition else 0

    def is_at_least(self, role: str, other: str) -> bool:
        return self.rank_of(role) >= self.rank_of(other)

    def permission_matrix(self) -> Dict[str, Dict[str, bool]]:
        known = sorted({p.value for p in Permission} | {
            perm for role in self._roles.values() for perm in role.permissions
        })
        return {
            role.name: {perm: self.has_permission(role.name, perm) for perm in known}
            for role in self.roles()
        }
