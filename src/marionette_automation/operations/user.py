from __future__ import annotations

import logging
from typing import Any, Optional

from .base import Operation, TaskContext, as_list, coerce_bool
from ..connections import Connection
from ..facts import UserFacts
from ..types import ActionResult

logger = logging.getLogger(__name__)


class UserManager:
    def add(
        self,
        connection: Connection,
        name: str,
        *,
        shell: Optional[str],
        system: bool,
        create_home: bool,
        comment: Optional[str],
        groups: list[str],
        password_hash: Optional[str],
    ) -> None:
        cmd = ["useradd"]
        if shell:
            cmd += ["--shell", shell]
        if create_home:
            cmd.append("--create-home")
        if system:
            cmd.append("--system")
        if comment:
            cmd += ["--comment", comment]
        if groups:
            cmd += ["--groups", ",".join(groups)]
        if password_hash:
            cmd += ["--password", password_hash]
        cmd.append(name)
        connection.run(cmd)

    def delete(self, connection: Connection, name: str, *, remove_home: bool) -> None:
        cmd = ["userdel"]
        if remove_home:
            cmd.append("--remove")
        cmd.append(name)
        connection.run(cmd)

    def set_shell(self, connection: Connection, name: str, shell: str) -> None:
        connection.run(["usermod", "--shell", shell, name])

    def add_groups(self, connection: Connection, name: str, groups: list[str]) -> None:
        connection.run(["usermod", "--append", "--groups", ",".join(groups), name])


class UserOperation(Operation):
    """Ensure user accounts exist with the declared shell and groups.

    Existing accounts are only touched for attributes the declaration names:
    the shell is changed when it differs, missing supplementary groups are
    appended and groups the account already has are never removed.
    """

    action = "user"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("user operation requires a name")
        self.name = str(raw_name)
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("user operation state must be 'present' or 'absent'")
        self.shell = spec.get("shell")
        self.groups = as_list(spec.get("groups"))
        self.system = bool(coerce_bool(spec.get("system", False)))
        create_home = coerce_bool(spec.get("create_home"))
        self.create_home = True if create_home is None else create_home
        self.remove_home = bool(coerce_bool(spec.get("remove_home", False)))
        self.comment = spec.get("comment")
        self.password_hash = spec.get("password_hash")
        if "password" in spec:
            raise ValueError("user operation takes password_hash, not a plaintext password")
        self.manager = UserManager()

    def gather(self, context: TaskContext) -> UserFacts:
        return context.facts.user(self.name)

    def apply(self, context: TaskContext, facts: UserFacts) -> ActionResult:
        connection = context.connection
        changes: list[str] = []

        if self.state == "present":
            if not facts.exists:
                logger.debug("Creating user %s", self.name)
                self.manager.add(
                    connection,
                    self.name,
                    shell=str(self.shell) if self.shell else None,
                    system=self.system,
                    create_home=self.create_home,
                    comment=str(self.comment) if self.comment else None,
                    groups=self.groups,
                    password_hash=str(self.password_hash) if self.password_hash else None,
                )
                changes.append("created")
            else:
                if self.shell and facts.shell != self.shell:
                    logger.debug("Updating shell for %s", self.name)
                    self.manager.set_shell(connection, self.name, str(self.shell))
                    changes.append("shell")
                missing = [group for group in self.groups if group not in facts.groups]
                if missing:
                    logger.debug("Adding %s to groups %s", self.name, missing)
                    self.manager.add_groups(connection, self.name, missing)
                    changes.append(f"groups+={','.join(missing)}")
        else:  # state == absent
            if facts.exists:
                logger.debug("Removing user %s", self.name)
                self.manager.delete(connection, self.name, remove_home=self.remove_home)
                changes.append("removed")

        return self.result(context, changes)
