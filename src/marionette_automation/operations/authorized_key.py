from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from .base import Operation, TaskContext, as_list
from ..errors import TaskError
from ..facts import KeyFacts
from ..types import ActionResult

logger = logging.getLogger(__name__)


class AuthorizedKeyOperation(Operation):
    """Ensure SSH authorized keys are present for a user.

    Keys are compared verbatim line by line. Adding a key appends it and
    leaves every other line of the file untouched; removing a key drops only
    the lines equal to it.
    """

    action = "authorized_key"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_user = spec.get("user")
        if not raw_user:
            raise ValueError("authorized_key operation requires a user")
        self.user = str(raw_user)
        raw_key = spec.get("key")
        if not raw_key:
            raise ValueError("authorized_key operation requires a key")
        raw_keys = [raw_key] if isinstance(raw_key, str) else as_list(raw_key)
        self.keys: list[str] = []
        for raw in raw_keys:
            for line in str(raw).splitlines():
                key = self._normalize_key(line)
                if key and key not in self.keys:
                    self.keys.append(key)
        if not self.keys:
            raise ValueError("authorized_key operation requires a key")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("authorized_key state must be 'present' or 'absent'")

    def resource(self) -> str:
        return self.user

    @staticmethod
    def _normalize_key(raw: str) -> str:
        text = raw.strip()
        if not text or text.startswith(("ssh-", "ecdsa-", "sk-")):
            return text
        try:
            decoded = base64.b64decode(text, validate=True).decode().strip()
        except (binascii.Error, UnicodeDecodeError):
            return text
        return decoded or text

    def gather(self, context: TaskContext) -> KeyFacts:
        return context.facts.authorized_keys(self.user)

    def apply(self, context: TaskContext, facts: KeyFacts) -> ActionResult:
        if not facts.user_exists:
            if self.state == "absent":
                return self.result(context, [])
            if context.dry_run:
                return self.result(context, [f"added={len(self.keys)}"])
            raise TaskError(f"User '{self.user}' does not exist")

        if self.state == "present":
            missing = [key for key in self.keys if key not in facts.keys]
            if not missing:
                return self.result(context, [])
            content = facts.raw
            if content and not content.endswith("\n"):
                content += "\n"
            content += "".join(f"{key}\n" for key in missing)
            changes = [f"added={len(missing)}"]
        else:
            present = [key for key in self.keys if key in facts.keys]
            if not present:
                return self.result(context, [])
            kept = [line for line in facts.raw.splitlines() if line.strip() not in present]
            content = "\n".join(kept) + ("\n" if kept else "")
            changes = [f"removed={len(present)}"]

        logger.debug("Updating %s for %s", facts.path, self.user)
        owner, group = str(facts.uid), str(facts.gid)
        context.connection.run(
            ["install", "-d", "-m", "0700", "-o", owner, "-g", group, str(facts.ssh_dir)]
        )
        context.connection.put(content, str(facts.path), mode=0o600, owner=owner, group=group)
        return self.result(context, changes)
