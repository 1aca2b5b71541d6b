from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any
import logging

from .base import Operation, TaskContext, parse_mode
from ..facts import FileFacts
from ..templates import content_hash
from ..types import ActionResult

logger = logging.getLogger(__name__)


class FileOperation(Operation):
    """Ensure files exist with the requested contents."""

    action = "file"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest")
        if not raw_path:
            raise ValueError(f"{self.action} operation requires a path")
        self.path = str(PurePosixPath(str(raw_path)))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent", "directory"}:
            raise ValueError(f"{self.action} operation state must be 'present', 'absent', or 'directory'")
        raw_content = spec.get("content")
        self.content = "" if raw_content is None else str(raw_content)
        self.mode = parse_mode(spec.get("mode"))
        self.template = spec.get("template") or spec.get("src")
        self.variables = spec.get("variables", {})
        self.link_target = spec.get("link_target") or spec.get("target")
        self.owner = str(spec["owner"]) if spec.get("owner") else None
        self.group = str(spec["group"]) if spec.get("group") else None
        if self.template is not None:
            self.template = str(self.template)
        if not isinstance(self.variables, dict):
            raise ValueError(f"{self.action} operation variables must be a mapping")
        if self.link_target is not None:
            self.link_target = str(self.link_target)

    def resource(self) -> str:
        return self.path

    def gather(self, context: TaskContext) -> FileFacts:
        return context.facts.file(self.path)

    def apply(self, context: TaskContext, facts: FileFacts) -> ActionResult:
        if self.link_target and self.state != "absent":
            changes = self._apply_symlink(context, facts)
        elif self.state == "directory":
            changes = self._apply_directory(context, facts)
        elif self.state == "absent":
            changes = []
            if facts.exists:
                context.connection.run(["rm", "-rf", "--", self.path])
                changes.append("removed")
        else:
            content = self.render(context)
            changes = self._apply_content(context, facts, content)
        return self.result(context, changes)

    def render(self, context: TaskContext) -> str:
        """Render the desired content without touching the host."""

        if not self.template:
            return self.content
        return context.renderer.render_file(self.template, context.variables, extra=self.variables)

    def _apply_content(self, context: TaskContext, facts: FileFacts, content: str) -> list[str]:
        changes: list[str] = []
        if not facts.exists:
            changes.append("created")
        else:
            if facts.is_dir:
                changes.append("replaced-dir")
            elif facts.sha256 != content_hash(content):
                changes.append("content")
            changes.extend(self._attribute_changes(facts))
        if not changes:
            return changes
        logger.debug("Writing %s on %s (%s)", self.path, context.host.name, ", ".join(changes))
        if facts.is_dir:
            context.connection.run(["rm", "-rf", "--", self.path])
        context.connection.put(
            content,
            self.path,
            mode=self.mode if self.mode is not None else facts.mode,
            owner=self.owner or facts.owner,
            group=self.group or facts.group,
        )
        return changes

    def _apply_directory(self, context: TaskContext, facts: FileFacts) -> list[str]:
        connection = context.connection
        if facts.exists and not facts.is_dir:
            connection.run(["rm", "-f", "--", self.path])
        if not facts.exists or not facts.is_dir:
            cmd = ["install", "-d"]
            if self.mode is not None:
                cmd += ["-m", f"{self.mode:04o}"]
            if self.owner:
                cmd += ["-o", self.owner]
            if self.group:
                cmd += ["-g", self.group]
            connection.run([*cmd, self.path])
            return ["created" if not facts.exists else "replaced-non-dir"]
        changes = self._attribute_changes(facts)
        if self.mode is not None and facts.mode != self.mode:
            connection.run(["chmod", f"{self.mode:04o}", self.path])
        if (self.owner and facts.owner != self.owner) or (self.group and facts.group != self.group):
            owner = self.owner or facts.owner
            group = self.group or facts.group
            connection.run(["chown", f"{owner}:{group}", self.path])
        return changes

    def _apply_symlink(self, context: TaskContext, facts: FileFacts) -> list[str]:
        if facts.is_symlink and facts.link_target == self.link_target:
            return []
        context.connection.run(["ln", "-sfn", str(self.link_target), self.path])
        return [f"link->{self.link_target}"]

    def _attribute_changes(self, facts: FileFacts) -> list[str]:
        changes: list[str] = []
        if self.mode is not None and facts.mode != self.mode:
            changes.append(f"mode->{self.mode:04o}")
        if self.owner and facts.owner != self.owner:
            changes.append(f"owner->{self.owner}")
        if self.group and facts.group != self.group:
            changes.append(f"group->{self.group}")
        return changes


class TemplateOperation(FileOperation):
    """Render a Jinja2 template and deploy it when the rendered content differs."""

    action = "template"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        if not self.template:
            raise ValueError("template operation requires a template")
        if self.state != "present":
            raise ValueError("template operation state must be 'present'")
