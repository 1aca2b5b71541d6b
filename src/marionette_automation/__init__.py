"""Marionette remote provisioning toolkit."""

from .inventory import InventoryLoader
from .playbook import PlaybookLoader
from .runner import PlaybookRunner
from .variables import VariableResolver

__all__ = ["InventoryLoader", "PlaybookLoader", "PlaybookRunner", "VariableResolver"]
