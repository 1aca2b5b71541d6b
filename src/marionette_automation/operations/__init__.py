from .authorized_key import AuthorizedKeyOperation
from .base import Operation, TaskContext
from .command import CommandOperation
from .file import FileOperation, TemplateOperation
from .notify import NotifyOperation
from .package import PackageOperation
from .service import ServiceOperation
from .user import UserOperation

OPERATION_REGISTRY = {
    "user": UserOperation,
    "authorized_key": AuthorizedKeyOperation,
    "package": PackageOperation,
    "file": FileOperation,
    "template": TemplateOperation,
    "notify": NotifyOperation,
    "service": ServiceOperation,
    "command": CommandOperation,
}

__all__ = [
    "Operation",
    "TaskContext",
    "UserOperation",
    "AuthorizedKeyOperation",
    "PackageOperation",
    "FileOperation",
    "TemplateOperation",
    "NotifyOperation",
    "ServiceOperation",
    "CommandOperation",
    "OPERATION_REGISTRY",
]
