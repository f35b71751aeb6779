from .apt_repository import AptRepositoryOperation
from .base import Operation
from .exec import ExecOperation
from .file import FileOperation
from .package import PackageOperation
from .postgres import PostgresDatabaseOperation, PostgresExtensionOperation, PostgresRoleOperation
from .remote_file import RemoteFileOperation
from .service import ServiceOperation
from .user import UserOperation

OPERATION_REGISTRY = {
    "package": PackageOperation,
    "apt_repository": AptRepositoryOperation,
    "file": FileOperation,
    "remote_file": RemoteFileOperation,
    "service": ServiceOperation,
    "user": UserOperation,
    "exec": ExecOperation,
    "postgres_role": PostgresRoleOperation,
    "postgres_database": PostgresDatabaseOperation,
    "postgres_extension": PostgresExtensionOperation,
}

__all__ = [
    "Operation",
    "AptRepositoryOperation",
    "ExecOperation",
    "FileOperation",
    "PackageOperation",
    "PostgresDatabaseOperation",
    "PostgresExtensionOperation",
    "PostgresRoleOperation",
    "RemoteFileOperation",
    "ServiceOperation",
    "UserOperation",
    "OPERATION_REGISTRY",
]
