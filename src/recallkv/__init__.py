"""recallkv: agent memory core over a key-value store."""

__version__ = "0.1.0"

from recallkv.core import MemoryCore
from recallkv.exceptions import (
    AlreadyActiveError,
    InvalidStateError,
    NoActiveWorkflowError,
    NotFoundError,
    ProviderError,
    RecallError,
    StorageError,
    ValidationError,
)

__all__ = [
    "__version__",
    "MemoryCore",
    "RecallError",
    "NotFoundError",
    "AlreadyActiveError",
    "InvalidStateError",
    "NoActiveWorkflowError",
    "ValidationError",
    "StorageError",
    "ProviderError",
]
