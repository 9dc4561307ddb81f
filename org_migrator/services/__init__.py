"""Services for template management, validation, execution and rollback."""

from .crypto import TokenCipher
from .template_registry import TemplateRegistry, resolve_execution_order
from .transformer import TransformEngine
from .token_manager import TokenManager, TokenRefresher
from .validation_engine import ValidationEngine
from .execution_engine import ExecutionEngine
from .rollback_service import RollbackService

__all__ = [
    "TokenCipher",
    "TemplateRegistry",
    "resolve_execution_order",
    "TransformEngine",
    "TokenManager",
    "TokenRefresher",
    "ValidationEngine",
    "ExecutionEngine",
    "RollbackService",
]
