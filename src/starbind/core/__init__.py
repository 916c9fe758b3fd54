"""
StarBind Core Module

Pure binding domain: values and the unresolved sentinel, the error taxonomy,
the path language, the persisted binding spec and the expression evaluator.
Nothing here performs I/O.
"""

from .errors import (
    BindingError,
    EvaluationError,
    InvalidPathSyntax,
    RegistryClosedError,
    StoreUnavailable,
)
from .evaluator import ExpressionEvaluator, Program, compile_expression, evaluate
from .helpers import SCRIPT_CONSTANTS, SCRIPT_HELPERS
from .paths import (
    BindingMode,
    FieldPath,
    ParsedExpression,
    extract_dependencies,
    infer_mode,
    parse_expression,
    parse_path,
    parse_transform,
)
from .spec import BindingSpec, load_bindings
from .values import (
    UNRESOLVED,
    EntityId,
    EntityList,
    EntityReference,
    FieldValue,
    TargetKey,
    extract_value,
    is_unresolved,
    same_value,
)

__all__ = [
    # Values
    "UNRESOLVED",
    "EntityId",
    "EntityList",
    "EntityReference",
    "FieldValue",
    "TargetKey",
    "extract_value",
    "is_unresolved",
    "same_value",
    # Errors
    "BindingError",
    "EvaluationError",
    "InvalidPathSyntax",
    "RegistryClosedError",
    "StoreUnavailable",
    # Path language
    "BindingMode",
    "FieldPath",
    "ParsedExpression",
    "extract_dependencies",
    "infer_mode",
    "parse_expression",
    "parse_path",
    "parse_transform",
    # Bindings
    "BindingSpec",
    "load_bindings",
    # Evaluation
    "ExpressionEvaluator",
    "Program",
    "compile_expression",
    "evaluate",
    "SCRIPT_HELPERS",
    "SCRIPT_CONSTANTS",
]
