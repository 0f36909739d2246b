"""
Hash utility functions for migration checksums.

A migration checksum is a SHA-256 digest over the migration's identity
(name and version) and the source of its logic, so that any edit to an
already-applied migration is detected on the next startup.
"""

import functools
import hashlib
import inspect
import types
from typing import Any, Callable


def generate_content_hash(content: bytes) -> str:
    """
    Generate SHA-256 hash of raw content.

    Args:
        content: Content bytes

    Returns:
        SHA-256 hash (64 hex characters)
    """
    return hashlib.sha256(content).hexdigest()


def _const_fingerprint(value: Any) -> bytes:
    if isinstance(value, types.CodeType):
        return _code_fingerprint(value)
    if isinstance(value, tuple):
        return b"(" + b",".join(_const_fingerprint(v) for v in value) + b")"
    if isinstance(value, frozenset):
        # Iteration order of string sets varies with hash randomization
        return b"{" + b",".join(sorted(_const_fingerprint(v) for v in value)) + b"}"
    return repr(value).encode("utf-8")


def _code_fingerprint(code: types.CodeType) -> bytes:
    """Bytecode, names and constants of a code object, nested code included."""
    return b"|".join([
        code.co_code,
        repr(code.co_names).encode("utf-8"),
        _const_fingerprint(code.co_consts),
    ])


def get_logic_source(transform: Any) -> bytes:
    """
    Get the bytes that represent a migration's logic.

    - functools.partial: logic of the wrapped callable plus its bound arguments
    - Bound methods of Migration instances: source of the whole class,
      which includes any SQL embedded as class attributes
    - Plain functions: source of the function
    - Callable instances: source of their class
    - Anything without retrievable source: bytecode fingerprint

    The result never contains memory addresses, so the same transform
    produces the same bytes in every process.

    Args:
        transform: Callable that performs the migration

    Returns:
        Bytes to feed into the checksum

    Raises:
        TypeError: If the transform has neither source nor bytecode
    """
    if isinstance(transform, functools.partial):
        bound = repr((transform.args, sorted(transform.keywords.items())))
        return get_logic_source(transform.func) + b"\npartial" + bound.encode("utf-8")

    if inspect.isbuiltin(transform):
        module = getattr(transform, "__module__", None) or ""
        return f"builtin:{module}.{transform.__qualname__}".encode("utf-8")

    if inspect.ismethod(transform):
        owner = transform.__self__
        target = owner if inspect.isclass(owner) else type(owner)
        code = getattr(transform.__func__, "__code__", None)
    elif inspect.isfunction(transform):
        target = transform
        code = transform.__code__
    elif callable(transform):
        target = type(transform)
        code = getattr(getattr(target, "__call__", None), "__code__", None)
    else:
        raise TypeError(f"Migration logic must be callable, got {type(transform).__name__}")

    try:
        return inspect.getsource(target).encode("utf-8")
    except (OSError, TypeError):
        if code is None:
            raise TypeError(
                f"Cannot fingerprint migration logic of type {type(transform).__name__}"
            )
        return _code_fingerprint(code)


def compute_migration_checksum(name: str, version: str, transform: Callable) -> str:
    """
    Compute the checksum of a migration.

    Args:
        name: Unique migration name
        version: Version label
        transform: Callable that performs the migration

    Returns:
        SHA-256 hex digest
    """
    header = f"{name}\n{version}\n".encode("utf-8")
    return generate_content_hash(header + get_logic_source(transform))
