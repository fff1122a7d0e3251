import functools
import importlib.util
import os
import threading
from types import ModuleType
from typing import Callable, Optional

_MODULE_CACHE: dict[str, ModuleType] = {}
_MODULE_LOCK = threading.RLock()

BASE_DIR = os.path.dirname(os.path.realpath(__file__))


def resolve_callback_path(path: str) -> str:
    """Relative callback paths are taken from the application directory."""
    if os.path.isabs(path):
        return path
    return os.path.join(BASE_DIR, path)


def load_func(path: str, func_name: str) -> Callable:
    """
    Load (with thread-safe cache) a Python module from `path`
    and return the callable attribute `func_name`.
    """
    abs_path = os.path.abspath(resolve_callback_path(path))

    with _MODULE_LOCK:
        mod = _MODULE_CACHE.get(abs_path)
        if mod is None:
            spec = importlib.util.spec_from_file_location(f"cb_{abs(hash(abs_path))}", abs_path)
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot load callback module: {path}")
            mod = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(mod)  # type: ignore[attr-defined]
            _MODULE_CACHE[abs_path] = mod

        func = getattr(mod, func_name, None)
        if not callable(func):
            raise AttributeError(f"Callback '{func_name}' not found or not callable in {path}")

        return func


def load_callback(decl: Optional[dict], default_func: str, options: Optional[dict] = None) -> Callable:
    """
    Load the callback described by a config block {path, func} and bind
    `options` as keyword arguments.
    """
    decl = decl or {}
    path = decl.get("path")
    if not path:
        raise ValueError("callback block requires 'path'")
    func = load_func(path, decl.get("func") or default_func)
    if options:
        return functools.partial(func, **options)
    return func
