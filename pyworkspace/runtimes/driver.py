"""Guest-side driver executed inside the workspace interpreter.

This file runs *inside* the interpreter (CPython on WASM or an isolated host
CPython child process), never in the host process. It is copied into the
control directory of every mount and launched once per submission:

    python -I driver.py <control-dir>

The driver reads ``job.json`` from the control directory, restores persisted
globals, executes the submitted source with support for top-level ``await``,
evaluates the final expression (if any) as the submission's value, saves the
JSON-serializable globals back and writes ``result.json``.

Only the standard library may be used here.
"""

import ast
import base64
import builtins
import datetime
import inspect
import json
import os
import sys
import traceback
from pathlib import PurePath

RESULT_SCHEMA_VERSION = 1

_IO_TYPES = (
    "TextIOWrapper",
    "BufferedReader",
    "BufferedWriter",
    "BufferedRandom",
    "FileIO",
    "BytesIO",
    "StringIO",
)


def _is_io_object(v):
    if type(v).__name__ in _IO_TYPES:
        return True
    return hasattr(v, "read") and hasattr(v, "close") and hasattr(v, "fileno")


def _serialize_value(v):
    if isinstance(v, PurePath):
        return str(v)
    if isinstance(v, (datetime.datetime, datetime.date, datetime.time)):
        return v.isoformat()
    if isinstance(v, (set, frozenset)):
        return [_serialize_value(item) for item in v]
    if isinstance(v, bytes):
        return "b64:" + base64.b64encode(v).decode("ascii")
    if isinstance(v, dict):
        return {str(k): _serialize_value(val) for k, val in v.items() if not _is_io_object(val)}
    if isinstance(v, (list, tuple)):
        return [_serialize_value(item) for item in v if not _is_io_object(item)]
    return v


def _filter_globals(namespace):
    state = {}
    for key, value in list(namespace.items()):
        if key.startswith("_") or callable(value) or inspect.ismodule(value):
            continue
        if _is_io_object(value):
            continue
        try:
            converted = _serialize_value(value)
            json.dumps(converted)
        except (TypeError, ValueError, RecursionError):
            continue
        state[key] = converted
    return state


def _load_globals(path, namespace):
    try:
        with open(path, encoding="utf-8") as f:
            loaded = json.load(f)
    except FileNotFoundError:
        return
    if isinstance(loaded, dict):
        namespace.update(loaded)


def _save_globals(path, namespace):
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(_filter_globals(namespace), f)
    os.replace(tmp, path)


def _compile(source, filename):
    """Split source into a body code object and an optional final expression."""
    flags = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT
    tree = ast.parse(source, filename=filename, mode="exec")
    expression = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        expression = ast.Expression(tree.body.pop().value)
        ast.fix_missing_locations(expression)
    body = compile(tree, filename, "exec", flags=flags)
    expr_code = compile(expression, filename, "eval", flags=flags) if expression else None
    return body, expr_code


def _evaluate(code, namespace):
    if code.co_flags & inspect.CO_COROUTINE:
        import asyncio

        return asyncio.run(eval(code, namespace))
    return eval(code, namespace)


def _print_user_traceback(exc):
    tb = exc.__traceback__
    # Drop the driver's own frames
    while tb is not None and tb.tb_frame.f_code.co_filename == __file__:
        tb = tb.tb_next
    traceback.print_exception(type(exc), exc, tb, file=sys.stderr)


def _encode_value(value):
    if value is None:
        return None, None
    try:
        converted = _serialize_value(value)
        json.dumps(converted)
        return converted, repr(value)
    except (TypeError, ValueError, RecursionError):
        return None, repr(value)


def run_job(control_dir):
    with open(os.path.join(control_dir, "job.json"), encoding="utf-8") as f:
        job = json.load(f)

    os.environ.update(job.get("env") or {})
    # Workspace modules are importable by user code only; installed
    # distributions take precedence
    if job.get("user_paths", True) and job["workspace"] not in sys.path:
        sys.path.insert(0, job["workspace"])
    site_packages = job.get("site_packages")
    if site_packages and site_packages not in sys.path:
        sys.path.insert(0, site_packages)
    os.chdir(job["workspace"])

    namespace = {"__name__": "__main__", "__builtins__": builtins}
    globals_file = job.get("globals_file")
    if globals_file:
        _load_globals(globals_file, namespace)

    payload = {
        "schema_version": RESULT_SCHEMA_VERSION,
        "kind": "execution",
        "success": True,
        "value": None,
        "value_repr": None,
        "error": None,
        "error_type": None,
        "python_version": sys.version.split()[0],
    }

    try:
        with open(job["source_file"], encoding="utf-8") as f:
            source = f.read()
        body, expression = _compile(source, job.get("filename") or "<workspace>")
        _evaluate(body, namespace)
        if expression is not None:
            payload["value"], payload["value_repr"] = _encode_value(
                _evaluate(expression, namespace)
            )
    except SystemExit as exc:
        if exc.code not in (None, 0):
            payload["success"] = False
            payload["error"] = f"SystemExit: {exc.code}"
            payload["error_type"] = "SystemExit"
    except BaseException as exc:
        _print_user_traceback(exc)
        payload["success"] = False
        payload["error"] = f"{type(exc).__name__}: {exc}"
        payload["error_type"] = type(exc).__name__
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        # User code may have changed directory
        os.chdir(job["workspace"])

    if globals_file:
        try:
            _save_globals(globals_file, namespace)
        except OSError as exc:
            print(f"Failed to persist globals: {exc}", file=sys.stderr)

    result_file = job["result_file"]
    with open(result_file + ".tmp", "w", encoding="utf-8") as f:
        json.dump(payload, f)
    os.replace(result_file + ".tmp", result_file)
    return 0


if __name__ == "__main__":
    sys.exit(run_job(sys.argv[1]))
