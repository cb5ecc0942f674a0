"""Generators for helper programs executed inside the interpreter.

Structural file operations, tree traversals and package queries run inside
the interpreter so they observe exactly what guest code observes. Each
generator returns Python source whose final expression is a JSON payload
tagged with schema_version and kind (see pyworkspace.core.schemas).

Paths are embedded as Python literals via repr(), never spliced into code
unquoted. Helpers run with the workspace root as working directory, so every
path is workspace-relative ("" meaning the root).
"""

from __future__ import annotations

import re

SCHEMA_VERSION = 1

_ENTRY_HELPER = '''
import os

def _entry(rel):
    target = rel or "."
    st = os.stat(target)
    return {
        "name": os.path.basename(rel),
        "path": rel,
        "type": "directory" if os.path.isdir(target) else "file",
        "size": st.st_size,
        "modified": st.st_mtime,
    }

def _walk():
    for root, dirs, files in os.walk("."):
        dirs.sort()
        base = "" if root == "." else os.path.relpath(root, ".").replace(os.sep, "/")
        for name in dirs + sorted(files):
            yield base + "/" + name if base else name
'''


def _literal(value: object) -> str:
    return repr(value)


def normalize_distribution_name(name: str) -> str:
    """PEP 503 normalization of a distribution name."""
    return re.sub(r"[-_.]+", "-", name).lower()


def list_directory(path: str) -> str:
    return _ENTRY_HELPER + f"""
_path = {_literal(path)}
_entries = []
if os.path.isdir(_path or "."):
    for _name in os.listdir(_path or "."):
        _entries.append(_entry(_path + "/" + _name if _path else _name))
_entries.sort(key=lambda e: (e["type"] != "directory", e["name"].lower()))
{{"schema_version": {SCHEMA_VERSION}, "kind": "listing", "entries": _entries}}
"""


def list_tree() -> str:
    return _ENTRY_HELPER + f"""
_entries = [_entry(_p) for _p in _walk()]
{{"schema_version": {SCHEMA_VERSION}, "kind": "listing", "entries": _entries}}
"""


def file_info(path: str) -> str:
    return _ENTRY_HELPER + f"""
_path = {_literal(path)}
{{"schema_version": {SCHEMA_VERSION}, "kind": "info", "entry": _entry(_path) if os.path.exists(_path or ".") else None}}
"""


def search(term: str, by_content: bool) -> str:
    return _ENTRY_HELPER + f"""
import re

_term = {_literal(term)}
try:
    _pattern = re.compile(_term, re.IGNORECASE)
except re.error:
    _pattern = re.compile(re.escape(_term), re.IGNORECASE)

def _matches(rel):
    if _pattern.search(os.path.basename(rel)):
        return True
    if {_literal(by_content)} and os.path.isfile(rel):
        try:
            with open(rel, encoding="utf-8") as f:
                return _pattern.search(f.read()) is not None
        except (OSError, UnicodeDecodeError):
            return False
    return False

_entries = [_entry(_p) for _p in _walk() if _matches(_p)]
{{"schema_version": {SCHEMA_VERSION}, "kind": "listing", "entries": _entries}}
"""


def stats() -> str:
    return _ENTRY_HELPER + f"""
_files = 0
_size = 0
_dirs = 0
_latest = None
for _p in _walk():
    _st = os.stat(_p)
    if os.path.isdir(_p):
        _dirs += 1
    else:
        _files += 1
        _size += _st.st_size
    _latest = _st.st_mtime if _latest is None else max(_latest, _st.st_mtime)
{{"schema_version": {SCHEMA_VERSION}, "kind": "stats", "total_files": _files, "total_size": _size, "directories": _dirs, "last_modified": _latest}}
"""


def delete(path: str) -> str:
    return f"""
import os
import shutil

_path = {_literal(path)}
if os.path.isdir(_path) and not os.path.islink(_path):
    shutil.rmtree(_path)
elif os.path.lexists(_path):
    os.remove(_path)
else:
    raise FileNotFoundError("No such file or directory: " + _path)
{{"schema_version": {SCHEMA_VERSION}, "kind": "operation", "operation": "delete", "path": _path}}
"""


def move(source: str, destination: str) -> str:
    return f"""
import os
import shutil

_src = {_literal(source)}
_dst = {_literal(destination)}
if not os.path.lexists(_src):
    raise FileNotFoundError("No such file or directory: " + _src)
if os.path.dirname(_dst):
    os.makedirs(os.path.dirname(_dst), exist_ok=True)
shutil.move(_src, _dst)
{{"schema_version": {SCHEMA_VERSION}, "kind": "operation", "operation": "move", "path": _src, "destination": _dst}}
"""


def copy(source: str, destination: str) -> str:
    return f"""
import os
import shutil

_src = {_literal(source)}
_dst = {_literal(destination)}
if not os.path.lexists(_src):
    raise FileNotFoundError("No such file or directory: " + _src)
if os.path.dirname(_dst):
    os.makedirs(os.path.dirname(_dst), exist_ok=True)
if os.path.isdir(_src):
    shutil.copytree(_src, _dst)
else:
    shutil.copy2(_src, _dst)
{{"schema_version": {SCHEMA_VERSION}, "kind": "operation", "operation": "copy", "path": _src, "destination": _dst}}
"""


def make_directories(paths: list[str]) -> str:
    return f"""
import os

_paths = {_literal(list(paths))}
for _p in _paths:
    os.makedirs(_p, exist_ok=True)
{{"schema_version": {SCHEMA_VERSION}, "kind": "operation", "operation": "mkdir", "path": _paths[0] if _paths else ""}}
"""


_DISTRIBUTIONS_HELPER = '''
import importlib.metadata
import re

def _normalize(name):
    return re.sub(r"[-_.]+", "-", name or "").lower()

def _distributions(site):
    seen = set()
    for dist in importlib.metadata.distributions(path=[site]):
        name = dist.metadata["Name"]
        if not name or _normalize(name) in seen:
            continue
        seen.add(_normalize(name))
        yield dist

def _find(site, name):
    for dist in _distributions(site):
        if _normalize(dist.metadata["Name"]) == _normalize(name):
            return dist
    raise importlib.metadata.PackageNotFoundError(name)
'''


def installed_packages(site_packages: str) -> str:
    return _DISTRIBUTIONS_HELPER + f"""
_packages = []
for _dist in _distributions({_literal(site_packages)}):
    _meta = _dist.metadata
    _packages.append({{
        "name": _meta["Name"],
        "version": _dist.version or "",
        "installed": True,
        "summary": _meta.get("Summary") or "",
        "author": _meta.get("Author") or _meta.get("Author-email") or "",
        "homepage": _meta.get("Home-page") or "",
        "license": _meta.get("License") or "",
    }})
_packages.sort(key=lambda p: p["name"].lower())
{{"schema_version": {SCHEMA_VERSION}, "kind": "packages", "packages": _packages}}
"""


def uninstall(site_packages: str, name: str) -> str:
    return _DISTRIBUTIONS_HELPER + f"""
import os

_site = os.path.abspath({_literal(site_packages)})
_dist = _find(_site, {_literal(name)})
if _dist.files is None:
    raise RuntimeError("Distribution has no RECORD: " + _dist.metadata["Name"])
_removed = 0
_parents = set()
for _f in _dist.files:
    _p = os.path.abspath(str(_dist.locate_file(_f)))
    if not _p.startswith(_site + os.sep):
        continue
    if os.path.isfile(_p) or os.path.islink(_p):
        os.remove(_p)
        _removed += 1
    _parents.add(os.path.dirname(_p))
for _d in sorted(_parents, key=len, reverse=True):
    while _d != _site and _d.startswith(_site + os.sep) and os.path.isdir(_d) and not os.listdir(_d):
        os.rmdir(_d)
        _d = os.path.dirname(_d)
{{"schema_version": {SCHEMA_VERSION}, "kind": "operation", "operation": "uninstall", "path": {_literal(name)}, "removed": _removed}}
"""


def dependencies(site_packages: str, name: str) -> str:
    return _DISTRIBUTIONS_HELPER + f"""
_dist = _find({_literal(site_packages)}, {_literal(name)})
_deps = []
for _req in _dist.requires or []:
    if ";" in _req and "extra ==" in _req.split(";", 1)[1]:
        continue
    _dep = re.split(r"[\\s<>=!~;\\[(]", _req.strip(), maxsplit=1)[0]
    if _dep and _dep not in _deps:
        _deps.append(_dep)
{{"schema_version": {SCHEMA_VERSION}, "kind": "dependencies", "package": _dist.metadata["Name"], "dependencies": _deps}}
"""
