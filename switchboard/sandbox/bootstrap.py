"""Child-side entry point for one sandboxed service invocation.

Runs as ``python -I -S -B bootstrap.py <artifact>`` with the grant in the
``SWITCHBOARD_GRANT`` environment variable. Applies resource limits, installs
an audit hook that stays active for the life of the process, then runs the
artifact as ``__main__``. The artifact reads one JSON line from stdin and
writes one JSON line to stdout.

The hook never calls back into objects the service controls: paths and
addresses are only inspected when they are exact ``str``/``bytes`` (or stdlib
``pathlib``) values, and everything it closes over is immutable.

Standard library only: this file is executed outside the parent's environment.
"""

import json
import os
import pathlib
import runpy
import socket
import sys

GRANT_ENV = "SWITCHBOARD_GRANT"
BLOCKED_EVENTS = frozenset(
    {
        "subprocess.Popen",
        "os.system",
        "os.exec",
        "os.posix_spawn",
        "os.spawn",
        "os.fork",
        "os.forkpty",
        "os.kill",
        "os.killpg",
        "pty.spawn",
        "ctypes.dlopen",
        "ctypes.dlsym",
        "ctypes.cdata",
        "sys.addaudithook",
        "sys.setprofile",
        "sys.settrace",
        "sys._current_frames",
        "gc.get_objects",
        "gc.get_referrers",
        "gc.get_referents",
    }
)
# extension modules that reach fork/exec, shared memory or raw memory without an audit event
BLOCKED_MODULES = frozenset(
    {
        "_posixsubprocess",
        "_posixshmem",
        "_ctypes",
        "_testcapi",
        "_testinternalcapi",
        "_xxsubinterpreters",
        "_interpreters",
        "_xxinterpchannels",
    }
)
# attributes that lead from a traceback or suspended coroutine into live frames
FRAME_ATTRIBUTES = frozenset({"tb_frame", "gi_frame", "cr_frame", "ag_frame"})
WRITE_EVENTS = frozenset({"os.remove", "os.rmdir", "os.mkdir", "os.rename", "os.chmod", "os.chown", "os.truncate"})
WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC
PATH_TYPES = (pathlib.PurePosixPath, pathlib.PosixPath, pathlib.PureWindowsPath, pathlib.WindowsPath, pathlib.Path)


def _under(path, roots):
    for root in roots:
        if path == root or path.startswith(root.rstrip(os.sep) + os.sep):
            return True
    return False


def _as_text(value):
    """Plain text for ``str``/``bytes``/stdlib paths, ``None`` for anything else."""
    kind = type(value)
    if kind is str:
        return value
    if kind is bytes:
        return os.fsdecode(value)
    if kind in PATH_TYPES:
        return str(value)
    return None


def _interpreter_roots():
    roots = {sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix}
    for entry in sys.path:
        if entry:
            roots.add(entry)
    try:
        import zoneinfo

        roots.update(zoneinfo.TZPATH)
    except ImportError:
        pass
    return tuple(os.path.realpath(item) for item in roots if item)


def apply_limits(limits):
    if not limits:
        return
    try:
        import resource
    except ImportError:
        return
    for name, key in (
        ("RLIMIT_CPU", "cpu_seconds"),
        ("RLIMIT_AS", "memory_bytes"),
        ("RLIMIT_NOFILE", "open_files"),
        ("RLIMIT_CORE", "core_bytes"),
    ):
        value = limits.get(key)
        if not isinstance(value, int) or not hasattr(resource, name):
            continue
        limit = getattr(resource, name)
        _, hard = resource.getrlimit(limit)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(limit, (value, value))


def build_guard(grant, artifact):
    hosts = frozenset(str(item).lower().rstrip(".") for item in grant.get("hosts", []))
    write_roots = tuple(os.path.realpath(item) for item in grant.get("write", []))
    read_roots = (
        _interpreter_roots()
        + (os.path.realpath(os.path.dirname(artifact)),)
        + tuple(os.path.realpath(item) for item in grant.get("read", []))
        + write_roots
        + ("/dev/null", "/dev/urandom")
    )
    resolved = None

    def _allowed_addresses():
        nonlocal resolved
        if resolved is None:
            addresses = set()
            for host in hosts:
                try:
                    for info in socket.getaddrinfo(host, None):
                        addresses.add(info[4][0])
                except OSError:
                    continue
            resolved = frozenset(addresses)
        return resolved

    def _check_address(event, address):
        if not hosts:
            raise PermissionError(f"{event}: network access not granted")
        if type(address) is not tuple or not address:
            raise PermissionError(f"{event}: address family not permitted")
        host = _as_text(address[0])
        if host is None:
            raise PermissionError(f"{event}: unsupported address")
        host = host.lower()
        if host in hosts or host in _allowed_addresses():
            return
        raise PermissionError(f"{event}: host {host} not in allowlist")

    def _check_path(event, path, writing):
        if type(path) is int:
            return
        text = _as_text(path)
        if text is None:
            raise PermissionError(f"{event}: unsupported path")
        target = os.path.realpath(text)
        roots = write_roots if writing else read_roots
        if not _under(target, roots):
            raise PermissionError(f"{event}: {'write' if writing else 'read'} access to {target} not granted")

    def guard(event, args):
        if event in BLOCKED_EVENTS:
            raise PermissionError(f"{event} not permitted in sandbox")
        if event == "import":
            name = args[0] if type(args[0]) is str else None
            if name is None or name in BLOCKED_MODULES:
                raise PermissionError(f"import of {name} not permitted in sandbox")
        elif event == "object.__getattr__":
            if len(args) > 1 and (type(args[1]) is not str or args[1] in FRAME_ATTRIBUTES):
                raise PermissionError("frame access not permitted in sandbox")
        elif event == "socket.getaddrinfo":
            if args[0] is None:
                return
            host = _as_text(args[0])
            if not hosts:
                raise PermissionError("socket.getaddrinfo: network access not granted")
            if host is None or host.lower().rstrip(".") not in hosts:
                raise PermissionError(f"socket.getaddrinfo: host {host} not in allowlist")
        elif event == "socket.gethostbyname" or event == "socket.gethostbyaddr":
            if not hosts:
                raise PermissionError(f"{event}: network access not granted")
        elif event in ("socket.connect", "socket.sendto", "socket.sendmsg"):
            if len(args) > 1 and args[1] is not None:
                _check_address(event, args[1])
        elif event == "open":
            path, mode, flags = args[0], args[1], args[2] if len(args) > 2 else 0
            mode = mode if type(mode) is str else ""
            flags = flags if type(flags) is int else 0
            writing = any(ch in mode for ch in "wax+") or bool(flags & WRITE_FLAGS)
            _check_path(event, path, writing)
        elif event in WRITE_EVENTS:
            _check_path(event, args[0], True)
            if event == "os.rename" and len(args) > 1:
                _check_path(event, args[1], True)
        elif event in ("os.listdir", "os.scandir"):
            _check_path(event, args[0] if args and args[0] is not None else ".", False)

    return guard


def main(argv):
    if len(argv) < 2:
        sys.stderr.write("usage: bootstrap.py <artifact>\n")
        return 2
    artifact = os.path.realpath(argv[1])
    try:
        grant = json.loads(os.environ.pop(GRANT_ENV, "{}"))
    except ValueError:
        sys.stderr.write("invalid sandbox grant\n")
        return 2
    apply_limits(grant.get("limits"))
    for name in BLOCKED_MODULES:
        sys.modules.pop(name, None)
    sys.addaudithook(build_guard(grant, artifact))
    sys.argv = [artifact]
    runpy.run_path(artifact, run_name="__main__")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
