"""
Hook process entry point.

Runs inside the dedicated child process. Installs the memory limit and
the runtime audit guard, signals readiness, then executes the hook with a
curated set of builtins and host-function proxies. All communication with
the supervising process is JSON over a multiprocessing Connection.
"""

import builtins
import json
import sys
from types import MappingProxyType
from typing import Any, Dict, List, Optional

import psutil

from .policy import classify_event

try:
    import resource
except ImportError:  # not available on this platform
    resource = None

HOOK_FILENAME = "<hook>"

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bin", "bool", "bytes", "callable", "chr", "dict",
    "divmod", "enumerate", "filter", "float", "frozenset", "hash", "hex",
    "int", "isinstance", "iter", "len", "list", "map", "max", "min", "next",
    "oct", "ord", "pow", "range", "repr", "reversed", "round", "set",
    "slice", "sorted", "str", "sum", "tuple", "zip",
    "True", "False", "None",
    "ArithmeticError", "AssertionError", "AttributeError", "IndexError",
    "KeyError", "LookupError", "NameError", "RuntimeError", "StopIteration",
    "TypeError", "ValueError", "ZeroDivisionError",
)


class HostFunctionError(RuntimeError):
    """Raised inside a hook when a host function reports an error."""


class CapabilityDenied(BaseException):
    """Raised by the audit guard. Not catchable by hook code."""


class Channel:
    """JSON messages over a Connection."""

    def __init__(self, conn):
        self.conn = conn

    def send(self, message: Dict[str, Any]) -> None:
        self.conn.send_bytes(json.dumps(message).encode("utf-8"))

    def recv(self) -> Dict[str, Any]:
        return json.loads(self.conn.recv_bytes().decode("utf-8"))


class AuditGuard:
    """
    Runtime audit hook denying every event once armed.

    The only event allowed while armed is the exec of the approved hook
    code object. Host-function proxies suspend the guard while they talk
    to the supervisor. After the first violation every event is denied.
    """

    def __init__(self, channel: Channel, code):
        self.channel = channel
        self.code = code
        self.armed = False
        self.suspended = 0
        self.violated = False
        self._exec_seen = False

    def __call__(self, event: str, args) -> None:
        if not self.armed or (self.suspended and not self.violated):
            return
        if event == "exec" and not self._exec_seen and args and args[0] is self.code:
            self._exec_seen = True
            return
        capability = classify_event(event)
        if not self.violated:
            self.violated = True
            self.suspended += 1
            try:
                self.channel.send({
                    "type": "violation",
                    "event": event,
                    "capability": capability.value if capability else None,
                })
            finally:
                self.suspended -= 1
        raise CapabilityDenied(event)


def _limit_address_space(extra_bytes: int) -> Optional[int]:
    if resource is None:
        return None
    limit = psutil.Process().memory_info().vms + extra_bytes
    try:
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard != resource.RLIM_INFINITY and hard < limit:
            limit = hard
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError):
        return None
    return limit


def _make_proxy(channel: Channel, guard: AuditGuard, name: str):
    def proxy(*args, **kwargs):
        payload = json.dumps({"type": "call", "op": name, "args": list(args), "kwargs": kwargs})
        guard.suspended += 1
        try:
            channel.conn.send_bytes(payload.encode("utf-8"))
            reply = channel.recv()
        finally:
            guard.suspended -= 1
        if reply.get("ok"):
            return reply.get("value")
        error = reply.get("error") or {}
        raise HostFunctionError(error.get("message", f"{name} failed"))

    proxy.__name__ = name
    proxy.__qualname__ = name
    return proxy


def _build_namespace(
    channel: Channel,
    guard: AuditGuard,
    host_names: List[str],
    context: Dict[str, Any],
) -> Dict[str, Any]:
    safe_builtins = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
    safe_builtins["HostFunctionError"] = HostFunctionError

    namespace: Dict[str, Any] = {
        "__builtins__": safe_builtins,
        "__name__": "hook",
        "context": MappingProxyType(dict(context)),
        "dry_run": bool(context.get("dry_run", False)),
    }
    for name in host_names:
        namespace[name] = _make_proxy(channel, guard, name)

    if "log" in namespace:
        log = namespace["log"]

        def _print(*args, sep=" ", end="\n"):
            log(str(sep).join(str(a) for a in args))

        namespace["print"] = _print

    return namespace


def _chain_contains(exc: BaseException, kind: type) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, kind):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def run_hook_child(
    conn,
    script_source: str,
    policy: Dict[str, Any],
    host_names: List[str],
    context: Dict[str, Any],
) -> None:
    """Entry point of the hook process."""
    channel = Channel(conn)
    try:
        code = compile(script_source, HOOK_FILENAME, "exec")
        guard = AuditGuard(channel, code)
        namespace = _build_namespace(channel, guard, host_names, context)
        address_limit = _limit_address_space(policy["memory_limit_bytes"])
        sys.addaudithook(guard)
    except SyntaxError as e:
        channel.send({"type": "result", "status": "failed", "error": f"SyntaxError: {e}"})
        return
    except (MemoryError, ValueError, OSError) as e:
        channel.send({"type": "setup_failed", "error": f"{type(e).__name__}: {e}"})
        return

    channel.send({"type": "ready", "address_space_limit": address_limit})

    guard.armed = True
    try:
        exec(code, namespace)
    except CapabilityDenied:
        guard.armed = False
        return
    except BaseException as e:
        guard.armed = False
        if guard.violated or _chain_contains(e, CapabilityDenied):
            return
        if _chain_contains(e, MemoryError):
            channel.send({"type": "memory"})
            return
        channel.send({
            "type": "result",
            "status": "failed",
            "error": f"{type(e).__name__}: {e}",
        })
        return
    guard.armed = False

    if guard.violated:
        return
    channel.send({"type": "result", "status": "completed", "error": None})
