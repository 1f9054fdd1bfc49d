"""
Tests for the hook script sandbox: policy, static screening and the
supervised hook process.
"""

import time

import pytest

from craftgate.core.config import SandboxConfig
from craftgate.core.exceptions import (
    CapabilityViolationError,
    ChainBrokenError,
    KeyRevokedError,
    SandboxError,
    SandboxLimitExceededError,
    SandboxTimeoutError,
)
from craftgate.sandbox import (
    Capability,
    HookContext,
    HookStatus,
    MANDATORY_DISABLED,
    SandboxPolicy,
    ScriptSandbox,
    classify_event,
    screen_script,
)


@pytest.fixture
def sandbox(ledger):
    return ScriptSandbox(
        ledger,
        host_functions={"add": lambda context, a, b: a + b},
        config=SandboxConfig(poll_interval_seconds=0.01, timeout_seconds=20.0),
    )


class TestSandboxPolicy:
    """Test policy construction."""

    def test_defaults(self):
        """Test default limits and capabilities."""
        policy = SandboxPolicy()
        assert policy.memory_limit_bytes == 256 * 1024 * 1024
        assert policy.timeout_seconds == 30.0
        assert policy.disabled_capabilities == MANDATORY_DISABLED

    def test_capabilities_cannot_be_enabled(self):
        """Test an empty disabled set still disables everything."""
        policy = SandboxPolicy(disabled_capabilities=frozenset())
        assert policy.disabled_capabilities == frozenset(Capability)

    def test_capability_values_accepted(self):
        """Test capabilities given by value."""
        policy = SandboxPolicy(disabled_capabilities=frozenset({"network"}))
        assert Capability.NETWORK in policy.disabled_capabilities

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"memory_limit_bytes": 0},
            {"memory_limit_bytes": -1},
            {"memory_limit_bytes": True},
            {"memory_limit_bytes": 1.5},
            {"timeout_seconds": 0},
            {"timeout_seconds": -2.0},
            {"timeout_seconds": "10"},
        ],
    )
    def test_invalid_limits(self, kwargs):
        """Test non-positive or mistyped limits."""
        with pytest.raises(SandboxError) as exc_info:
            SandboxPolicy(**kwargs)
        assert exc_info.value.code == "SANDBOX_POLICY_INVALID"

    def test_from_config(self):
        """Test policies built from configuration."""
        policy = SandboxPolicy.from_config(SandboxConfig(memory_limit_bytes=1024, timeout_seconds=2.0))
        assert policy.memory_limit_bytes == 1024
        assert policy.timeout_seconds == 2.0

    def test_to_dict(self):
        """Test policy serialization."""
        data = SandboxPolicy().to_dict()
        assert data["disabled_capabilities"] == [
            "dynamic_loading", "network", "process_spawn", "raw_filesystem",
        ]


class TestClassifyEvent:
    """Test mapping of runtime audit events to capabilities."""

    @pytest.mark.parametrize(
        "event,capability",
        [
            ("subprocess.Popen", Capability.PROCESS_SPAWN),
            ("os.system", Capability.PROCESS_SPAWN),
            ("os.exec", Capability.PROCESS_SPAWN),
            ("os.posix_spawn", Capability.PROCESS_SPAWN),
            ("socket.connect", Capability.NETWORK),
            ("urllib.Request", Capability.NETWORK),
            ("import", Capability.DYNAMIC_LOADING),
            ("ctypes.dlopen", Capability.DYNAMIC_LOADING),
            ("compile", Capability.DYNAMIC_LOADING),
            ("open", Capability.RAW_FILESYSTEM),
            ("os.remove", Capability.RAW_FILESYSTEM),
            ("shutil.rmtree", Capability.RAW_FILESYSTEM),
            ("object.__getattr__", None),
        ],
    )
    def test_classify(self, event, capability):
        """Test event classification."""
        assert classify_event(event) is capability


class TestScreenScript:
    """Test static screening."""

    def test_clean_script(self):
        """Test ordinary hook code passes."""
        screen_script(
            "total = 0\n"
            "for i in range(10):\n"
            "    total += i\n"
            "def double(x):\n"
            "    return x * 2\n"
            "try:\n"
            "    log(str(double(total)))\n"
            "except HostFunctionError as e:\n"
            "    pass\n"
        )

    @pytest.mark.parametrize(
        "source,capability",
        [
            ("import os", "dynamic_loading"),
            ("from subprocess import run", "dynamic_loading"),
            ("open('/etc/shadow')", "raw_filesystem"),
            ("eval('1')", "dynamic_loading"),
            ("exec('x = 1')", "dynamic_loading"),
            ("().__class__", None),
            ("__builtins__", None),
            ("getattr(log, 'x')", None),
            ("(x for x in []).gi_frame", None),
            ("try:\n    pass\nexcept:\n    pass", None),
            ("def __init__(self):\n    pass", None),
            ("def f(__x):\n    pass", None),
        ],
    )
    def test_violations(self, source, capability):
        """Test constructs rejected before the script runs."""
        with pytest.raises(CapabilityViolationError) as exc_info:
            screen_script(source)
        assert exc_info.value.capability == capability

    def test_syntax_error(self):
        """Test unparseable scripts."""
        with pytest.raises(SyntaxError):
            screen_script("def (:")


class TestScriptSandboxSetup:
    """Test sandbox construction."""

    @pytest.mark.parametrize("name", ["_private", "not valid", "1abc"])
    def test_invalid_host_function_names(self, ledger, name):
        """Test host functions must have plain identifier names."""
        with pytest.raises(ValueError):
            ScriptSandbox(ledger, host_functions={name: lambda context: None})

    def test_log_always_available(self, ledger):
        """Test the log host function is always present."""
        assert ScriptSandbox(ledger).host_function_names == ["log"]


class TestHookContext:
    """Test the invocation context handed to host functions."""

    def test_no_deadline(self):
        """Test contexts without a deadline report no remaining time."""
        assert HookContext().remaining_seconds() is None

    def test_deadline_passed(self):
        """Test an expired deadline leaves nothing."""
        context = HookContext(deadline=time.monotonic() - 5.0)
        assert context.remaining_seconds() == 0.0

    def test_deadline_ahead(self):
        """Test remaining time counts down toward the deadline."""
        context = HookContext(deadline=time.monotonic() + 5.0)
        assert 0.0 < context.remaining_seconds() <= 5.0

    def test_deadline_not_serialized(self):
        """Test the deadline stays on the host side."""
        assert "deadline" not in HookContext(deadline=time.monotonic()).to_dict()


class TestScriptSandboxRejections:
    """Test hooks refused before any process starts."""

    def test_deeply_nested_script(self, sandbox, ledger):
        """Test a script too deep to compile is a recorded failure."""
        result = sandbox.run("x = " + "-" * 200000 + "1")

        assert result.status is HookStatus.FAILED
        assert len(ledger) == 1
        event = ledger.get(result.record_id).event
        assert event["status"] == "failed"
        assert event["outcome"] == "failure"

    def test_revoked_key(self, sandbox, ledger, signing_key):
        """Test a ledger that cannot record the hook blocks it."""
        ledger.signer.trusted_keys.revoke(signing_key.key_id)

        with pytest.raises(KeyRevokedError):
            sandbox.run("log('hi')")

        assert len(ledger) == 0


@pytest.mark.sandbox
class TestScriptSandboxRun:
    """Test hook execution in the child process."""

    def test_completed(self, sandbox, ledger):
        """Test a hook that logs and finishes."""
        result = sandbox.run(
            "items = sorted([3, 1, 2])\n"
            "log('items ' + str(items))\n"
            "print('total', sum(items))\n"
        )

        assert result.status is HookStatus.COMPLETED
        assert result.succeeded
        assert result.logs == ["items [1, 2, 3]", "total 6"]
        assert result.host_calls == [{"op": "log", "ok": True}, {"op": "log", "ok": True}]
        assert result.script_hash.startswith("sha256:")

        event = ledger.get(result.record_id).event
        assert event["event_type"] == "hook"
        assert event["status"] == "completed"
        assert event["outcome"] == "success"
        assert event["script_sha256"] == result.script_hash

    def test_host_function_receives_context(self, ledger):
        """Test host functions get the invocation context first."""
        seen = []

        def remember(context, value):
            seen.append((context.module, context.hook_point, value))
            return value * 2

        sandbox = ScriptSandbox(
            ledger,
            host_functions={"remember": remember},
            config=SandboxConfig(poll_interval_seconds=0.01),
        )
        result = sandbox.run(
            "log(str(remember(21)))",
            context=HookContext(hook_point="pre_module", module="base"),
        )

        assert result.logs == ["42"]
        assert seen == [("base", "pre_module", 21)]

    def test_context_and_dry_run_globals(self, sandbox):
        """Test the read-only context exposed to the script."""
        result = sandbox.run(
            "log(context['module'])\n"
            "log(str(dry_run))\n",
            context=HookContext(module="base", dry_run=True),
        )

        assert result.logs == ["base", "True"]

    def test_custom_host_function(self, sandbox):
        """Test a registered host function."""
        result = sandbox.run("log(str(add(2, 3)))")
        assert result.logs == ["5"]

    def test_host_function_error(self, sandbox):
        """Test host errors surface as HostFunctionError inside the hook."""
        result = sandbox.run(
            "try:\n"
            "    log('x', level='bogus')\n"
            "except HostFunctionError:\n"
            "    log('caught')\n"
        )

        assert result.status is HookStatus.COMPLETED
        assert result.logs == ["caught"]
        assert result.host_calls[0] == {"op": "log", "ok": False, "error": "HOST_CALL_INVALID"}

    def test_script_error(self, sandbox, ledger):
        """Test an exception raised by the hook is a failed result."""
        result = sandbox.run("x = 1 / 0")

        assert result.status is HookStatus.FAILED
        assert result.error.startswith("ZeroDivisionError")
        assert ledger.get(result.record_id).event["outcome"] == "failure"

    def test_unknown_name(self, sandbox):
        """Test names outside the allow-list do not exist."""
        result = sandbox.run("spawn('reboot')")
        assert result.status is HookStatus.FAILED
        assert "NameError" in result.error

    def test_class_definitions_unavailable(self, sandbox):
        """Test hooks cannot define classes."""
        result = sandbox.run("class A:\n    pass\n")
        assert result.status is HookStatus.FAILED

    def test_syntax_error_result(self, sandbox, ledger):
        """Test syntax errors fail without starting a process."""
        result = sandbox.run("def (:")

        assert result.status is HookStatus.FAILED
        assert result.error.startswith("SyntaxError")
        assert ledger.get(result.record_id).event["status"] == "failed"

    def test_static_violation_logged_and_raised(self, sandbox, ledger):
        """Test screened capability violations."""
        with pytest.raises(CapabilityViolationError) as exc_info:
            sandbox.run("import os\nos.system('reboot')")

        assert exc_info.value.capability == "dynamic_loading"
        event = ledger.records()[-1].event
        assert event["status"] == "capability_violation"
        assert event["outcome"] == "violation"
        assert event["error_code"] == "CAPABILITY_VIOLATION"

    def test_runtime_violation(self, sandbox, ledger):
        """Test introspection that slips past screening is stopped at runtime."""
        with pytest.raises(CapabilityViolationError) as exc_info:
            sandbox.run("leak = '{0.gi_frame}'.format((x for x in []))\nlog(leak)")

        assert exc_info.value.event == "object.__getattr__"
        event = ledger.records()[-1].event
        assert event["outcome"] == "violation"

    def test_timeout(self, sandbox, ledger):
        """Test an infinite loop is killed at the timeout."""
        policy = SandboxPolicy(timeout_seconds=0.5)
        started = time.monotonic()

        with pytest.raises(SandboxTimeoutError) as exc_info:
            sandbox.run("while True:\n    pass\n", policy)

        assert exc_info.value.elapsed_seconds < 1.0
        assert time.monotonic() - started < 30.0
        assert ledger.records()[-1].event["status"] == "timeout"

    def test_memory_limit(self, sandbox, ledger):
        """Test a hook allocating past its ceiling is stopped."""
        policy = SandboxPolicy(memory_limit_bytes=64 * 1024 * 1024, timeout_seconds=20.0)

        with pytest.raises(SandboxLimitExceededError) as exc_info:
            sandbox.run("data = 'x' * (512 * 1024 * 1024)\nlog(str(len(data)))", policy)

        assert exc_info.value.limit_bytes == 64 * 1024 * 1024
        assert ledger.records()[-1].event["status"] == "limit_exceeded"

    def test_memory_within_limit(self, sandbox):
        """Test modest allocations complete."""
        policy = SandboxPolicy(memory_limit_bytes=128 * 1024 * 1024)
        result = sandbox.run("data = 'x' * (4 * 1024 * 1024)\nlog(str(len(data)))", policy)

        assert result.status is HookStatus.COMPLETED
        assert result.logs == [str(4 * 1024 * 1024)]

    def test_result_to_dict(self, sandbox):
        """Test hook result serialization."""
        data = sandbox.run("log('hi')").to_dict()
        assert data["status"] == "completed"
        assert data["logs"] == ["hi"]

    def test_host_crash_recorded(self, ledger):
        """Test an unexpected host failure is recorded before it propagates."""
        def explode(context):
            raise RuntimeError("host exploded")

        sandbox = ScriptSandbox(
            ledger,
            host_functions={"explode": explode},
            config=SandboxConfig(poll_interval_seconds=0.01),
        )

        with pytest.raises(RuntimeError):
            sandbox.run("explode()")

        event = ledger.records()[-1].event
        assert event["status"] == "crashed"
        assert event["outcome"] == "failure"
        assert event["error_code"] == "SANDBOX_CRASHED"

    def test_ledger_failure_aborts_hook(self, ledger):
        """Test a ledger refusal inside a host call cannot be caught by the hook."""
        def refuse(context):
            raise ChainBrokenError("Ledger trust lost; refusing to append", reason="trust lost")

        sandbox = ScriptSandbox(
            ledger,
            host_functions={"refuse": refuse},
            config=SandboxConfig(poll_interval_seconds=0.01),
        )

        with pytest.raises(ChainBrokenError):
            sandbox.run(
                "try:\n"
                "    refuse()\n"
                "except HostFunctionError:\n"
                "    log('swallowed')\n"
            )

        assert len(ledger) == 0

    def test_host_function_sees_deadline(self, ledger):
        """Test host functions get the hook's remaining time."""
        seen = []

        def remaining(context):
            seen.append(context.remaining_seconds())

        sandbox = ScriptSandbox(
            ledger,
            host_functions={"remaining": remaining},
            config=SandboxConfig(poll_interval_seconds=0.01),
        )
        result = sandbox.run("remaining()", SandboxPolicy(timeout_seconds=10.0))

        assert result.status is HookStatus.COMPLETED
        assert 0.0 < seen[0] <= 10.0
