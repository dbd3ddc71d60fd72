"""Concrete step executors wired from configuration."""

from __future__ import annotations

import importlib
import logging
import os
import re
import subprocess
from collections.abc import Mapping
from typing import Any, Callable

from relaykit import (
    ExecutionResult,
    ExecutorFailure,
    ExecutorRef,
    ExecutorRegistry,
    StepContext,
    StepSpec,
)
from relaykit.gates import collect_deliverables

from .config import ExecutorConfig

_PARAM_NAME_RE = re.compile(r"[^A-Za-z0-9]+")
_OUTPUT_TAIL_CHARS = 400


def parameter_env_name(name: str) -> str:
    return "RELAY_PARAM_" + _PARAM_NAME_RE.sub("_", name).strip("_").upper()


def build_step_env(step: StepSpec, context: StepContext) -> dict[str, str]:
    env = {
        "RELAY_STEP_INDEX": str(step.index),
        "RELAY_STEP_NAME": step.name,
        "RELAY_STATE_KEY": context.state_key,
        "RELAY_DELIVERABLES_DIR": str(context.deliverables_dir),
    }
    state_path = context.state_path
    if state_path is not None:
        env["RELAY_STATE_PATH"] = str(state_path)
    if context.feedback:
        env["RELAY_FEEDBACK"] = context.feedback
    if context.failure_reason:
        env["RELAY_FAILURE_REASON"] = context.failure_reason
    if context.prior_deliverables:
        env["RELAY_PRIOR_DELIVERABLES"] = os.pathsep.join(
            path for paths in context.prior_deliverables.values() for path in paths
        )
    for name, value in context.parameters.items():
        env[parameter_env_name(name)] = value
    return env


def _last_line(text: str | None) -> str:
    for line in reversed((text or "").splitlines()):
        if line.strip():
            return line.strip()
    return ""


def _tail(text: str | None) -> str:
    stripped = (text or "").strip()
    if len(stripped) <= _OUTPUT_TAIL_CHARS:
        return stripped
    return "..." + stripped[-_OUTPUT_TAIL_CHARS:]


class CommandExecutor:
    """Runs a shell command; the command writes its own state record and deliverables."""

    def __init__(
        self,
        command: str,
        *,
        timeout_seconds: int | None = None,
        env: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
    ):
        if not isinstance(command, str) or not command.strip():
            raise ValueError("command must be a non-empty string")
        self.command = command.strip()
        self.timeout_seconds = timeout_seconds
        self.env = dict(env or {})
        self.logger = logger or logging.getLogger(__name__)

    def invoke(self, step: StepSpec, context: StepContext) -> ExecutionResult:
        context.deliverables_dir.mkdir(parents=True, exist_ok=True)
        state_path = context.state_path
        if state_path is not None:
            state_path.parent.mkdir(parents=True, exist_ok=True)

        env = dict(os.environ)
        env.update(self.env)
        env.update(build_step_env(step, context))

        self.logger.debug("Running command for step %s: %s", step.name, self.command)
        try:
            proc = subprocess.run(
                self.command,
                shell=True,
                cwd=str(context.deliverables_dir),
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutorFailure(
                f"Command timed out after {self.timeout_seconds}s: {self.command}"
            ) from exc
        except OSError as exc:
            raise ExecutorFailure(f"Command could not start ({exc}): {self.command}") from exc

        if proc.stderr and proc.stderr.strip():
            self.logger.debug("Command stderr for step %s: %s", step.name, _tail(proc.stderr))
        if proc.returncode != 0:
            detail = _tail(proc.stderr) or _tail(proc.stdout)
            message = f"Command exited with {proc.returncode}: {self.command}"
            raise ExecutorFailure(f"{message}: {detail}" if detail else message)

        deliverables = collect_deliverables(
            context.deliverables_dir, step, ExecutionResult(state_artifacts_present=False)
        )
        return ExecutionResult(
            state_artifacts_present=context.store.exists(context.state_key),
            deliverable_artifacts=tuple(path for path in deliverables if os.path.exists(path)),
            summary=_last_line(proc.stdout),
        )


def load_callable(target: str) -> Callable[..., Any]:
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name.strip() or not attr_path.strip():
        raise ValueError(f"Callable target must look like 'module:function' (got {target!r})")
    module = importlib.import_module(module_name.strip())
    obj: Any = module
    for part in attr_path.strip().split("."):
        obj = getattr(obj, part)
    if not callable(obj):
        raise TypeError(f"Callable target is not callable: {target}")
    return obj


class CallableExecutor:
    """Calls `fn(step, context)`; accepts an ExecutionResult, a mapping, or None back."""

    def __init__(self, fn: Callable[[StepSpec, StepContext], Any], *, name: str | None = None):
        if not callable(fn):
            raise TypeError(f"Executor fn must be callable (type={type(fn).__name__})")
        self.fn = fn
        self.name = name or getattr(fn, "__qualname__", None) or repr(fn)

    @classmethod
    def from_target(cls, target: str) -> "CallableExecutor":
        return cls(load_callable(target), name=target)

    def invoke(self, step: StepSpec, context: StepContext) -> ExecutionResult:
        context.deliverables_dir.mkdir(parents=True, exist_ok=True)
        result = self.fn(step, context)
        if isinstance(result, ExecutionResult):
            return result
        if result is None:
            return ExecutionResult(state_artifacts_present=context.store.exists(context.state_key))
        if isinstance(result, Mapping):
            return ExecutionResult.from_mapping(result)
        raise ExecutorFailure(
            f"Executor {self.name} returned {type(result).__name__}; "
            "expected ExecutionResult, mapping, or None"
        )


def build_registry(
    executors: Mapping[str, ExecutorConfig], *, logger: logging.Logger | None = None
) -> ExecutorRegistry:
    refs: list[ExecutorRef] = []
    for executor_id, cfg in sorted(executors.items()):
        if cfg.kind == "command":
            executor: Any = CommandExecutor(
                cfg.target, timeout_seconds=cfg.timeout_seconds, env=cfg.env, logger=logger
            )
        else:
            executor = CallableExecutor.from_target(cfg.target)
        refs.append(ExecutorRef(id=executor_id, executor=executor, doc=cfg.doc))
    return ExecutorRegistry.from_refs(refs)
