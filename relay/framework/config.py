from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from relaykit import FailurePolicy, GateType, PipelineDefinition, StepSpec

ExecutorKind = Literal["command", "callable"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts:
      - True/False
      - 0/1 (ints)
      - strings: true/false/1/0/yes/no (case-insensitive, surrounding whitespace ignored)

    Raises:
      ValueError for anything else, with the provided config key path.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be an int")
        try:
            return int(value.strip())
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


def _require_mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Invalid config type for {path}: expected mapping")
    return value


def _require_str(value: Any, path: str) -> str:
    if value is None:
        raise ValueError(f"Missing required config: {path}")
    if not isinstance(value, str):
        raise ValueError(f"Invalid config type for {path}: expected string")
    if not value.strip():
        raise ValueError(f"Invalid config value for {path}: must be a non-empty string")
    return value.strip()


def _optional_str(value: Any, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid config type for {path}: expected string")
    return value.strip() or None


def _reject_unknown(mapping: Mapping[str, Any], allowed: set[str], path: str) -> None:
    unknown = sorted(str(key) for key in mapping if key not in allowed)
    if unknown:
        label = f" under {path}" if path else ""
        raise ValueError(f"Unknown config keys{label}: " + ", ".join(unknown))


@dataclass(frozen=True)
class ExecutorConfig:
    id: str
    kind: ExecutorKind
    target: str
    timeout_seconds: int | None = None
    env: dict[str, str] = field(default_factory=dict)
    doc: str | None = None


@dataclass(frozen=True)
class StorageConfig:
    state_dir: str
    deliverables_dir: str


@dataclass(frozen=True)
class LoggingConfig:
    log_dir: str
    level: LogLevel = "INFO"
    enabled: bool = True


@dataclass(frozen=True)
class RelayConfig:
    definition: PipelineDefinition
    executors: dict[str, ExecutorConfig]
    storage: StorageConfig
    logging: LoggingConfig
    parameters: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any], *, base_dir: str | os.PathLike[str] | None = None
    ) -> "RelayConfig":
        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")
        _reject_unknown(cfg, {"pipeline", "executors", "storage", "logging", "parameters"}, "")

        root = os.path.abspath(str(base_dir)) if base_dir is not None else os.getcwd()

        def normalize_path(value: str) -> str:
            expanded = os.path.expandvars(os.path.expanduser(value))
            if not os.path.isabs(expanded):
                expanded = os.path.join(root, expanded)
            return os.path.abspath(expanded)

        executors = _parse_executors(cfg.get("executors"))
        definition = _parse_pipeline(cfg.get("pipeline"))
        for step in definition.steps:
            if step.executor_ref not in executors:
                available = ", ".join(sorted(executors)) or "<none>"
                raise ValueError(
                    f"Unknown executor for pipeline.steps[{step.index - 1}].executor: "
                    f"{step.executor_ref} (available: {available})"
                )

        storage_raw = _require_mapping(cfg.get("storage") or {}, "storage")
        _reject_unknown(storage_raw, {"state_dir", "deliverables_dir"}, "storage")
        state_dir = normalize_path(
            _optional_str(storage_raw.get("state_dir"), "storage.state_dir") or ".relay/state"
        )
        deliverables_dir = normalize_path(
            _optional_str(storage_raw.get("deliverables_dir"), "storage.deliverables_dir")
            or "deliverables"
        )
        if os.path.commonpath([state_dir, deliverables_dir]) in (state_dir, deliverables_dir):
            raise ValueError(
                "storage.state_dir and storage.deliverables_dir must not contain one another "
                f"(state_dir={state_dir}, deliverables_dir={deliverables_dir})"
            )

        logging_raw = _require_mapping(cfg.get("logging") or {}, "logging")
        _reject_unknown(logging_raw, {"log_dir", "level", "enabled"}, "logging")
        raw_level = logging_raw.get("level", "INFO")
        if not isinstance(raw_level, str) or raw_level.strip().upper() not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid config value for logging.level: {raw_level!r} "
                f"(expected one of: {', '.join(_LOG_LEVELS)})"
            )
        logging_cfg = LoggingConfig(
            log_dir=normalize_path(
                _optional_str(logging_raw.get("log_dir"), "logging.log_dir") or ".relay/logs"
            ),
            level=raw_level.strip().upper(),  # type: ignore[arg-type]
            enabled=parse_bool(logging_raw.get("enabled", True), "logging.enabled"),
        )

        parameters_raw = _require_mapping(cfg.get("parameters") or {}, "parameters")
        parameters: dict[str, str] = {}
        for key, value in parameters_raw.items():
            if isinstance(value, (Mapping, list, tuple)):
                raise ValueError(f"Invalid config type for parameters.{key}: expected scalar")
            parameters[str(key)] = "" if value is None else str(value)

        return RelayConfig(
            definition=definition,
            executors=executors,
            storage=StorageConfig(state_dir=state_dir, deliverables_dir=deliverables_dir),
            logging=logging_cfg,
            parameters=parameters,
        )


def _parse_executors(raw: Any) -> dict[str, ExecutorConfig]:
    mapping = _require_mapping(raw, "executors") if raw is not None else {}
    if not mapping:
        raise ValueError("Missing required config: executors")

    out: dict[str, ExecutorConfig] = {}
    for raw_id, raw_entry in mapping.items():
        executor_id = _require_str(raw_id, "executors.<id>")
        path = f"executors.{executor_id}"
        entry = _require_mapping(raw_entry, path)
        _reject_unknown(entry, {"command", "callable", "timeout_seconds", "env", "doc"}, path)

        command = _optional_str(entry.get("command"), f"{path}.command")
        target = _optional_str(entry.get("callable"), f"{path}.callable")
        if bool(command) == bool(target):
            raise ValueError(f"{path} must set exactly one of: command, callable")
        if target and ":" not in target:
            raise ValueError(f"Invalid config value for {path}.callable: expected 'module:function'")
        if target and (entry.get("timeout_seconds") is not None or entry.get("env")):
            raise ValueError(f"{path}: timeout_seconds and env only apply to command executors")

        timeout: int | None = None
        if entry.get("timeout_seconds") is not None:
            timeout = parse_int(entry.get("timeout_seconds"), f"{path}.timeout_seconds")
            if timeout <= 0:
                raise ValueError(f"Invalid config value for {path}.timeout_seconds: must be > 0")

        env_raw = _require_mapping(entry.get("env") or {}, f"{path}.env")
        env = {str(k): "" if v is None else str(v) for k, v in env_raw.items()}

        out[executor_id] = ExecutorConfig(
            id=executor_id,
            kind="command" if command else "callable",
            target=command or target or "",
            timeout_seconds=timeout,
            env=env,
            doc=_optional_str(entry.get("doc"), f"{path}.doc"),
        )
    return out


def _parse_on_fail(raw: Any, path: str, names: list[str]) -> FailurePolicy:
    if raw is None:
        return FailurePolicy.stop()
    if isinstance(raw, str):
        normalized = raw.strip().lower()
        if normalized == "retry_once":
            return FailurePolicy.retry_once()
        if normalized == "stop":
            return FailurePolicy.stop()
        raise ValueError(
            f"Invalid config value for {path}: {raw!r} (expected retry_once, stop, or {{bounce_to: <step>}})"
        )
    mapping = _require_mapping(raw, path)
    _reject_unknown(mapping, {"bounce_to"}, path)
    if "bounce_to" not in mapping:
        raise ValueError(f"Missing required config: {path}.bounce_to")
    target = mapping["bounce_to"]
    if isinstance(target, str) and not target.strip().isdigit():
        name = target.strip()
        matches = [i for i, existing in enumerate(names, start=1) if existing == name]
        if len(matches) != 1:
            raise ValueError(
                f"Invalid config value for {path}.bounce_to: {name!r} must name exactly one step"
            )
        return FailurePolicy.bounce_to(matches[0])
    return FailurePolicy.bounce_to(parse_int(target, f"{path}.bounce_to"))


_STEP_KEYS = {
    "name",
    "executor",
    "gate",
    "on_fail",
    "deliverables",
    "check",
    "check_timeout_seconds",
    "when",
}


def _parse_pipeline(raw: Any) -> PipelineDefinition:
    if raw is None:
        raise ValueError("Missing required config: pipeline")
    pipeline = _require_mapping(raw, "pipeline")
    _reject_unknown(pipeline, {"name", "steps"}, "pipeline")
    name = _require_str(pipeline.get("name"), "pipeline.name")

    steps_raw = pipeline.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ValueError("Invalid config type for pipeline.steps: expected non-empty list")

    entries: list[Mapping[str, Any]] = []
    for idx, entry in enumerate(steps_raw):
        path = f"pipeline.steps[{idx}]"
        mapping = _require_mapping(entry, path)
        _reject_unknown(mapping, _STEP_KEYS, path)
        entries.append(mapping)
    names = [_require_str(entry.get("name"), f"pipeline.steps[{i}].name") for i, entry in enumerate(entries)]

    steps: list[StepSpec] = []
    for idx, entry in enumerate(entries):
        path = f"pipeline.steps[{idx}]"
        raw_gate = entry.get("gate", GateType.APPROVAL.value)
        try:
            gate = GateType(str(raw_gate).strip().lower())
        except ValueError as exc:
            raise ValueError(
                f"Invalid config value for {path}.gate: {raw_gate!r} (expected approval, auto, none)"
            ) from exc

        deliverables_raw = entry.get("deliverables") or []
        if not isinstance(deliverables_raw, list):
            raise ValueError(f"Invalid config type for {path}.deliverables: expected list[str]")
        deliverables: list[str] = []
        for d_idx, item in enumerate(deliverables_raw):
            deliverables.append(_require_str(item, f"{path}.deliverables[{d_idx}]"))

        check_timeout = entry.get("check_timeout_seconds")
        steps.append(
            StepSpec(
                index=idx + 1,
                name=names[idx],
                executor_ref=_require_str(entry.get("executor"), f"{path}.executor"),
                gate=gate,
                on_fail=_parse_on_fail(entry.get("on_fail"), f"{path}.on_fail", names),
                deliverables=tuple(deliverables),
                check=_optional_str(entry.get("check"), f"{path}.check"),
                check_timeout_seconds=(
                    parse_int(check_timeout, f"{path}.check_timeout_seconds")
                    if check_timeout is not None
                    else 600
                ),
                when=_optional_str(entry.get("when"), f"{path}.when"),
            )
        )

    return PipelineDefinition(name=name, steps=tuple(steps))
