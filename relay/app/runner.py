from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from relaykit import FileStateStore, Halted, Orchestrator, RunState, RunStatus

from relay.foundation.config_io import load_config
from relay.foundation.logging_utils import setup_operational_logger
from relay.framework.config import RelayConfig
from relay.framework.executors import build_registry


@dataclass
class RelaySession:
    cfg: RelayConfig
    orchestrator: Orchestrator
    logger: logging.Logger
    log_file: str | None
    config_meta: dict[str, Any]


def load_relay_config(config_path: str | None = None) -> tuple[RelayConfig, dict[str, Any]]:
    raw, meta = load_config(config_path=config_path)
    cfg = RelayConfig.from_dict(raw, base_dir=meta.get("base_dir"))
    return cfg, meta


def build_orchestrator(cfg: RelayConfig, logger: logging.Logger) -> Orchestrator:
    registry = build_registry(cfg.executors, logger=logger)
    return Orchestrator(
        cfg.definition,
        FileStateStore(cfg.storage.state_dir),
        registry,
        deliverables_dir=cfg.storage.deliverables_dir,
        parameters=cfg.parameters,
        logger=logger,
    )


def open_session(config_path: str | None = None) -> RelaySession:
    cfg, meta = load_relay_config(config_path)
    log_dir = cfg.logging.log_dir if cfg.logging.enabled else None
    logger, log_file = setup_operational_logger(
        log_dir, cfg.definition.name, level=cfg.logging.level
    )

    paths = meta.get("paths") or []
    if meta.get("mode") == "base+local" and len(paths) == 2:
        logger.info("Loaded config base=%s local=%s", paths[0], paths[1])
    elif paths:
        logger.info("Loaded config (%s) %s", meta.get("mode"), paths[0])
    logger.debug("State dir: %s", cfg.storage.state_dir)
    logger.debug("Deliverables dir: %s", cfg.storage.deliverables_dir)

    return RelaySession(
        cfg=cfg,
        orchestrator=build_orchestrator(cfg, logger),
        logger=logger,
        log_file=log_file,
        config_meta=meta,
    )


def raise_if_halted(outcome: RunState) -> RunState:
    if outcome.status is RunStatus.FAILED:
        raise Halted(outcome.describe(), step_index=outcome.step_index)
    return outcome
