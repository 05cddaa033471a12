from __future__ import annotations

import json
import logging

from forge.core.config import Config
from forge.core.logging import JsonFormatter, KeyValueFormatter, configure_logging


def _record(**extra) -> logging.LogRecord:
    rec = logging.LogRecord("forge.donations.reconciler", logging.INFO, __file__, 1, "donation_completed", None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_json_formatter_carries_extras() -> None:
    out = json.loads(JsonFormatter().format(_record(donation_id="d1", counter=42)))
    assert out["event"] == "donation_completed"
    assert out["level"] == "INFO"
    assert out["donation_id"] == "d1"
    assert out["counter"] == 42


def test_key_value_formatter_appends_sorted_extras() -> None:
    line = KeyValueFormatter("%(message)s").format(_record(b=2, a=1))
    assert line == "donation_completed a=1 b=2"


def test_configure_logging_installs_single_handler() -> None:
    logger = logging.getLogger("forge")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    try:
        cfg = Config()
        cfg = cfg.model_copy(update={"logging": cfg.logging.model_copy(update={"level": "debug", "json_output": True})})
        configure_logging(cfg)
        configure_logging(cfg)
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JsonFormatter)
        assert logger.level == logging.DEBUG
    finally:
        logger.handlers[:] = saved[0]
        logger.setLevel(saved[1])
        logger.propagate = saved[2]
