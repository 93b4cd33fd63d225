import json
import logging

import structlog

from utils.logging import bind_site, clear_site, configure_logging, get_site


def test_site_binding():
    bind_site("bookshelf.com")
    try:
        assert get_site() == "bookshelf.com"
        assert structlog.contextvars.get_contextvars()["site"] == "bookshelf.com"
    finally:
        clear_site()

    assert get_site() is None
    assert "site" not in structlog.contextvars.get_contextvars()


def test_component_loggers_carry_bound_site(capsys):
    configure_logging(level="INFO", json_logs=True)
    bind_site("bookshelf.com")
    try:
        logging.getLogger("EvidenceCollector").warning("Probe returned 403")
    finally:
        clear_site()
        configure_logging()

    line = [l for l in capsys.readouterr().out.splitlines() if "Probe returned 403" in l][0]
    record = json.loads(line)
    assert record["event"] == "Probe returned 403"
    assert record["site"] == "bookshelf.com"
    assert record["logger"] == "EvidenceCollector"
    assert record["level"] == "warning"
