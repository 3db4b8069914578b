import json
import logging
import os

from legacy_bridge.utils.logging_config import JSONFormatter, TextFormatter, build_formatter, step_log_file


def _record(**extra):
    record = logging.LogRecord("legacy_bridge.migrator", logging.INFO, __file__, 10, "Batch processed", (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_keeps_extra_fields():
    payload = json.loads(JSONFormatter().format(_record(migrator_step="Tickets", migrator_inserted=3)))

    assert payload["message"] == "Batch processed"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "legacy_bridge.migrator"
    assert payload["migrator_step"] == "Tickets"
    assert payload["migrator_inserted"] == 3


def test_text_formatter_appends_sorted_extras():
    line = TextFormatter().format(_record(migrator_step="Tickets", migrator_batch=2))
    assert line.endswith("| migrator_batch=2 migrator_step=Tickets")


def test_build_formatter_defaults_to_json():
    assert isinstance(build_formatter(None), JSONFormatter)
    assert isinstance(build_formatter("TEXT"), TextFormatter)


def test_step_log_file_is_inactive_without_file_logging(app):
    with step_log_file(app, "Tickets") as path:
        assert path is None


def test_step_log_file_mirrors_package_logs(app, tmp_path):
    app.config["ENABLE_FILE_LOGGING"] = True
    app.config["LOG_DIR"] = str(tmp_path / "logs")
    logger = logging.getLogger("legacy_bridge.migrator.pipeline.engine")

    with step_log_file(app, "Tickets") as path:
        logger.warning("Writing tickets", extra={"migrator_step": "Tickets"})
    logger.warning("After the step")

    assert path == os.path.join(str(tmp_path / "logs"), "migration-tickets.log")
    with open(path, encoding="utf-8") as handle:
        content = handle.read()
    assert "Writing tickets" in content
    assert "After the step" not in content
