from __future__ import annotations

import logging
from pathlib import Path

from relay_pipeline.logging_conf import available_pipeline_logs, pipeline_logger, tail_log


def test_pipeline_logger_registers_one_file_handler(pipeline_home: Path) -> None:
    first = pipeline_logger("moderation")
    pipeline_logger("moderation")
    path = pipeline_home / "logs" / "pipelines" / "moderation.log"

    handlers = [
        handler
        for handler in logging.getLogger("relay_pipeline.moderation").handlers
        if getattr(handler, "baseFilename", None) == str(path)
    ]
    assert len(handlers) == 1

    first.info("moderation_passed", event_id="e1")
    for handler in handlers:
        handler.flush()
    (line,) = tail_log(path, 5)
    assert "moderation_passed" in line
    assert path in list(available_pipeline_logs())


def test_tail_log_handles_missing_files_and_counts(tmp_path: Path) -> None:
    path = tmp_path / "pipeline.log"
    assert tail_log(path) == []
    path.write_text("a\nb\nc\n", encoding="utf-8")
    assert tail_log(path, 2) == ["b\n", "c\n"]
    assert tail_log(path, 0) == []
