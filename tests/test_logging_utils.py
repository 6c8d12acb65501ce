import json
from pathlib import Path

from loguru import logger

from vesper.logging_utils import bind_session, configure_logging, current_session


def test_bind_session_scopes_the_context() -> None:
    assert current_session() == "-"
    with bind_session("s1"):
        assert current_session() == "s1"
        with bind_session("s2"):
            assert current_session() == "s2"
        assert current_session() == "s1"
    assert current_session() == "-"


def test_log_records_carry_the_bound_session() -> None:
    configure_logging(profile="default", level="DEBUG")
    captured: list[str] = []
    sink_id = logger.add(captured.append, format="{extra[session]} {message}", level="INFO")
    try:
        with bind_session("demo"):
            logger.info("turn.start")
        logger.info("idle")
    finally:
        logger.remove(sink_id)

    assert [line.strip() for line in captured] == ["demo turn.start", "- idle"]


def test_log_file_receives_json_records_with_the_session(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "vesper.log"
    configure_logging(profile="default", level="INFO", log_file=log_file)
    with bind_session("s7"):
        logger.debug("hidden")
        logger.warning("tool.call.timeout name=bash")
    # Reconfiguring drops and closes the file sink.
    configure_logging(profile="default", level="DEBUG")

    records = [json.loads(line)["record"] for line in log_file.read_text(encoding="utf-8").splitlines()]

    assert [(r["level"]["name"], r["extra"]["session"], r["message"]) for r in records] == [
        ("WARNING", "s7", "tool.call.timeout name=bash")
    ]
