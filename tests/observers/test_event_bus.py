import json
import logging
from pathlib import Path

from bootstage.observers.dispatcher import EventBus
from bootstage.observers.events import StageFailed, StageMessage, StageSucceeded, new_ctx
from bootstage.observers.jsonfile import JsonFileObserver
from bootstage.observers.logger import LoggerObserver


class Collect:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class Broken:
    def notify(self, event):
        raise RuntimeError("disk full")


def test_new_ctx():
    ctx = new_ctx("run-1", "vps-1")
    assert ctx["run_id"] == "run-1"
    assert ctx["hostname"] == "vps-1"
    assert ctx["ts"].endswith("Z")


def test_broken_observer_does_not_stop_delivery():
    sink = Collect()
    bus = EventBus([Broken()])
    bus.subscribe(sink)

    ev = StageSucceeded(**new_ctx("run-1", "vps-1"), stage="init", duration_ms=12, facts=["os.family"])
    bus.emit(ev)
    assert sink.events == [ev]


def test_json_file_observer_appends_lines(tmp_path: Path):
    path = tmp_path / "logs" / "events.jsonl"
    ob = JsonFileObserver(path)
    ob.notify(StageSucceeded(**new_ctx("run-1", "vps-1"), stage="init", duration_ms=5))
    ob.notify(StageFailed(**new_ctx("run-1", "vps-1"), stage="updates", attempt=2, error="mirror down"))

    rows = [json.loads(line) for line in path.read_text().splitlines()]
    assert [r["type"] for r in rows] == ["StageSucceeded", "StageFailed"]
    assert rows[1]["error"] == "mirror down"
    assert rows[1]["exhausted"] is False


def test_logger_observer_levels(caplog):
    logger = logging.getLogger("observer-test")
    ob = LoggerObserver(logger)
    with caplog.at_level(logging.DEBUG, logger="observer-test"):
        ob.notify(StageMessage(**new_ctx("r", "h"), stage="tunnel-setup", level="warning", message="tunnel down"))
        ob.notify(StageMessage(**new_ctx("r", "h"), stage="init", level="nonsense", message="hello"))
        ob.notify(StageSucceeded(**new_ctx("r", "h"), stage="init", duration_ms=1))

    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels[0] == (logging.WARNING, "[tunnel-setup] tunnel down")
    assert levels[1] == (logging.INFO, "[init] hello")
    assert levels[2][1].startswith("[EVENT] StageSucceeded: stage=init")
