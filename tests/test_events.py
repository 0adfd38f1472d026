import json

from deviation_sentinel.events import (
    BORROW_PAUSED,
    GENESIS_HASH,
    SUPPLY_PAUSED,
    EventSink,
    FanoutEventSink,
    JsonlEventSink,
    RecordingEventSink,
    SentinelEvent,
    iter_events,
    verify_chain,
)
from tests.fakes import MARKET


class _ExplodingSink(EventSink):
    def publish(self, event: SentinelEvent) -> None:
        raise OSError("disk full")


def test_jsonl_sink_chains_hashes(tmp_path) -> None:
    path = tmp_path / "events.jsonl"
    sink = JsonlEventSink(path)
    sink.publish(SentinelEvent(BORROW_PAUSED, {"market": MARKET}))
    sink.publish(SentinelEvent(SUPPLY_PAUSED, {"market": MARKET, "price": 10**40}))

    records = list(iter_events(path))

    assert [record["name"] for record in records] == [BORROW_PAUSED, SUPPLY_PAUSED]
    assert records[0]["prev_hash"] == GENESIS_HASH
    assert records[1]["prev_hash"] == records[0]["hash"]
    assert records[1]["data"]["price"] == str(10**40)
    assert verify_chain(path)


def test_jsonl_sink_resumes_chain(tmp_path) -> None:
    path = tmp_path / "events.jsonl"
    first = JsonlEventSink(path)
    first.publish(SentinelEvent(BORROW_PAUSED, {"market": MARKET}))

    second = JsonlEventSink(path)

    assert second.last_hash == first.last_hash
    second.publish(SentinelEvent(SUPPLY_PAUSED, {"market": MARKET}))
    assert verify_chain(path)
    assert [record["name"] for record in iter_events(path, name=SUPPLY_PAUSED)] == [SUPPLY_PAUSED]


def test_verify_chain_detects_tampering(tmp_path) -> None:
    path = tmp_path / "events.jsonl"
    sink = JsonlEventSink(path)
    sink.publish(SentinelEvent(BORROW_PAUSED, {"market": MARKET}))
    sink.publish(SentinelEvent(SUPPLY_PAUSED, {"market": MARKET}))

    lines = path.read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[0])
    record["data"]["market"] = "0xdead"
    lines[0] = json.dumps(record, sort_keys=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    assert not verify_chain(path)


def test_iter_events_on_missing_file(tmp_path) -> None:
    assert list(iter_events(tmp_path / "nothing.jsonl")) == []


def test_fanout_survives_failing_sink() -> None:
    recorder = RecordingEventSink()
    fanout = FanoutEventSink([_ExplodingSink(), recorder])

    fanout.publish_many([SentinelEvent(BORROW_PAUSED, {"market": MARKET})])

    assert recorder.names() == [BORROW_PAUSED]
