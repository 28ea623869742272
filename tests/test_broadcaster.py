import asyncio
from unittest.mock import AsyncMock

from broadcaster import ViewerRegistry


def _sink(fail=False):
    sink = AsyncMock()
    if fail:
        sink.send_json.side_effect = RuntimeError("socket closed")
    return sink


def test_broadcast_reaches_every_viewer() -> None:
    registry = ViewerRegistry()
    a, b = _sink(), _sink()
    registry.connect(a); registry.connect(b)

    delivered = asyncio.run(registry.broadcast("prediction", {"success": True, "count": 3}))

    assert delivered == 2
    expected = {"event": "prediction", "data": {"success": True, "count": 3}}
    a.send_json.assert_awaited_once_with(expected)
    b.send_json.assert_awaited_once_with(expected)


def test_failed_viewer_is_dropped_and_others_still_receive() -> None:
    registry = ViewerRegistry()
    dead, alive = _sink(fail=True), _sink()
    registry.connect(dead); registry.connect(alive)

    delivered = asyncio.run(registry.broadcast("thresholdUpdated", {"threshold": 7}))

    assert delivered == 1
    assert dead not in registry
    assert alive in registry
    assert len(registry) == 1


def test_acknowledge_goes_only_to_the_submitter() -> None:
    registry = ViewerRegistry()
    producer, watcher = _sink(), _sink()
    registry.connect(producer); registry.connect(watcher)

    assert asyncio.run(registry.acknowledge(producer)) is True

    producer.send_json.assert_awaited_once_with({"event": "ack", "data": {"received": True}})
    watcher.send_json.assert_not_awaited()


def test_broadcast_with_no_viewers_is_a_noop() -> None:
    assert asyncio.run(ViewerRegistry().broadcast("prediction", {})) == 0


def test_disconnect_is_idempotent() -> None:
    registry = ViewerRegistry()
    sink = _sink()
    registry.connect(sink)

    registry.disconnect(sink)
    registry.disconnect(sink)

    assert len(registry) == 0
