import asyncio

import pytest

from websocket_listener import (
    ConnectionState,
    ConnectionStateMachine,
    InvalidTransition,
    SubscriptionMultiplexer,
)
from tests.fakes import FakeConnector, wait_until

SUBSCRIPTIONS = {
    "new-pairs": "subscription { newPairs }",
    "final-stretch": "subscription { finalStretch }",
    "migrated": "subscription { migrated }",
}


def make_multiplexer(connector, base_delay=0.001, max_attempts=5):
    return SubscriptionMultiplexer("wss://stream.example/graphql", SUBSCRIPTIONS,
                                   base_delay=base_delay, max_attempts=max_attempts,
                                   connect_factory=connector)


async def open_connection(mux, connector, on_data, index=0):
    mux.connect(on_data)
    await wait_until(lambda: len(connector.sockets) > index and connector.sockets[index].sent)
    ws = connector.sockets[index]
    ws.push({"type": "connection_ack"})
    await wait_until(lambda: len(ws.sent) == 1 + len(SUBSCRIPTIONS))
    return ws


# State machine

def test_backoff_grows_linearly_then_fails():
    machine = ConnectionStateMachine(base_delay=2.0, max_attempts=3)
    machine.start()

    delays = []
    for _ in range(3):
        delays.append(machine.record_failure())
        assert machine.state == ConnectionState.RECONNECTING
        machine.start()

    assert delays == [2.0, 4.0, 6.0]
    assert machine.record_failure() is None
    assert machine.state == ConnectionState.FAILED


def test_successful_open_resets_the_attempt_counter():
    machine = ConnectionStateMachine(base_delay=1.0, max_attempts=5)
    machine.start()
    machine.record_failure()
    machine.start()
    machine.record_failure()
    machine.start()
    assert machine.attempt == 2

    machine.opened()
    assert machine.attempt == 0
    assert machine.record_failure() == 1.0


def test_restart_after_failure():
    machine = ConnectionStateMachine(base_delay=1.0, max_attempts=1)
    machine.start()
    machine.record_failure()
    machine.start()
    assert machine.record_failure() is None

    machine.start()
    assert machine.state == ConnectionState.CONNECTING
    assert machine.attempt == 0


def test_invalid_transitions_are_rejected():
    machine = ConnectionStateMachine()
    with pytest.raises(InvalidTransition):
        machine.opened()

    machine.start()
    machine.opened()
    with pytest.raises(InvalidTransition):
        machine.start()


def test_stop_returns_to_idle():
    machine = ConnectionStateMachine()
    machine.stop()
    assert machine.state == ConnectionState.IDLE

    machine.start()
    machine.opened()
    machine.stop()
    assert machine.state == ConnectionState.IDLE
    assert not machine.is_active


# Multiplexer

def test_handshake_starts_every_subscription():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        ws = await open_connection(mux, connector, lambda sub_id, data: None)

        assert connector.kwargs["subprotocols"] == ["graphql-ws"]
        assert ws.sent[0] == {"type": "connection_init"}
        assert [(m["type"], m["id"]) for m in ws.sent[1:]] == [
            ("start", "new-pairs"), ("start", "final-stretch"), ("start", "migrated"),
        ]
        assert ws.sent[1]["payload"] == {"query": SUBSCRIPTIONS["new-pairs"]}
        assert mux.state == ConnectionState.OPEN
        assert mux.is_connected()

        await mux.disconnect()

    asyncio.run(scenario())


def test_data_frames_are_routed_by_subscription_id():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        received = []
        ws = await open_connection(mux, connector, lambda sub_id, data: received.append((sub_id, data)))

        ws.push({"type": "ka"})
        ws.push({"type": "data", "id": "migrated", "payload": {"data": {"Solana": {"Instructions": []}}}})
        ws.push({"type": "data", "id": "new-pairs", "payload": {"data": {"Solana": {"TokenSupplyUpdates": []}}}})
        await wait_until(lambda: len(received) == 2)

        assert received == [
            ("migrated", {"Solana": {"Instructions": []}}),
            ("new-pairs", {"Solana": {"TokenSupplyUpdates": []}}),
        ]
        assert mux.get_stats()["data_frames"] == 2

        await mux.disconnect()

    asyncio.run(scenario())


def test_bad_frames_are_ignored():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        received = []
        ws = await open_connection(mux, connector, lambda sub_id, data: received.append(sub_id))

        ws.push("this is not json")
        ws.push([1, 2, 3])
        ws.push({"type": "error", "id": "new-pairs", "payload": {"message": "boom"}})
        ws.push({"type": "mystery"})
        ws.push({"type": "data", "id": "trending", "payload": {"data": {"x": 1}}})
        ws.push({"type": "data", "id": "new-pairs", "payload": {"data": None}})
        ws.push({"type": "data", "id": "new-pairs", "payload": "oops"})
        ws.push({"type": "data", "id": "new-pairs", "payload": {"data": "oops"}})
        ws.push({"type": "data", "id": ["new-pairs"], "payload": {"data": {"x": 1}}})
        ws.push({"type": "data", "id": {"nested": True}, "payload": {"data": {"x": 1}}})
        ws.push({"type": "complete", "id": "final-stretch"})
        ws.push({"type": "data", "id": "final-stretch", "payload": {"data": {"ok": True}}})
        await wait_until(lambda: received)

        assert received == ["final-stretch"]
        assert mux.state == ConnectionState.OPEN
        assert connector.calls == 1

        await mux.disconnect()

    asyncio.run(scenario())


def test_failing_callback_does_not_break_the_stream():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        received = []

        def on_data(sub_id, data):
            received.append(data["n"])
            if data["n"] == 1:
                raise ValueError("handler bug")

        ws = await open_connection(mux, connector, on_data)
        ws.push({"type": "data", "id": "new-pairs", "payload": {"data": {"n": 1}}})
        ws.push({"type": "data", "id": "new-pairs", "payload": {"data": {"n": 2}}})
        await wait_until(lambda: len(received) == 2)

        assert received == [1, 2]
        await mux.disconnect()

    asyncio.run(scenario())


def test_connect_twice_only_replaces_the_callback():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        first, second = [], []

        mux.connect(lambda sub_id, data: first.append(sub_id))
        mux.connect(lambda sub_id, data: second.append(sub_id))
        await wait_until(lambda: connector.sockets and connector.sockets[0].sent)
        ws = connector.sockets[0]
        ws.push({"type": "connection_ack"})
        await wait_until(lambda: len(ws.sent) == 4)

        mux.connect(lambda sub_id, data: second.append(sub_id))
        ws.push({"type": "data", "id": "new-pairs", "payload": {"data": {"x": 1}}})
        await wait_until(lambda: second)

        assert connector.calls == 1
        assert first == []
        assert second == ["new-pairs"]

        await mux.disconnect()

    asyncio.run(scenario())


def test_disconnect_stops_subscriptions_and_closes():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        ws = await open_connection(mux, connector, lambda sub_id, data: None)

        await mux.disconnect()

        assert [(m["type"], m["id"]) for m in ws.sent[-3:]] == [
            ("stop", "new-pairs"), ("stop", "final-stretch"), ("stop", "migrated"),
        ]
        assert ws.closed
        assert mux.state == ConnectionState.IDLE
        assert not mux.is_connected()

        # A later connect opens a fresh socket
        await open_connection(mux, connector, lambda sub_id, data: None, index=1)
        assert connector.calls == 2
        await mux.disconnect()

    asyncio.run(scenario())


def test_connect_during_disconnect_is_not_lost():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        received = []
        await open_connection(mux, connector, lambda sub_id, data: None)

        closing = asyncio.ensure_future(mux.disconnect())
        await asyncio.sleep(0)
        assert mux.state == ConnectionState.OPEN  # teardown still running

        mux.connect(lambda sub_id, data: received.append(sub_id))
        await closing

        await wait_until(lambda: len(connector.sockets) == 2 and connector.sockets[1].sent)
        ws = connector.sockets[1]
        ws.push({"type": "connection_ack"})
        ws.push({"type": "data", "id": "migrated", "payload": {"data": {"x": 1}}})
        await wait_until(lambda: received)

        assert received == ["migrated"]
        assert mux.state == ConnectionState.OPEN
        await mux.disconnect()

    asyncio.run(scenario())


def test_reconnects_after_the_server_closes():
    async def scenario():
        connector = FakeConnector()
        mux = make_multiplexer(connector)
        first = await open_connection(mux, connector, lambda sub_id, data: None)

        first.drop()
        second = await open_connection(mux, connector, lambda sub_id, data: None, index=1)

        assert second.sent[0] == {"type": "connection_init"}
        assert mux.state == ConnectionState.OPEN
        assert mux.machine.attempt == 0
        assert mux.get_stats()["connections"] == 2

        await mux.disconnect()

    asyncio.run(scenario())


def test_gives_up_after_max_attempts():
    async def scenario():
        connector = FakeConnector(failures=100)
        mux = make_multiplexer(connector, max_attempts=3)

        mux.connect(lambda sub_id, data: None)
        await wait_until(lambda: mux.state == ConnectionState.FAILED)

        assert connector.calls == 4
        assert mux.get_stats()["last_error"] == "connection refused"

        # A new connect call starts a fresh attempt budget
        mux.connect(lambda sub_id, data: None)
        await wait_until(lambda: connector.calls == 5)
        await mux.disconnect()
        assert mux.state == ConnectionState.IDLE

    asyncio.run(scenario())


def test_from_config_appends_the_token():
    config = {
        "BITQUERY_WS_URL": "wss://streaming.bitquery.io/eap",
        "BITQUERY_TOKEN": "ory_at_abc",
        "RECONNECT_BASE_DELAY_SECONDS": 2.5,
        "MAX_RECONNECT_ATTEMPTS": 7,
    }
    mux = SubscriptionMultiplexer.from_config(config, SUBSCRIPTIONS, connect_factory=FakeConnector())

    assert mux.uri == "wss://streaming.bitquery.io/eap?token=ory_at_abc"
    assert mux.machine.base_delay == 2.5
    assert mux.machine.max_attempts == 7
    assert mux.state == ConnectionState.IDLE
